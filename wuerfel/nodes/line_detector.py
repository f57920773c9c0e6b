"""
Line detection node.

This node extracts the image line of every visible cube edge from a segmented
frame. An edge is identified by the pair of face colors that meet at it.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import numpy.typing as npt

from ..core.node import Node
from ..interfaces import CameraParameters, ColorPair, CubeModel, Frame, Line

logger = logging.getLogger(__name__)


class LineDetectorNode(Node):
    """
    Node for fitting one 2D line per adjacent face color pair.

    Boundary pixels of a color pair are the pixels of one color that touch the
    other color. Inliers are found with Huber-weighted fits followed by
    statistical outlier rejection. Pairs without enough support are left out
    of the result.
    """

    def __init__(
        self,
        cube_model: Optional[CubeModel] = None,
        camera_parameters: Optional[CameraParameters] = None,
        min_support: int = 20,
        neighborhood_size: int = 3,
        outlier_rejection_threshold: float = 2.0,
        refit_iterations: int = 2,
        **kwargs,
    ):
        """
        Initialize line detector node.

        Args:
            cube_model: Cube model defining the color pairs to look for
            camera_parameters: Calibration used to undistort boundary pixels (optional)
            min_support: Minimum number of boundary pixels for a line to be reported
            neighborhood_size: Size of the dilation kernel that defines "touching"
            outlier_rejection_threshold: Threshold for outlier rejection (in std devs)
            refit_iterations: Number of reject-and-refit rounds after the initial fit
            **kwargs: Node arguments (``name``)
        """
        super().__init__(**kwargs)
        self.cube_model = cube_model or CubeModel.create()
        self.camera_parameters = camera_parameters
        self.min_support = min_support
        self.neighborhood_size = neighborhood_size
        self.outlier_rejection_threshold = outlier_rejection_threshold
        self.refit_iterations = refit_iterations

        if min_support < 2:
            raise ValueError("min_support must be at least 2")

        self._kernel = cv2.getStructuringElement(
            cv2.MORPH_RECT, (neighborhood_size, neighborhood_size)
        )

    def process(self, frame: Frame) -> Frame:
        """
        Detect edge lines in a segmented frame.

        Args:
            frame: Frame with segmentation label image

        Returns:
            Frame with lines and boundary mask added
        """
        if frame.segmentation is None:
            raise ValueError("Input frame must contain a segmentation image")

        lines, boundary = self.detect_lines(frame.segmentation)

        output_frame = Frame(
            image=frame.image,
            camera_index=frame.camera_index,
            segmentation=frame.segmentation,
            boundary=boundary,
            lines=lines,
            metadata=frame.metadata.copy() if frame.metadata else {},
        )
        output_frame.metadata["num_lines"] = len(lines)

        return output_frame

    def detect_lines(
        self, segmentation: np.ndarray
    ) -> Tuple[Dict[ColorPair, Line], npt.NDArray[np.uint8]]:
        """
        Fit a line to the boundary of every color pair of the cube model.

        Args:
            segmentation: Label image (H, W)

        Returns:
            Tuple of (lines per color pair, boundary mask (H, W))
        """
        present = set(int(v) for v in np.unique(segmentation))

        masks = {}
        dilated = {}
        for color in self.cube_model.face_layout:
            if int(color) not in present:
                continue
            mask = (segmentation == color).astype(np.uint8)
            masks[color] = mask
            dilated[color] = cv2.dilate(mask, self._kernel)

        lines: Dict[ColorPair, Line] = {}
        boundary = np.zeros(segmentation.shape[:2], dtype=np.uint8)

        for pair in self.cube_model.color_pairs:
            a, b = pair
            if a not in masks or b not in masks:
                continue

            pair_boundary = (dilated[a] & masks[b]) | (dilated[b] & masks[a])
            ys, xs = np.nonzero(pair_boundary)
            if len(xs) < self.min_support:
                logger.debug(f"Color pair {pair}: {len(xs)} boundary pixels, skipped")
                continue

            boundary[ys, xs] = 255
            points = np.stack([xs, ys], axis=1).astype(np.float64)
            line = self._fit_line(self._undistort(points))
            if line is None:
                logger.debug(f"Color pair {pair}: too few inliers, skipped")
                continue

            lines[pair] = line

        logger.debug(f"Detected {len(lines)} lines: {[str(p) for p in lines]}")

        return lines, boundary

    def _undistort(self, points: np.ndarray) -> np.ndarray:
        """Map pixel coordinates to undistorted pixel coordinates."""
        if self.camera_parameters is None or not self.camera_parameters.has_distortion:
            return points

        K = self.camera_parameters.camera_matrix
        undistorted = cv2.undistortPoints(
            points.reshape(-1, 1, 2),
            K,
            self.camera_parameters.distortion_coefficients,
            P=K,
        )
        return undistorted.reshape(-1, 2).astype(np.float64)

    def _fit_line(self, points: np.ndarray) -> Optional[Line]:
        """
        Robustly fit a line to boundary points.

        The Huber fits only serve to find the inliers; the returned line is
        the least-squares fit to the final inlier set.

        Args:
            points: Boundary point coordinates (N, 2)

        Returns:
            Fitted line, or None if too few inliers remain
        """
        inliers = points
        line = self._fit(inliers, cv2.DIST_HUBER)

        for _ in range(self.refit_iterations):
            distances = np.abs(line.distance(inliers))
            valid_mask = self._reject_outliers(distances)
            if valid_mask.all():
                break
            inliers = inliers[valid_mask]
            if len(inliers) < self.min_support:
                return None
            line = self._fit(inliers, cv2.DIST_HUBER)

        line = self._fit(inliers, cv2.DIST_L2)

        along = (inliers - line.point) @ line.direction
        line.endpoints = np.stack(
            [
                line.point + along.min() * line.direction,
                line.point + along.max() * line.direction,
            ]
        )
        line.support = len(inliers)

        return line

    @staticmethod
    def _fit(points: np.ndarray, distance_type: int) -> Line:
        # cv2.fitLine stops iterating once within reps/aeps; DIST_L2 is solved in closed form
        vx, vy, x0, y0 = cv2.fitLine(
            points.astype(np.float32), distance_type, 0, 0.01, 0.01
        ).ravel()
        # anchor the line at the centroid so it sits in the middle of the support
        direction = np.array([vx, vy], dtype=np.float64)
        anchor = np.array([x0, y0], dtype=np.float64)
        centroid = points.mean(axis=0)
        point = anchor + ((centroid - anchor) @ direction) * direction
        return Line(point=point, direction=direction, support=len(points))

    def _reject_outliers(self, distances: np.ndarray) -> npt.NDArray[np.bool_]:
        """
        Reject outlier points based on distance statistics.

        Args:
            distances: Absolute point to line distances (N,)

        Returns:
            Boolean mask of points to keep
        """
        mean_dist = np.mean(distances)
        std_dist = np.std(distances)
        # never reject points within a pixel of the line
        threshold = max(mean_dist + self.outlier_rejection_threshold * std_dist, 1.0)

        return distances <= threshold

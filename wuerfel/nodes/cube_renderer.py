"""
Cube renderer node for generating synthetic camera views.

This node draws the colored cube at a given pose into the images of a set of
calibrated cameras. It is used to create test input for the detection pipeline
and to draw filled-face overlays in debug images.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import numpy.typing as npt

from ..core.node import Node
from ..interfaces import CameraParameters, CubeModel, Pose

logger = logging.getLogger(__name__)

# fixed-point precision used for sub-pixel polygon vertices
_SHIFT = 4


class CubeRendererNode(Node):
    """
    Node for rendering flat-shaded views of the colored cube.

    Only faces pointing towards a camera are drawn. Since the cube is convex,
    visible faces never overlap and no depth buffer is needed.

    Args:
        cube_model: Cube geometry and face colors
        camera_parameters: Cameras to render, in camera order
        image_size: (width, height) of the rendered images; defaults to each
            camera's ``image_size``
        background: BGR background color
        samples_per_edge: Points per edge used to trace the face outlines
        **kwargs: Node arguments (``name``)
    """

    def __init__(
        self,
        cube_model: Optional[CubeModel] = None,
        camera_parameters: Sequence[CameraParameters] = (),
        image_size: Optional[Tuple[int, int]] = None,
        background: Tuple[int, int, int] = (40, 40, 40),
        samples_per_edge: int = 16,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.cube_model = cube_model or CubeModel.create()
        self.camera_parameters = list(camera_parameters)
        self.image_size = image_size
        self.background = background
        self.samples_per_edge = samples_per_edge

    def process(self, pose: Pose) -> List[npt.NDArray[np.uint8]]:
        """
        Render the cube at a pose in every camera.

        Args:
            pose: Pose of the cube in the world frame

        Returns:
            One BGR image per camera
        """
        images = []
        for camera in self.camera_parameters:
            size = self.image_size or camera.image_size
            if size is None:
                raise ValueError(f"No image size given for camera '{camera.name}'")
            width, height = size
            image = np.empty((height, width, 3), dtype=np.uint8)
            image[:] = self.background
            images.append(self.draw(image, pose, camera))

        logger.debug(f"Rendered cube in {len(images)} views")
        return images

    def draw(
        self,
        image: npt.NDArray[np.uint8],
        pose: Pose,
        camera: CameraParameters,
        filled: bool = True,
        thickness: int = 2,
    ) -> npt.NDArray[np.uint8]:
        """
        Draw the visible faces of the cube into an image (in place).

        Args:
            image: BGR image to draw into
            pose: Pose of the cube in the world frame
            camera: Calibration of the camera that took the image
            filled: Fill the faces with their colors, otherwise draw outlines only
            thickness: Outline thickness when not filled

        Returns:
            The image, for chaining
        """
        world_vertices = pose.transform_points(self.cube_model.vertices)
        camera_vertices = world_vertices @ camera.rotation.T + camera.translation
        if np.any(camera_vertices[:, 2] <= 0):
            logger.warning(f"Cube is behind camera '{camera.name}', not drawn")
            return image

        rvec, _ = cv2.Rodrigues(camera.rotation)
        # edges are sampled so that lens distortion bends them in the image
        steps = np.linspace(0.0, 1.0, self.samples_per_edge, endpoint=False)[:, None]

        camera_center = camera.position
        for color in self.cube_model.face_layout:
            normal = pose.rotation @ self.cube_model.face_normal(color)
            corners = self.cube_model.face_vertices(color)
            face_center = world_vertices[corners].mean(axis=0)
            if normal @ (camera_center - face_center) <= 0:
                continue

            start = world_vertices[corners]
            end = np.roll(start, -1, axis=0)
            outline = (start[:, None, :] + steps * (end - start)[:, None, :]).reshape(-1, 3)
            image_points, _ = cv2.projectPoints(
                outline,
                rvec,
                camera.translation,
                camera.camera_matrix,
                camera.distortion_coefficients,
            )

            polygon = np.round(image_points.reshape(-1, 2) * (1 << _SHIFT)).astype(np.int32)
            if filled:
                cv2.fillPoly(image, [polygon], color.bgr, cv2.LINE_8, _SHIFT)
            else:
                cv2.polylines(
                    image, [polygon], True, color.bgr, thickness, cv2.LINE_AA, _SHIFT
                )

        return image

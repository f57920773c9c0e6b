"""
Multi-view pose fusion node.

This node estimates the pose of the cube from edge lines observed in several
calibrated cameras by nonlinear least-squares minimization of line
reprojection errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np
import numpy.typing as npt
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation

from ..core.exceptions import (
    InputShapeMismatchError,
    NonConvergenceError,
    UnderconstrainedPoseError,
)
from ..core.node import Node
from ..interfaces import CameraParameters, ColorPair, CubeModel, Frame, LineMaps, Pose

logger = logging.getLogger(__name__)


@dataclass
class _Observations:
    """Stacked line observations, one row per (camera, color pair)."""

    cameras: npt.NDArray[np.int64]
    pairs: List[ColorPair]
    edge_points: npt.NDArray[np.float64]  # (N, 2, 3) in the cube frame
    normals: npt.NDArray[np.float64]  # (N, 2)
    offsets: npt.NDArray[np.float64]  # (N,), line is normal . u = offset
    anchors: npt.NDArray[np.float64]  # (N, 2) point on each line

    def __len__(self) -> int:
        return len(self.pairs)


@dataclass
class _Solution:
    rotation: npt.NDArray[np.float64]
    translation: npt.NDArray[np.float64]
    cost: float
    converged: bool
    nfev: int
    seed_index: int


class PoseDetectorNode(Node):
    """
    Node for fusing per-camera edge lines into one cube pose.

    For every observed line, the two endpoints of the corresponding cube edge
    are projected into that camera; their signed distances to the line are the
    residuals. The orientation is updated incrementally, ``R = R0 @ exp(delta)``,
    and the running orientation ``R0`` is re-centred when the increment gets
    large, so the parameterization never reaches a singularity.

    Without an initial pose, the solve is started from each of the 24 rotations
    of the cube's symmetry group and the lowest-cost result is kept.
    """

    def __init__(
        self,
        cube_model: Optional[CubeModel] = None,
        camera_parameters: Sequence[CameraParameters] = (),
        max_iterations: int = 100,
        tolerance: float = 1e-8,
        loss: str = "huber",
        loss_scale: float = 2.0,
        min_observations: int = 3,
        min_condition: float = 1e-4,
        default_position: Optional[npt.NDArray[np.float64]] = None,
        recenter_angle: float = np.pi / 2,
        max_recenterings: int = 3,
        raise_on_nonconvergence: bool = False,
        **kwargs,
    ):
        """
        Initialize pose detector node.

        Args:
            cube_model: Cube geometry and color pair to edge mapping
            camera_parameters: Calibration of each camera, in camera order
            max_iterations: Maximum number of cost evaluations per seed
            tolerance: Convergence tolerance on cost, parameter and gradient change
            loss: Robust loss passed to scipy.optimize.least_squares
            loss_scale: Inlier scale of the robust loss in pixels
            min_observations: Minimum number of (camera, color pair) observations
            min_condition: Minimum ratio of smallest to largest singular value of the
                normalized Jacobian of the unweighted residuals at
                a converged solution
            default_position: Seed position if it cannot be triangulated from the lines
            recenter_angle: Increment angle (radians) above which the running
                orientation is re-centred and the solve restarted
            max_recenterings: Maximum number of re-centring restarts per seed
            raise_on_nonconvergence: Raise NonConvergenceError instead of returning
                a pose flagged with ``converged=False``
            **kwargs: Node arguments (``name``)
        """
        super().__init__(**kwargs)
        self.cube_model = cube_model or CubeModel.create()
        self.camera_parameters = list(camera_parameters)
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.loss = loss
        self.loss_scale = loss_scale
        self.min_observations = min_observations
        self.min_condition = min_condition
        self.default_position = (
            np.asarray(default_position, dtype=np.float64)
            if default_position is not None
            else np.array([0.0, 0.0, self.cube_model.width / 2.0])
        )
        self.recenter_angle = recenter_angle
        self.max_recenterings = max_recenterings
        self.raise_on_nonconvergence = raise_on_nonconvergence

        if not self.camera_parameters:
            raise ValueError("At least one camera is required")
        if min_observations < 3:
            raise ValueError("min_observations must be at least 3 to constrain six parameters")

        self._K = np.stack([c.camera_matrix for c in self.camera_parameters])
        self._R_cam = np.stack([c.rotation for c in self.camera_parameters])
        self._t_cam = np.stack([c.translation for c in self.camera_parameters])
        self._seed_rotations = Rotation.create_group("O").as_matrix()

    def process(self, frames: Sequence[Frame]) -> Pose:
        """
        Estimate the cube pose from per-camera frames.

        Args:
            frames: One frame with detected lines per camera

        Returns:
            Pose of the cube
        """
        return self.find_pose([frame.lines for frame in frames])

    def find_pose(self, lines: LineMaps, initial_pose: Optional[Pose] = None) -> Pose:
        """
        Estimate the cube pose from per-camera color pair to line maps.

        Args:
            lines: One ``ColorPair -> Line`` mapping per camera
            initial_pose: Optional seed; if None, the symmetry group rotations are tried

        Returns:
            Pose of the cube, with ``converged=False`` if the iteration budget ran out

        Raises:
            InputShapeMismatchError: If the number of maps does not match the cameras
            UnderconstrainedPoseError: If the observations cannot determine the pose
            NonConvergenceError: If ``raise_on_nonconvergence`` is set and the
                optimizer did not converge
        """
        if len(lines) != len(self.camera_parameters):
            raise InputShapeMismatchError(
                f"Expected {len(self.camera_parameters)} line maps, got {len(lines)}"
            )

        observations = self._collect_observations(lines)
        self._check_observability(observations)

        if initial_pose is not None:
            seeds = [np.asarray(initial_pose.rotation, dtype=np.float64)]
            seed_translation = np.asarray(initial_pose.translation, dtype=np.float64)
        else:
            seeds = list(self._seed_rotations)
            seed_translation = self._seed_translation(observations)

        best: Optional[_Solution] = None
        for seed_index, seed_rotation in enumerate(seeds):
            solution = self._refine(observations, seed_rotation, seed_translation)
            solution.seed_index = seed_index
            if best is None or solution.cost < best.cost:
                best = solution

        if best.converged:
            self._check_conditioning(best, observations)

        pose = Pose(
            rotation=best.rotation,
            translation=best.translation,
            scores={
                "cost": float(best.cost),
                "rms_error_px": self._rms_error(best, observations),
                "num_observations": len(observations),
                "num_edges": len(set(observations.pairs)),
            },
            metadata={
                "method": "multi_view_line_fit",
                "seed_index": best.seed_index,
                "num_seeds": len(seeds),
                "nfev": best.nfev,
                "observed_pairs": sorted({str(p) for p in observations.pairs}),
            },
            converged=best.converged,
        )

        if not best.converged:
            logger.warning(
                f"Pose optimization did not converge within {self.max_iterations} "
                f"evaluations (cost {best.cost:.4f})"
            )
            if self.raise_on_nonconvergence:
                raise NonConvergenceError(
                    "Pose optimization exceeded its iteration budget", pose=pose
                )

        return pose

    def project_cube(self, pose: Pose) -> List[npt.NDArray[np.float64]]:
        """
        Project the cube vertices into every camera, including lens distortion.

        Args:
            pose: Pose of the cube

        Returns:
            Image coordinates (8, 2) of the vertices per camera
        """
        world_points = pose.transform_points(self.cube_model.vertices)
        projected = []
        for camera in self.camera_parameters:
            rvec, _ = cv2.Rodrigues(camera.rotation)
            image_points, _ = cv2.projectPoints(
                world_points,
                rvec,
                camera.translation,
                camera.camera_matrix,
                camera.distortion_coefficients,
            )
            projected.append(image_points.reshape(-1, 2))
        return projected

    def _collect_observations(self, lines: LineMaps) -> _Observations:
        cameras, pairs, edge_points, normals, offsets, anchors = [], [], [], [], [], []

        for camera_index, line_map in enumerate(lines):
            for pair in sorted(line_map):
                line = line_map[pair]
                if not line.observed:
                    continue
                if pair not in self.cube_model.edges:
                    logger.debug(f"Ignoring line for {pair}, not an edge of the cube model")
                    continue
                cameras.append(camera_index)
                pairs.append(pair)
                edge_points.append(self.cube_model.edge_points(pair))
                normals.append(line.normal)
                offsets.append(line.normal @ line.point)
                anchors.append(line.point)

        unobserved = set(self.cube_model.edges) - set(pairs)
        if unobserved:
            logger.debug(
                f"No observation for {len(unobserved)} edges: {sorted(str(p) for p in unobserved)}"
            )

        return _Observations(
            cameras=np.array(cameras, dtype=np.int64),
            pairs=pairs,
            edge_points=np.array(edge_points, dtype=np.float64).reshape(-1, 2, 3),
            normals=np.array(normals, dtype=np.float64).reshape(-1, 2),
            offsets=np.array(offsets, dtype=np.float64),
            anchors=np.array(anchors, dtype=np.float64).reshape(-1, 2),
        )

    def _check_observability(self, observations: _Observations) -> None:
        """Reject observation sets that cannot constrain all six pose parameters."""
        if len(observations) < self.min_observations:
            raise UnderconstrainedPoseError(
                f"Only {len(observations)} line observations, "
                f"at least {self.min_observations} are required",
                num_observations=len(observations),
            )

        directions = []
        for pair in set(observations.pairs):
            p1, p2 = self.cube_model.edge_points(pair)
            d = (p2 - p1) / np.linalg.norm(p2 - p1)
            if all(np.linalg.norm(np.cross(d, other)) > 1e-6 for other in directions):
                directions.append(d)

        if len(directions) < 2:
            raise UnderconstrainedPoseError(
                "All observed edges are parallel, rotation about them is unconstrained",
                num_observations=len(observations),
            )

    def _check_conditioning(self, solution: _Solution, observations: _Observations) -> None:
        jacobian = self._jacobian(solution, observations)
        column_norms = np.linalg.norm(jacobian, axis=0)
        if np.any(column_norms < 1e-12):
            raise UnderconstrainedPoseError(
                "Pose parameter without influence on the residuals",
                num_observations=len(observations),
            )

        singular_values = np.linalg.svd(jacobian / column_norms, compute_uv=False)
        condition = singular_values[-1] / singular_values[0]
        if condition < self.min_condition:
            raise UnderconstrainedPoseError(
                f"Ill-conditioned pose solve (condition {condition:.2e})",
                num_observations=len(observations),
            )

    def _jacobian(
        self, solution: _Solution, observations: _Observations, step: float = 1e-6
    ) -> npt.NDArray[np.float64]:
        """Central-difference Jacobian of the unweighted residuals at the solution."""
        params = np.concatenate([np.zeros(3), solution.translation])
        columns = []
        for i in range(len(params)):
            delta = np.zeros_like(params)
            delta[i] = step
            forward = self._residuals(params + delta, solution.rotation, observations)
            backward = self._residuals(params - delta, solution.rotation, observations)
            columns.append((forward - backward) / (2 * step))
        return np.stack(columns, axis=1)

    def _seed_translation(self, observations: _Observations) -> npt.NDArray[np.float64]:
        """
        Triangulate a seed position from the rays through the line centroids.

        Falls back to ``default_position`` when the rays do not intersect in a
        well-defined point (e.g. all lines come from a single camera).
        """
        A = np.zeros((3, 3))
        b = np.zeros(3)
        for camera_index, anchor in zip(observations.cameras, observations.anchors):
            K_inv = np.linalg.inv(self._K[camera_index])
            R = self._R_cam[camera_index]
            ray = R.T @ (K_inv @ np.array([anchor[0], anchor[1], 1.0]))
            ray = ray / np.linalg.norm(ray)
            center = self.camera_parameters[camera_index].position
            P = np.eye(3) - np.outer(ray, ray)
            A += P
            b += P @ center

        if np.linalg.cond(A) > 1e6:
            return self.default_position.copy()
        return np.linalg.solve(A, b)

    def _rms_error(self, solution: _Solution, observations: _Observations) -> float:
        """Root mean square line distance in pixels, without robust loss."""
        params = np.concatenate([np.zeros(3), solution.translation])
        residuals = self._residuals(params, solution.rotation, observations)
        return float(np.sqrt(np.mean(residuals**2)))

    def _project(
        self,
        rotation: npt.NDArray[np.float64],
        translation: npt.NDArray[np.float64],
        observations: _Observations,
    ) -> npt.NDArray[np.float64]:
        """Pinhole projection (N, 2, 2) of the observed edge endpoints."""
        world = observations.edge_points @ rotation.T + translation
        R = self._R_cam[observations.cameras]
        t = self._t_cam[observations.cameras]
        K = self._K[observations.cameras]
        camera = np.einsum("nij,nkj->nki", R, world) + t[:, None, :]
        pixels = np.einsum("nij,nkj->nki", K, camera)
        depth = np.maximum(pixels[..., 2:], 1e-9)
        return pixels[..., :2] / depth

    def _residuals(
        self,
        params: npt.NDArray[np.float64],
        base_rotation: npt.NDArray[np.float64],
        observations: _Observations,
    ) -> npt.NDArray[np.float64]:
        rotation = base_rotation @ Rotation.from_rotvec(params[:3]).as_matrix()
        pixels = self._project(rotation, params[3:], observations)
        distances = np.einsum("nkj,nj->nk", pixels, observations.normals)
        return (distances - observations.offsets[:, None]).ravel()

    def _refine(
        self,
        observations: _Observations,
        seed_rotation: npt.NDArray[np.float64],
        seed_translation: npt.NDArray[np.float64],
    ) -> _Solution:
        base_rotation = seed_rotation.copy()
        translation = seed_translation.copy()
        budget = self.max_iterations
        nfev = 0

        for _ in range(self.max_recenterings + 1):
            x0 = np.concatenate([np.zeros(3), translation])
            result = least_squares(
                self._residuals,
                x0,
                args=(base_rotation, observations),
                method="trf",
                loss=self.loss,
                f_scale=self.loss_scale,
                max_nfev=budget,
                ftol=self.tolerance,
                xtol=self.tolerance,
                gtol=self.tolerance,
            )
            nfev += result.nfev
            budget -= result.nfev

            base_rotation = base_rotation @ Rotation.from_rotvec(result.x[:3]).as_matrix()
            translation = result.x[3:]

            if np.linalg.norm(result.x[:3]) < self.recenter_angle or budget <= 0:
                break

        return _Solution(
            rotation=base_rotation,
            translation=translation,
            cost=float(result.cost),
            converged=result.status > 0,
            nfev=nfev,
            seed_index=0,
        )


"""
Cube detector: the public entry point of wuerfel.

The detector runs color segmentation and line detection for each of the three
cameras in parallel, then fuses the detected lines into a single cube pose.
"""

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import numpy.typing as npt

from ..interfaces import CameraParameters, ColorModel, CubeModel, Frame, Pose
from ..nodes.color_segmenter import ColorSegmenterNode, validate_image
from ..nodes.cube_renderer import CubeRendererNode
from ..nodes.line_detector import LineDetectorNode
from ..nodes.pose_detector import PoseDetectorNode
from ..utils.debug_image import (
    colorize_segmentation,
    compose_grid,
    draw_lines,
    draw_wireframe,
)
from ..utils.rerun_logger import RerunLogger
from .exceptions import InputShapeMismatchError, NonConvergenceError
from .pipeline import Pipeline

logger = logging.getLogger(__name__)

N_CAMERAS = 3
CAMERA_NAMES = ("camera60", "camera180", "camera300")


@dataclass(frozen=True)
class DebugSnapshot:
    """
    Intermediate results of the last detection, kept for visualization only.

    Attributes:
        frames: Per-camera frames with segmentation, boundary mask and lines
        pose: Resulting pose, or None if the pose could not be determined
        projected_vertices: Per-camera image coordinates (8, 2) of the cube
            vertices at ``pose``, or None
    """

    frames: Tuple[Frame, ...]
    pose: Optional[Pose]
    projected_vertices: Tuple[Optional[npt.NDArray[np.float64]], ...]


class CubeDetector:
    """
    Detect the colored cube in images from a three-camera setup.

    Example:
        detector = CubeDetector(camera_parameters)
        pose = detector.detect_cube([image60, image180, image300])
        debug = detector.create_debug_image()
    """

    def __init__(
        self,
        camera_parameters: Sequence[CameraParameters],
        cube_model: Optional[CubeModel] = None,
        color_model: Optional[ColorModel] = None,
        morph_kernel_size: int = 3,
        min_support: int = 20,
        enable_rerun_logging: bool = False,
        rerun_spawn_viewer: bool = True,
        **pose_options,
    ):
        """
        Initialize the detector.

        Args:
            camera_parameters: Calibration of camera60, camera180 and camera300
            cube_model: Cube geometry (defaults to CubeModel.create())
            color_model: Segmentation thresholds (defaults to ColorModel.default())
            morph_kernel_size: Opening kernel size of the color segmenters
            min_support: Minimum number of boundary pixels per detected line
            enable_rerun_logging: Whether to log intermediate results to Rerun
            rerun_spawn_viewer: Whether to spawn the Rerun viewer
            **pose_options: Additional options for PoseDetectorNode
        """
        if len(camera_parameters) != N_CAMERAS:
            raise ValueError(
                f"Expected parameters for {N_CAMERAS} cameras, got {len(camera_parameters)}"
            )

        self.cube_model = cube_model or CubeModel.create()
        self.camera_parameters = tuple(camera_parameters)
        self.rerun_logger = RerunLogger(
            "wuerfel_cube_detector", enabled=enable_rerun_logging, spawn=rerun_spawn_viewer
        )

        self.pipelines: List[Pipeline] = []
        for index, camera in enumerate(self.camera_parameters):
            name = camera.name or CAMERA_NAMES[index]
            pipeline = Pipeline(name=name, rerun_logger=self.rerun_logger)
            pipeline.add_node(
                ColorSegmenterNode(
                    color_model=color_model,
                    morph_kernel_size=morph_kernel_size,
                    name="segmentation",
                )
            )
            pipeline.add_node(
                LineDetectorNode(
                    cube_model=self.cube_model,
                    camera_parameters=camera,
                    min_support=min_support,
                    name="lines",
                )
            )
            self.pipelines.append(pipeline)

        self.pose_detector = PoseDetectorNode(
            cube_model=self.cube_model,
            camera_parameters=self.camera_parameters,
            **pose_options,
        )
        self.renderer = CubeRendererNode(
            cube_model=self.cube_model, camera_parameters=self.camera_parameters
        )

        self._snapshot: Optional[DebugSnapshot] = None
        self._snapshot_lock = threading.Lock()
        self._frame_ids = itertools.count(1)

    def detect_cube(
        self, images: Sequence[np.ndarray], initial_pose: Optional[Pose] = None
    ) -> Pose:
        """
        Detect the cube in the given images.

        The three cameras are processed in parallel, one worker thread each.

        Args:
            images: BGR images from camera60, camera180 and camera300
            initial_pose: Optional seed for the pose optimization

        Returns:
            Pose of the cube

        Raises:
            InputShapeMismatchError: If the images do not match the expected format
            UnderconstrainedPoseError: If too few edges are visible to determine the pose
            NonConvergenceError: Only if enabled via ``raise_on_nonconvergence``
        """
        self._validate(images)

        start_time = time.time()
        with ThreadPoolExecutor(
            max_workers=N_CAMERAS, thread_name_prefix="wuerfel-camera"
        ) as executor:
            futures = [
                executor.submit(self._process_camera, index, image)
                for index, image in enumerate(images)
            ]
            frames = [future.result() for future in futures]

        return self._fuse(frames, initial_pose, start_time)

    def detect_cube_single_thread(
        self, images: Sequence[np.ndarray], initial_pose: Optional[Pose] = None
    ) -> Pose:
        """
        Detect the cube in the given images, processing the cameras sequentially.

        Args:
            images: BGR images from camera60, camera180 and camera300
            initial_pose: Optional seed for the pose optimization

        Returns:
            Pose of the cube
        """
        self._validate(images)

        start_time = time.time()
        frames = [self._process_camera(index, image) for index, image in enumerate(images)]

        return self._fuse(frames, initial_pose, start_time)

    def create_debug_image(self, fill_faces: bool = False) -> npt.NDArray[np.uint8]:
        """
        Create a debug image for the last call of detect_cube.

        One row per camera; the columns show the raw image, the segmentation,
        the extracted boundary pixels, the detected lines and the cube drawn at
        the detected pose.

        Args:
            fill_faces: If True, the cube is drawn with filled faces, otherwise
                only a wire frame is drawn

        Returns:
            Composed BGR image, or an empty (0, 0, 3) image if no detection ran yet
        """
        snapshot = self.debug_snapshot
        if snapshot is None:
            logger.debug("No detection has run yet, returning empty debug image")
            return np.zeros((0, 0, 3), dtype=np.uint8)

        rows = []
        for frame, points, camera in zip(
            snapshot.frames, snapshot.projected_vertices, self.camera_parameters
        ):
            pose_image = frame.image.copy()
            if snapshot.pose is not None:
                if fill_faces:
                    self.renderer.draw(pose_image, snapshot.pose, camera, filled=True)
                draw_wireframe(pose_image, self.cube_model, points)

            rows.append(
                [
                    frame.image,
                    colorize_segmentation(frame.segmentation),
                    frame.boundary,
                    draw_lines(frame.image.copy(), frame),
                    pose_image,
                ]
            )

        return compose_grid(rows)

    @property
    def debug_snapshot(self) -> Optional[DebugSnapshot]:
        """Intermediate results of the last detection (None before the first call)."""
        with self._snapshot_lock:
            return self._snapshot

    def _validate(self, images: Sequence[np.ndarray]) -> None:
        if len(images) != N_CAMERAS:
            raise InputShapeMismatchError(f"Expected {N_CAMERAS} images, got {len(images)}")
        for index, image in enumerate(images):
            validate_image(image, self.camera_parameters[index].image_size)

    def _process_camera(self, index: int, image: np.ndarray) -> Frame:
        frame = Frame(image=image, camera_index=index)
        return self.pipelines[index].process(frame)

    def _fuse(
        self, frames: List[Frame], initial_pose: Optional[Pose], start_time: float
    ) -> Pose:
        with self._snapshot_lock:
            frame_id = next(self._frame_ids)
        self.rerun_logger.set_time_sequence("frame", frame_id)

        pose = None
        try:
            pose = self.pose_detector.find_pose(
                [frame.lines for frame in frames], initial_pose=initial_pose
            )
        except NonConvergenceError as e:
            pose = e.pose
            self._record(pose, start_time, frame_id)
            raise
        finally:
            self._publish(frames, pose)

        self._record(pose, start_time, frame_id)
        return pose

    def _record(self, pose: Pose, start_time: float, frame_id: int) -> None:
        runtime = time.time() - start_time
        pose.metadata["detection_runtime"] = runtime
        pose.metadata["frame_id"] = frame_id
        logger.info(
            f"Detected cube at {np.round(pose.translation, 4).tolist()} from "
            f"{pose.scores['num_observations']} lines in {runtime:.3f}s"
            + ("" if pose.converged else " (not converged)")
        )
        self.rerun_logger.log_pose(pose, "world/cube", self.cube_model)

    def _publish(self, frames: List[Frame], pose: Optional[Pose]) -> None:
        """Replace the debug snapshot with the results of this call."""
        if pose is not None:
            projected = tuple(self.pose_detector.project_cube(pose))
            for pipeline, points in zip(self.pipelines, projected):
                self.rerun_logger.log_projected_cube(
                    self.cube_model, points, f"{pipeline.name}/lines/cube"
                )
        else:
            projected = (None,) * len(frames)

        snapshot = DebugSnapshot(frames=tuple(frames), pose=pose, projected_vertices=projected)
        with self._snapshot_lock:
            self._snapshot = snapshot

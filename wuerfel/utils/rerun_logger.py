"""
Rerun logging utility for wuerfel.

This module provides functionality to log intermediate detection results to Rerun
for interactive visualization and debugging.
"""

import logging
import os
from typing import Optional

import cv2
import numpy as np
import rerun as rr

from ..interfaces import CubeModel, FaceColor, Frame, Pose

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _segmentation_annotation() -> rr.AnnotationContext:
    """Class descriptions so label images show face color names and colors."""
    return rr.AnnotationContext(
        [
            (int(color), color.name.lower(), tuple(reversed(color.bgr)))
            for color in FaceColor
        ]
    )


class RerunLogger:
    """
    Logger for pipeline intermediate results using Rerun.

    This class handles logging camera frames, segmentations, detected lines and
    cube poses to Rerun for interactive visualization during detection.
    """

    def __init__(
        self,
        recording_name: str = "wuerfel",
        enabled: bool = True,
        spawn: bool = True,
    ):
        """
        Initialize the Rerun logger.

        Args:
            recording_name: Name for the Rerun recording
            enabled: Whether logging is enabled
            spawn: Whether to spawn the Rerun viewer
        """
        self.recording_name = recording_name
        # Disable viewer spawning in CI environments to avoid connection issues
        self.spawn = spawn and not bool(os.getenv("CI"))
        self._initialized = False
        self.enabled = enabled

    def _ensure_initialized(self):
        """Ensure Rerun is initialized."""
        if not self.enabled:
            return

        if not self._initialized:
            rr.init(self.recording_name, spawn=self.spawn)
            rr.log("/", _segmentation_annotation(), static=True)
            self._initialized = True

    def set_time_sequence(self, timeline_name: str, sequence_number: int):
        """
        Set the time sequence for timeline-based logging.

        Args:
            timeline_name: Name of the timeline (e.g., "frame")
            sequence_number: Sequence number for this point in time
        """
        if not self.enabled:
            return

        self._ensure_initialized()
        rr.set_time(timeline_name, sequence=sequence_number)

    def log_frame(self, frame: Frame, entity_path: str = "frame"):
        """
        Log a frame with its segmentation, boundary mask and detected lines.

        Args:
            frame: Frame to log
            entity_path: Entity path for the frame
        """
        if not self.enabled:
            return

        self._ensure_initialized()

        if frame.image is not None:
            # Rerun expects RGB
            rr.log(f"{entity_path}/image", rr.Image(cv2.cvtColor(frame.image, cv2.COLOR_BGR2RGB)))

        if frame.segmentation is not None:
            rr.log(f"{entity_path}/segmentation", rr.SegmentationImage(frame.segmentation))

        if frame.boundary is not None:
            rr.log(f"{entity_path}/boundary", rr.Image(frame.boundary))

        if frame.lines:
            strips = []
            colors = []
            labels = []
            for pair, line in frame.lines.items():
                if line.endpoints is None:
                    continue
                strips.append(line.endpoints)
                colors.append(tuple(reversed(pair.first.bgr)))
                labels.append(f"{pair} ({line.support})")
            if strips:
                rr.log(
                    f"{entity_path}/lines",
                    rr.LineStrips2D(strips, colors=colors, labels=labels),
                )

    def log_projected_cube(
        self,
        cube_model: CubeModel,
        image_points: np.ndarray,
        entity_path: str = "frame/cube",
    ):
        """
        Log the wire frame of a cube projected into one camera.

        Args:
            cube_model: Cube model providing the edges
            image_points: Projected cube vertices (8, 2)
            entity_path: Entity path for logging
        """
        if not self.enabled:
            return

        self._ensure_initialized()

        strips = [image_points[[i, j]] for i, j in cube_model.edges.values()]
        rr.log(entity_path, rr.LineStrips2D(strips, colors=[(255, 100, 0)]))

    def log_pose(
        self,
        pose: Pose,
        entity_path: str = "world/cube",
        cube_model: Optional[CubeModel] = None,
    ):
        """
        Log a Pose object to Rerun.

        Args:
            pose: Pose object containing rotation and translation
            entity_path: Entity path for logging
            cube_model: Optional cube model to draw as a wire frame at the pose
        """
        if not self.enabled:
            return

        self._ensure_initialized()

        rr.log(
            entity_path,
            rr.Transform3D(mat3x3=pose.rotation, translation=pose.translation),
        )

        if cube_model is not None:
            strips = [cube_model.vertices[[i, j]] for i, j in cube_model.edges.values()]
            colors = [tuple(reversed(pair.first.bgr)) for pair in cube_model.edges]
            rr.log(f"{entity_path}/edges", rr.LineStrips3D(strips, colors=colors))

        if pose.scores:
            score_text = ", ".join([f"{k}: {v:.3f}" for k, v in pose.scores.items()])
            if not pose.converged:
                score_text += " (not converged)"
            rr.log(f"{entity_path}/scores", rr.TextLog(score_text))


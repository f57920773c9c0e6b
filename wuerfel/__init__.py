"""
🎲 wuerfel 🎲 - Multi-view pose detection for a colored cube

Estimates the 6-DOF pose of a cube with six distinctly colored faces from three
calibrated camera views, using color segmentation, edge line extraction and
multi-camera least-squares fusion.
"""

__version__ = "0.1.0"

from .core.cube_detector import CubeDetector
from .core.exceptions import (
    CubeDetectionError,
    InputShapeMismatchError,
    NonConvergenceError,
    UnderconstrainedPoseError,
)
from .core.node import Node
from .core.pipeline import Pipeline
from .interfaces import (
    CameraParameters,
    ColorModel,
    ColorPair,
    CubeModel,
    FaceColor,
    Frame,
    Line,
    Pose,
)

__all__ = [
    "CubeDetector",
    "Pipeline",
    "Node",
    "CameraParameters",
    "ColorModel",
    "ColorPair",
    "CubeModel",
    "FaceColor",
    "Frame",
    "Line",
    "Pose",
    "CubeDetectionError",
    "InputShapeMismatchError",
    "NonConvergenceError",
    "UnderconstrainedPoseError",
]

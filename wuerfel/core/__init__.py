"""Core components of wuerfel."""

from .cube_detector import CubeDetector, DebugSnapshot
from .exceptions import (
    CubeDetectionError,
    InputShapeMismatchError,
    NonConvergenceError,
    UnderconstrainedPoseError,
)
from .node import Node
from .pipeline import Pipeline

__all__ = [
    "CubeDetector",
    "DebugSnapshot",
    "Node",
    "Pipeline",
    "CubeDetectionError",
    "InputShapeMismatchError",
    "NonConvergenceError",
    "UnderconstrainedPoseError",
]

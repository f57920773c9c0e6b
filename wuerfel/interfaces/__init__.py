"""
Core data interfaces for wuerfel.

These interfaces define the standardized data structures used for communication
between nodes in the pipeline.
"""

from .interfaces import (
    DEFAULT_FACE_LAYOUT,
    CameraParameters,
    ColorModel,
    ColorPair,
    CubeModel,
    FaceColor,
    Frame,
    HSVRange,
    Line,
    LineMaps,
    Pose,
)

__all__ = [
    "DEFAULT_FACE_LAYOUT",
    "CameraParameters",
    "ColorModel",
    "ColorPair",
    "CubeModel",
    "FaceColor",
    "Frame",
    "HSVRange",
    "Line",
    "LineMaps",
    "Pose",
]

"""Processing nodes for wuerfel."""

from .color_segmenter import ColorSegmenterNode
from .cube_renderer import CubeRendererNode
from .line_detector import LineDetectorNode
from .pose_detector import PoseDetectorNode

__all__ = [
    "ColorSegmenterNode",
    "CubeRendererNode",
    "LineDetectorNode",
    "PoseDetectorNode",
]

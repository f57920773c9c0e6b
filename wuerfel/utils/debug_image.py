"""
Debug image composition.

Builds the grid image returned by CubeDetector.create_debug_image: one row per
camera, columns showing the stages of the detection.
"""

from typing import Optional, Sequence

import cv2
import numpy as np
import numpy.typing as npt

from ..interfaces import CubeModel, FaceColor, Frame

WIREFRAME_COLOR = (255, 100, 0)

_PALETTE = np.array([FaceColor(i).bgr for i in range(len(FaceColor))], dtype=np.uint8)


def _point(xy) -> tuple:
    return (int(round(float(xy[0]))), int(round(float(xy[1]))))


def colorize_segmentation(segmentation: npt.NDArray[np.uint8]) -> npt.NDArray[np.uint8]:
    """Map a label image to a BGR image using the face display colors."""
    return _PALETTE[np.clip(segmentation, 0, len(_PALETTE) - 1)]


def draw_lines(image: npt.NDArray[np.uint8], frame: Frame) -> npt.NDArray[np.uint8]:
    """Draw the detected lines of a frame, colored by the pair's two faces."""
    for pair, line in frame.lines.items():
        if line.endpoints is None:
            continue
        p1, p2 = (_point(p) for p in line.endpoints)
        cv2.line(image, p1, p2, pair.first.bgr, 3, cv2.LINE_AA)
        cv2.line(image, p1, p2, pair.second.bgr, 1, cv2.LINE_AA)
    return image


def draw_wireframe(
    image: npt.NDArray[np.uint8],
    cube_model: CubeModel,
    image_points: npt.NDArray[np.float64],
) -> npt.NDArray[np.uint8]:
    """Draw all cube edges from projected vertex coordinates (8, 2)."""
    for i, j in cube_model.edges.values():
        cv2.line(image, _point(image_points[i]), _point(image_points[j]), WIREFRAME_COLOR, 2)
    return image


def as_bgr(image: Optional[np.ndarray], size) -> npt.NDArray[np.uint8]:
    """Convert an image to a BGR uint8 tile of the given (width, height)."""
    width, height = size
    if image is None:
        return np.zeros((height, width, 3), dtype=np.uint8)
    if image.ndim == 2:
        image = cv2.cvtColor(image.astype(np.uint8), cv2.COLOR_GRAY2BGR)
    if (image.shape[1], image.shape[0]) != (width, height):
        image = cv2.resize(image, (width, height), interpolation=cv2.INTER_NEAREST)
    return image


def compose_grid(rows: Sequence[Sequence[Optional[np.ndarray]]]) -> npt.NDArray[np.uint8]:
    """
    Tile images into a grid.

    All tiles are resized to the size of the first tile; missing tiles are black.

    Args:
        rows: Grid of images, row-major

    Returns:
        Composed BGR image
    """
    first = next(
        (tile for row in rows for tile in row if tile is not None), None
    )
    if first is None:
        return np.zeros((0, 0, 3), dtype=np.uint8)

    size = (first.shape[1], first.shape[0])
    return np.vstack([np.hstack([as_bgr(tile, size) for tile in row]) for row in rows])

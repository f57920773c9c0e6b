"""
Color segmentation node.

This node classifies every pixel of a camera image into one of the cube's face
colors or background using per-color HSV thresholds.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple, Union

import cv2
import numpy as np
import numpy.typing as npt

from ..core.exceptions import InputShapeMismatchError
from ..core.node import Node
from ..interfaces import ColorModel, FaceColor, Frame

logger = logging.getLogger(__name__)


def validate_image(
    image: np.ndarray, expected_size: Optional[Tuple[int, int]] = None
) -> None:
    """
    Check that an image is a non-empty BGR uint8 array.

    Args:
        image: Image to check
        expected_size: Optional required (width, height)

    Raises:
        InputShapeMismatchError: If the image does not match
    """
    if not isinstance(image, np.ndarray):
        raise InputShapeMismatchError(f"Expected numpy image, got {type(image).__name__}")
    if image.ndim != 3 or image.shape[2] != 3:
        raise InputShapeMismatchError(f"Expected image of shape (H, W, 3), got {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InputShapeMismatchError("Image has zero width or height")
    if image.dtype != np.uint8:
        raise InputShapeMismatchError(f"Expected uint8 image, got {image.dtype}")
    if expected_size is not None:
        width, height = expected_size
        if (image.shape[1], image.shape[0]) != (width, height):
            raise InputShapeMismatchError(
                f"Expected image size {width}x{height}, got {image.shape[1]}x{image.shape[0]}"
            )


class ColorSegmenterNode(Node):
    """
    Node for per-pixel face color classification.

    Each face color is described by one or more HSV boxes in a ColorModel.
    Pixels matching several colors are resolved by the model's tie-break
    policy: the first color in the priority order wins ("priority"), or the
    pixel becomes background ("background").
    """

    def __init__(
        self,
        color_model: Optional[ColorModel] = None,
        morph_kernel_size: int = 3,
        expected_size: Optional[Tuple[int, int]] = None,
        **kwargs,
    ):
        """
        Initialize color segmenter node.

        Args:
            color_model: HSV thresholds per face color (defaults to ColorModel.default())
            morph_kernel_size: Size of the opening kernel used to remove speckle, 0 disables
            expected_size: Optional (width, height) every input image must have
            **kwargs: Node arguments (``name``)
        """
        super().__init__(**kwargs)
        self.color_model = color_model or ColorModel.default()
        self.morph_kernel_size = morph_kernel_size
        self.expected_size = expected_size

        if morph_kernel_size < 0:
            raise ValueError("morph_kernel_size must be non-negative")

        self._kernel = (
            cv2.getStructuringElement(
                cv2.MORPH_RECT, (morph_kernel_size, morph_kernel_size)
            )
            if morph_kernel_size > 1
            else None
        )

    def process(self, frame: Union[Frame, np.ndarray]) -> Frame:
        """
        Segment a frame into face color labels.

        Args:
            frame: Input frame (or raw BGR image)

        Returns:
            Frame with segmentation label image added
        """
        if isinstance(frame, np.ndarray):
            frame = Frame(image=frame)

        segmentation = self.segment(frame.image)

        output_frame = Frame(
            image=frame.image,
            camera_index=frame.camera_index,
            segmentation=segmentation,
            metadata=frame.metadata.copy() if frame.metadata else {},
        )
        output_frame.metadata["visible_colors"] = [
            FaceColor(int(v)).name for v in np.unique(segmentation) if v != FaceColor.BACKGROUND
        ]

        return output_frame

    def segment(self, image: np.ndarray) -> npt.NDArray[np.uint8]:
        """
        Classify each pixel of a BGR image.

        Args:
            image: BGR image (H, W, 3)

        Returns:
            Label image (H, W) holding FaceColor values
        """
        validate_image(image, self.expected_size)

        masks = self.color_masks(image)
        labels = np.full(image.shape[:2], FaceColor.BACKGROUND, dtype=np.uint8)
        assigned = np.zeros(image.shape[:2], dtype=bool)

        if self.color_model.tie_break == "background":
            match_count = np.zeros(image.shape[:2], dtype=np.uint8)
            for mask in masks.values():
                match_count += mask
            for color in self.color_model.priority:
                if color in masks:
                    labels[masks[color] & (match_count == 1)] = color
        else:
            for color in self.color_model.priority:
                if color not in masks:
                    continue
                region = masks[color] & ~assigned
                labels[region] = color
                assigned |= region

        return labels

    def color_masks(self, image: np.ndarray) -> Dict[FaceColor, npt.NDArray[np.bool_]]:
        """
        Compute the raw (not tie-broken) membership mask of every face color.

        Args:
            image: BGR image (H, W, 3)

        Returns:
            Boolean mask (H, W) per face color
        """
        hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)

        masks = {}
        for color, ranges in self.color_model.ranges.items():
            mask = np.zeros(hsv.shape[:2], dtype=np.uint8)
            for hsv_range in ranges:
                mask |= cv2.inRange(
                    hsv,
                    np.array(hsv_range.lower, dtype=np.uint8),
                    np.array(hsv_range.upper, dtype=np.uint8),
                )
            if self._kernel is not None:
                mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, self._kernel)
            masks[color] = mask > 0

        return masks

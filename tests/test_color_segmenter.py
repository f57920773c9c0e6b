"""
Tests for the color segmentation node.
"""

import numpy as np
import pytest

from wuerfel.core.exceptions import InputShapeMismatchError
from wuerfel.interfaces import ColorModel, FaceColor, Frame, HSVRange
from wuerfel.nodes import ColorSegmenterNode


def make_stripes(colors, stripe_width=16, height=32):
    """Image with one vertical stripe per BGR color."""
    image = np.zeros((height, stripe_width * len(colors), 3), dtype=np.uint8)
    for i, bgr in enumerate(colors):
        image[:, i * stripe_width:(i + 1) * stripe_width] = bgr
    return image


def test_segments_pure_face_colors():
    """Each saturated face color is labelled with its own FaceColor."""
    faces = FaceColor.faces()
    image = make_stripes([color.bgr for color in faces] + [(40, 40, 40)])

    node = ColorSegmenterNode()
    labels = node.segment(image)

    assert labels.shape == image.shape[:2]
    assert labels.dtype == np.uint8
    for i, color in enumerate(faces):
        stripe = labels[:, i * 16:(i + 1) * 16]
        assert np.all(stripe == color), color.name
    # gray is not saturated enough for any face
    assert np.all(labels[:, -16:] == FaceColor.BACKGROUND)


def test_dark_and_unsaturated_pixels_are_background():
    image = make_stripes([(0, 0, 0), (255, 255, 255), (20, 20, 40)])

    labels = ColorSegmenterNode().segment(image)

    assert np.all(labels == FaceColor.BACKGROUND)


def test_process_frame():
    image = make_stripes([FaceColor.RED.bgr, FaceColor.BLUE.bgr])
    frame = Frame(image=image, camera_index=2)

    result = ColorSegmenterNode(name="segmentation")(frame)

    assert isinstance(result, Frame)
    assert result.camera_index == 2
    assert result.image is image
    assert result.metadata["visible_colors"] == ["RED", "BLUE"]
    assert "segmentation_runtime" in result.metadata


def test_process_accepts_raw_image():
    image = make_stripes([FaceColor.GREEN.bgr])

    result = ColorSegmenterNode().process(image)

    assert np.all(result.segmentation == FaceColor.GREEN)


def test_opening_removes_speckle():
    """Isolated pixels are removed by the morphological opening."""
    image = np.full((32, 32, 3), 40, dtype=np.uint8)
    image[10, 10] = FaceColor.RED.bgr
    image[20:28, 20:28] = FaceColor.BLUE.bgr

    labels = ColorSegmenterNode(morph_kernel_size=3).segment(image)
    assert labels[10, 10] == FaceColor.BACKGROUND
    assert np.all(labels[20:28, 20:28] == FaceColor.BLUE)

    labels = ColorSegmenterNode(morph_kernel_size=0).segment(image)
    assert labels[10, 10] == FaceColor.RED


@pytest.fixture
def overlapping_model():
    """Red and magenta boxes that both contain hue 165."""
    return {
        "ranges": {
            FaceColor.RED: (HSVRange((160, 80, 50), (179, 255, 255)),),
            FaceColor.MAGENTA: (HSVRange((140, 80, 50), (167, 255, 255)),),
        },
    }


def ambiguous_image():
    # hue 165 in OpenCV units
    return make_stripes([(128, 0, 255)])


def test_tie_break_priority(overlapping_model):
    """Pixels matching two colors get the first color in the priority order."""
    red_first = ColorModel(
        priority=(FaceColor.RED, FaceColor.MAGENTA), **overlapping_model
    )
    magenta_first = ColorModel(
        priority=(FaceColor.MAGENTA, FaceColor.RED), **overlapping_model
    )
    image = ambiguous_image()

    node = ColorSegmenterNode(color_model=red_first, morph_kernel_size=0)
    masks = node.color_masks(image)
    assert masks[FaceColor.RED].all() and masks[FaceColor.MAGENTA].all()

    assert np.all(node.segment(image) == FaceColor.RED)
    node = ColorSegmenterNode(color_model=magenta_first, morph_kernel_size=0)
    assert np.all(node.segment(image) == FaceColor.MAGENTA)


def test_tie_break_background(overlapping_model):
    """With the background policy, ambiguous pixels belong to no face."""
    model = ColorModel(
        priority=(FaceColor.RED, FaceColor.MAGENTA),
        tie_break="background",
        **overlapping_model,
    )
    image = np.concatenate([ambiguous_image(), make_stripes([(255, 0, 200)])], axis=1)

    labels = ColorSegmenterNode(color_model=model, morph_kernel_size=0).segment(image)

    assert np.all(labels[:, :16] == FaceColor.BACKGROUND)
    # hue 144 is magenta only
    assert np.all(labels[:, 16:] == FaceColor.MAGENTA)


@pytest.mark.parametrize(
    "image",
    [
        np.zeros((32, 32), dtype=np.uint8),
        np.zeros((32, 32, 4), dtype=np.uint8),
        np.zeros((32, 32, 3), dtype=np.float32),
        np.zeros((0, 32, 3), dtype=np.uint8),
    ],
    ids=["grayscale", "bgra", "float", "empty"],
)
def test_rejects_malformed_images(image):
    with pytest.raises(InputShapeMismatchError):
        ColorSegmenterNode().segment(image)


def test_rejects_unexpected_image_size():
    node = ColorSegmenterNode(expected_size=(64, 48))

    node.segment(np.zeros((48, 64, 3), dtype=np.uint8))
    with pytest.raises(InputShapeMismatchError):
        node.segment(np.zeros((64, 48, 3), dtype=np.uint8))


def test_invalid_kernel_size():
    with pytest.raises(ValueError):
        ColorSegmenterNode(morph_kernel_size=-1)

"""
Tests for the CubeDetector orchestrator.
"""

import threading

import numpy as np
import pytest

from scipy.spatial.transform import Rotation

from wuerfel import CubeDetector
from wuerfel.core.exceptions import (
    InputShapeMismatchError,
    NonConvergenceError,
    UnderconstrainedPoseError,
)
from wuerfel.interfaces import CameraParameters, FaceColor, Pose
from wuerfel.nodes import CubeRendererNode

from conftest import IMAGE_SIZE, make_rig, rotation_angle

WIDTH, HEIGHT = IMAGE_SIZE


@pytest.fixture
def detector(cube_model, cameras):
    return CubeDetector(cameras, cube_model=cube_model)


def test_detects_rendered_cube(detector, reference_pose, rendered_images):
    """The upright cube at (0, 0, 0.1) is found within 2 mm and 1 degree."""
    pose = detector.detect_cube(rendered_images)

    assert pose.converged
    assert np.linalg.norm(pose.translation - reference_pose.translation) < 0.002
    assert np.rad2deg(rotation_angle(pose.rotation, reference_pose.rotation)) < 1.0
    assert pose.scores["num_observations"] == 7
    assert "detection_runtime" in pose.metadata


@pytest.mark.parametrize("distortion", [None, [-0.25, 0.05, 0.0, 0.0, 0.0]])
@pytest.mark.parametrize(
    "euler_deg, position",
    [
        ((0.0, 0.0, 0.0), (0.0, 0.0, 0.05)),
        ((0.0, 0.0, 30.0), (0.01, -0.01, 0.05)),
        ((20.0, -15.0, 40.0), (-0.01, 0.01, 0.06)),
    ],
)
def test_detects_rendered_cube_in_any_orientation(
    cube_model, euler_deg, position, distortion
):
    """Rendered views of a turned cube, with and without lens distortion."""
    cameras = make_rig(distortion_coefficients=distortion)
    truth = Pose(
        rotation=Rotation.from_euler("xyz", euler_deg, degrees=True).as_matrix(),
        translation=np.array(position),
    )
    renderer = CubeRendererNode(
        cube_model=cube_model, camera_parameters=cameras, image_size=IMAGE_SIZE
    )
    detector = CubeDetector(cameras, cube_model=cube_model)

    pose = detector.detect_cube(renderer.process(truth))

    assert pose.converged
    assert np.linalg.norm(pose.translation - truth.translation) < 0.002
    assert np.rad2deg(rotation_angle(pose.rotation, truth.rotation)) < 1.0


def test_detection_is_idempotent(detector, rendered_images):
    first = detector.detect_cube(rendered_images)
    second = detector.detect_cube(rendered_images)

    np.testing.assert_array_equal(first.rotation, second.rotation)
    np.testing.assert_array_equal(first.translation, second.translation)


def test_single_thread_matches_parallel(detector, rendered_images):
    parallel = detector.detect_cube(rendered_images)
    sequential = detector.detect_cube_single_thread(rendered_images)

    np.testing.assert_allclose(parallel.rotation, sequential.rotation, atol=1e-12)
    np.testing.assert_allclose(parallel.translation, sequential.translation, atol=1e-12)


def test_initial_pose(detector, reference_pose, rendered_images):
    pose = detector.detect_cube(rendered_images, initial_pose=reference_pose)

    assert pose.metadata["num_seeds"] == 1
    assert np.linalg.norm(pose.translation - reference_pose.translation) < 0.002


def test_single_color_images_are_underconstrained(detector):
    """Uniform images contain no color boundaries and hence no lines."""
    images = [np.full((64, 64, 3), FaceColor.RED.bgr, dtype=np.uint8) for _ in range(3)]

    with pytest.raises(UnderconstrainedPoseError) as excinfo:
        detector.detect_cube(images)
    assert excinfo.value.num_observations == 0

    snapshot = detector.debug_snapshot
    assert snapshot.pose is None
    assert [len(frame.lines) for frame in snapshot.frames] == [0, 0, 0]


def test_debug_image_before_detection(detector):
    debug = detector.create_debug_image()

    assert debug.shape == (0, 0, 3)
    assert detector.debug_snapshot is None


def test_debug_image_after_detection(detector, rendered_images):
    detector.detect_cube(rendered_images)

    debug = detector.create_debug_image()
    assert debug.shape == (3 * HEIGHT, 5 * WIDTH, 3)
    assert debug.dtype == np.uint8

    # the last column shows the wire frame drawn over the raw image
    assert not np.array_equal(debug[:, 4 * WIDTH:], debug[:, :WIDTH])

    filled = detector.create_debug_image(fill_faces=True)
    assert filled.shape == debug.shape


def test_debug_image_after_failed_detection(detector):
    images = [np.full((64, 64, 3), 40, dtype=np.uint8) for _ in range(3)]

    with pytest.raises(UnderconstrainedPoseError):
        detector.detect_cube(images)

    assert detector.create_debug_image().shape == (3 * 64, 5 * 64, 3)


def test_debug_image_while_detecting(detector, rendered_images):
    """The debug image is always built from one complete detection."""
    shapes = set()

    def run():
        for _ in range(3):
            detector.detect_cube(rendered_images)

    worker = threading.Thread(target=run)
    worker.start()
    while worker.is_alive():
        shapes.add(detector.create_debug_image().shape)
    worker.join()
    shapes.add(detector.create_debug_image().shape)

    assert shapes <= {(0, 0, 3), (3 * HEIGHT, 5 * WIDTH, 3)}
    assert (3 * HEIGHT, 5 * WIDTH, 3) in shapes


def test_frame_ids_are_unique_across_threads(detector, rendered_images):
    frame_ids = []

    def run():
        for _ in range(3):
            frame_ids.append(detector.detect_cube(rendered_images).metadata["frame_id"])

    workers = [threading.Thread(target=run) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert sorted(frame_ids) == [1, 2, 3, 4, 5, 6]


def test_nonconvergence_is_recorded_before_raising(
    cube_model, cameras, reference_pose, rendered_images
):
    """The unconverged pose carries its runtime and is logged and published."""
    detector = CubeDetector(
        cameras, cube_model=cube_model, max_iterations=1, raise_on_nonconvergence=True
    )
    logged = []
    detector.rerun_logger.log_pose = lambda pose, *args: logged.append(pose)
    start = Pose(
        rotation=Rotation.from_euler("xyz", [5.0, 5.0, 0.0], degrees=True).as_matrix(),
        translation=reference_pose.translation + 0.005,
    )

    with pytest.raises(NonConvergenceError) as excinfo:
        detector.detect_cube(rendered_images, initial_pose=start)

    pose = excinfo.value.pose
    assert not pose.converged
    assert "detection_runtime" in pose.metadata
    assert pose.metadata["frame_id"] == 1
    assert len(logged) == 1 and logged[0] is pose
    assert detector.debug_snapshot.pose is pose


def test_wrong_number_of_images(detector, rendered_images):
    with pytest.raises(InputShapeMismatchError):
        detector.detect_cube(rendered_images[:2])


def test_malformed_image(detector, rendered_images):
    images = list(rendered_images)
    images[1] = images[1][..., 0]

    with pytest.raises(InputShapeMismatchError):
        detector.detect_cube(images)
    # nothing was published for the rejected call
    assert detector.debug_snapshot is None


def test_image_size_from_calibration(cube_model, cameras, rendered_images):
    """Cameras with a calibrated image size only accept images of that size."""
    sized = [
        CameraParameters(
            camera_matrix=camera.camera_matrix,
            tf_world_to_camera=camera.tf_world_to_camera,
            image_size=(640, 480),
            name=camera.name,
        )
        for camera in cameras
    ]
    detector = CubeDetector(sized, cube_model=cube_model)

    with pytest.raises(InputShapeMismatchError):
        detector.detect_cube(rendered_images)


def test_requires_three_cameras(cameras):
    with pytest.raises(ValueError):
        CubeDetector(cameras[:2])


def test_pipelines_per_camera(detector):
    assert [pipeline.name for pipeline in detector.pipelines] == [
        "camera60",
        "camera180",
        "camera300",
    ]
    assert all(len(pipeline) == 2 for pipeline in detector.pipelines)

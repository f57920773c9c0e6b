"""
Shared fixtures: a synthetic three-camera rig around the cube and helpers to
render the cube or compute its exact edge lines at a known pose.
"""

import numpy as np
import pytest

from wuerfel.interfaces import CameraParameters, ColorPair, CubeModel, Line, Pose
from wuerfel.nodes import CubeRendererNode

IMAGE_SIZE = (720, 540)
CAMERA_MATRIX = np.array(
    [[590.0, 0.0, 360.0], [0.0, 590.0, 270.0], [0.0, 0.0, 1.0]], dtype=np.float64
)


def make_rig(radius=0.3, height=0.3, target=(0.0, 0.0, 0.05), distortion_coefficients=None):
    """Cameras at azimuth 60, 180 and 300 degrees, all looking at ``target``."""
    cameras = []
    for azimuth in (60, 180, 300):
        angle = np.deg2rad(azimuth)
        position = (radius * np.cos(angle), radius * np.sin(angle), height)
        cameras.append(
            CameraParameters.look_at(
                position,
                target,
                CAMERA_MATRIX,
                distortion_coefficients=distortion_coefficients,
                name=f"camera{azimuth}",
            )
        )
    return cameras


def visible_pairs(cube_model, pose, camera):
    """Color pairs whose two faces both point towards the camera."""
    world_vertices = pose.transform_points(cube_model.vertices)
    visible = set()
    for color in cube_model.face_layout:
        normal = pose.rotation @ cube_model.face_normal(color)
        center = world_vertices[cube_model.face_vertices(color)].mean(axis=0)
        if normal @ (camera.position - center) > 1e-9:
            visible.add(color)
    return [pair for pair in cube_model.color_pairs if set(pair) <= visible]


def project(camera, points):
    """Pinhole projection of world points (N, 3) into a camera without distortion."""
    camera_points = points @ camera.rotation.T + camera.translation
    pixels = camera_points @ camera.camera_matrix.T
    return pixels[:, :2] / pixels[:, 2:]


def exact_lines(cube_model, cameras, pose):
    """Noise-free line maps of all visible edges at ``pose``."""
    line_maps = []
    for camera in cameras:
        lines = {}
        for pair in visible_pairs(cube_model, pose, camera):
            p1, p2 = project(camera, pose.transform_points(cube_model.edge_points(pair)))
            lines[pair] = Line.from_points(p1, p2, support=100)
        line_maps.append(lines)
    return line_maps


def edge_line(cube_model, camera, pose, pair):
    """Exact line of one edge, regardless of visibility."""
    p1, p2 = project(camera, pose.transform_points(cube_model.edge_points(ColorPair(*pair))))
    return Line.from_points(p1, p2, support=100)


def rotation_angle(r1, r2):
    """Angle in radians of the relative rotation between two rotation matrices."""
    cos_angle = (np.trace(r1.T @ r2) - 1.0) / 2.0
    return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))


@pytest.fixture
def cube_model():
    return CubeModel.create()


@pytest.fixture
def cameras():
    return make_rig()


@pytest.fixture
def reference_pose():
    return Pose(rotation=np.eye(3), translation=np.array([0.0, 0.0, 0.1]))


@pytest.fixture
def renderer(cube_model, cameras):
    return CubeRendererNode(
        cube_model=cube_model, camera_parameters=cameras, image_size=IMAGE_SIZE
    )


@pytest.fixture
def rendered_images(renderer, reference_pose):
    return renderer.process(reference_pose)

"""
Core data interfaces for wuerfel.

These interfaces define the standardized data structures passed between the
segmentation, line detection and pose fusion nodes.
"""

from __future__ import annotations

import enum
import types
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import numpy.typing as npt
from scipy.spatial.transform import Rotation


class FaceColor(enum.IntEnum):
    """
    Label of one cube face, identified by its color.

    The integer values are the labels written into segmentation images,
    ``BACKGROUND`` (0) marks pixels that belong to no face.
    """

    BACKGROUND = 0
    RED = 1
    GREEN = 2
    BLUE = 3
    CYAN = 4
    MAGENTA = 5
    YELLOW = 6

    @classmethod
    def faces(cls) -> List["FaceColor"]:
        """All face colors, without the background sentinel."""
        return [c for c in cls if c is not cls.BACKGROUND]

    @property
    def bgr(self) -> Tuple[int, int, int]:
        """Display color in OpenCV BGR order."""
        return _FACE_BGR[self]


_FACE_BGR = {
    FaceColor.BACKGROUND: (0, 0, 0),
    FaceColor.RED: (0, 0, 255),
    FaceColor.GREEN: (0, 255, 0),
    FaceColor.BLUE: (255, 0, 0),
    FaceColor.CYAN: (255, 255, 0),
    FaceColor.MAGENTA: (255, 0, 255),
    FaceColor.YELLOW: (0, 255, 255),
}


@dataclass(frozen=True, order=True)
class ColorPair:
    """
    Unordered pair of face colors, identifying the cube edge shared by both faces.

    The pair is stored with the smaller color first, so ``ColorPair(a, b)`` and
    ``ColorPair(b, a)`` compare and hash equal.
    """

    first: FaceColor
    second: FaceColor

    def __post_init__(self):
        a, b = FaceColor(self.first), FaceColor(self.second)
        if FaceColor.BACKGROUND in (a, b):
            raise ValueError("ColorPair cannot contain the background label")
        if a == b:
            raise ValueError(f"ColorPair needs two distinct colors, got {a.name} twice")
        if b < a:
            a, b = b, a
        object.__setattr__(self, "first", a)
        object.__setattr__(self, "second", b)

    def __iter__(self):
        return iter((self.first, self.second))

    def __contains__(self, color: FaceColor) -> bool:
        return color in (self.first, self.second)

    def __str__(self) -> str:
        return f"{self.first.name.lower()}-{self.second.name.lower()}"


@dataclass
class Line:
    """
    2D line observation in one camera image.

    Coordinates are undistorted pixel coordinates of the camera.

    Attributes:
        point: A point on the line (2,), the centroid of the supporting pixels
        direction: Unit direction vector (2,)
        support: Number of boundary pixels supporting the line (confidence)
        endpoints: Extent of the supporting pixels along the line (2, 2) or None
        observed: False if the line was not observed in this frame
    """

    point: npt.NDArray[np.float64]
    direction: npt.NDArray[np.float64]
    support: int = 0
    endpoints: Optional[npt.NDArray[np.float64]] = None
    observed: bool = True

    def __post_init__(self):
        self.point = np.asarray(self.point, dtype=np.float64).reshape(2)
        direction = np.asarray(self.direction, dtype=np.float64).reshape(2)
        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            raise ValueError("Line direction must be non-zero")
        self.direction = direction / norm
        if self.endpoints is not None:
            self.endpoints = np.asarray(self.endpoints, dtype=np.float64).reshape(2, 2)

    @classmethod
    def from_points(cls, p1, p2, support: int = 0) -> "Line":
        """Create the line through two points."""
        p1 = np.asarray(p1, dtype=np.float64)
        p2 = np.asarray(p2, dtype=np.float64)
        return cls(
            point=(p1 + p2) / 2.0,
            direction=p2 - p1,
            support=support,
            endpoints=np.stack([p1, p2]),
        )

    @property
    def normal(self) -> npt.NDArray[np.float64]:
        """Unit normal of the line."""
        return np.array([-self.direction[1], self.direction[0]])

    def distance(self, points) -> npt.NDArray[np.float64]:
        """Signed perpendicular distance of points (N, 2) to the line."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return (points - self.point) @ self.normal


@dataclass(frozen=True)
class HSVRange:
    """Inclusive HSV box in OpenCV convention (hue 0..179, saturation/value 0..255)."""

    lower: Tuple[int, int, int]
    upper: Tuple[int, int, int]

    def __post_init__(self):
        lower = tuple(int(v) for v in self.lower)
        upper = tuple(int(v) for v in self.upper)
        if len(lower) != 3 or len(upper) != 3:
            raise ValueError("HSV bounds must have three components")
        if any(lo > hi for lo, hi in zip(lower, upper)):
            raise ValueError(f"Lower HSV bound {lower} exceeds upper bound {upper}")
        if lower[0] < 0 or upper[0] > 179:
            raise ValueError("Hue must lie in [0, 179]")
        object.__setattr__(self, "lower", lower)
        object.__setattr__(self, "upper", upper)


TIE_BREAK_POLICIES = ("priority", "background")


@dataclass(frozen=True)
class ColorModel:
    """
    Color thresholds used to classify pixels into face colors.

    Attributes:
        ranges: HSV boxes per face color; a pixel matches a color if it lies in any box
        priority: Order in which colors win when a pixel matches more than one
        tie_break: "priority" (first matching color in ``priority`` wins) or
            "background" (ambiguous pixels are labelled background)
    """

    ranges: Mapping[FaceColor, Tuple[HSVRange, ...]]
    priority: Tuple[FaceColor, ...] = tuple(FaceColor.faces())
    tie_break: str = "priority"

    def __post_init__(self):
        if self.tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(
                f"Unknown tie_break '{self.tie_break}', expected one of {TIE_BREAK_POLICIES}"
            )
        ranges = {FaceColor(c): tuple(r) for c, r in self.ranges.items()}
        if FaceColor.BACKGROUND in ranges:
            raise ValueError("The background label cannot have a color range")
        priority = tuple(FaceColor(c) for c in self.priority)
        missing = set(ranges) - set(priority)
        if missing:
            raise ValueError(
                f"Colors {sorted(c.name for c in missing)} are missing from the priority order"
            )
        object.__setattr__(self, "ranges", types.MappingProxyType(ranges))
        object.__setattr__(self, "priority", priority)

    @classmethod
    def default(cls) -> "ColorModel":
        """Compiled-in thresholds for the six saturated face colors."""
        s_min, v_min = 80, 50
        return cls(
            ranges={
                FaceColor.RED: (
                    HSVRange((0, s_min, v_min), (9, 255, 255)),
                    HSVRange((170, s_min, v_min), (179, 255, 255)),
                ),
                FaceColor.YELLOW: (HSVRange((20, s_min, v_min), (37, 255, 255)),),
                FaceColor.GREEN: (HSVRange((45, s_min, v_min), (75, 255, 255)),),
                FaceColor.CYAN: (HSVRange((80, s_min, v_min), (100, 255, 255)),),
                FaceColor.BLUE: (HSVRange((105, s_min, v_min), (135, 255, 255)),),
                FaceColor.MAGENTA: (HSVRange((140, s_min, v_min), (165, 255, 255)),),
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ColorModel":
        """
        Build a color model from already-parsed threshold data.

        Expected layout::

            {
                "ranges": {"red": [[[0, 80, 50], [9, 255, 255]], ...], ...},
                "priority": ["red", "green", ...],   # optional
                "tie_break": "priority",             # optional
            }
        """
        if "ranges" not in data:
            raise ValueError("Color model data must contain 'ranges'")

        ranges = {}
        for name, boxes in data["ranges"].items():
            color = FaceColor[str(name).upper()]
            ranges[color] = tuple(HSVRange(tuple(lo), tuple(hi)) for lo, hi in boxes)

        kwargs: Dict[str, Any] = {"ranges": ranges}
        if "priority" in data:
            kwargs["priority"] = tuple(FaceColor[str(n).upper()] for n in data["priority"])
        if "tie_break" in data:
            kwargs["tie_break"] = str(data["tie_break"])
        return cls(**kwargs)


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


# Outward axis and sign of each face in the cube frame
DEFAULT_FACE_LAYOUT = {
    FaceColor.RED: (0, 1),
    FaceColor.CYAN: (0, -1),
    FaceColor.GREEN: (1, 1),
    FaceColor.MAGENTA: (1, -1),
    FaceColor.BLUE: (2, 1),
    FaceColor.YELLOW: (2, -1),
}


@dataclass(frozen=True, eq=False)
class CubeModel:
    """
    Static 3D description of the colored cube.

    The cube is centered at the origin of its own frame. Vertex ``i`` has
    coordinate ``+width/2`` along axis ``k`` if bit ``k`` of ``i`` is set and
    ``-width/2`` otherwise.

    Attributes:
        width: Edge length in meters
        vertices: Vertex coordinates (8, 3) in the cube frame
        face_layout: Outward axis and sign of each face color
        edges: Vertex index pair of the edge shared by each pair of adjacent faces
    """

    width: float
    vertices: npt.NDArray[np.float64]
    face_layout: Mapping[FaceColor, Tuple[int, int]]
    edges: Mapping[ColorPair, Tuple[int, int]]

    @classmethod
    def create(
        cls,
        width: float = 0.065,
        face_layout: Optional[Mapping[FaceColor, Tuple[int, int]]] = None,
    ) -> "CubeModel":
        """
        Build the cube geometry and its color-pair to edge mapping.

        Args:
            width: Edge length in meters
            face_layout: Outward (axis, sign) per face color, defaults to
                ``DEFAULT_FACE_LAYOUT``

        Returns:
            Immutable CubeModel
        """
        if width <= 0:
            raise ValueError("Cube width must be positive")

        layout = dict(face_layout if face_layout is not None else DEFAULT_FACE_LAYOUT)
        if len(layout) != 6 or len(set(layout.values())) != 6:
            raise ValueError("Face layout must assign each of the six faces a distinct side")

        half = width / 2.0
        vertices = np.array(
            [[half if i & (1 << k) else -half for k in range(3)] for i in range(8)],
            dtype=np.float64,
        )

        edges = {}
        colors = sorted(layout)
        for i, a in enumerate(colors):
            for b in colors[i + 1:]:
                (axis_a, sign_a), (axis_b, sign_b) = layout[a], layout[b]
                if axis_a == axis_b:
                    # opposite faces
                    continue
                on_edge = [
                    v
                    for v in range(8)
                    if np.sign(vertices[v, axis_a]) == sign_a
                    and np.sign(vertices[v, axis_b]) == sign_b
                ]
                edges[ColorPair(a, b)] = (on_edge[0], on_edge[1])

        return cls(
            width=float(width),
            vertices=_readonly(vertices),
            face_layout=types.MappingProxyType(layout),
            edges=types.MappingProxyType(edges),
        )

    @property
    def color_pairs(self) -> List[ColorPair]:
        return sorted(self.edges)

    def edge_points(self, pair: ColorPair) -> npt.NDArray[np.float64]:
        """3D endpoints (2, 3) of the edge identified by a color pair."""
        i, j = self.edges[pair]
        return self.vertices[[i, j]]

    def face_normal(self, color: FaceColor) -> npt.NDArray[np.float64]:
        axis, sign = self.face_layout[color]
        normal = np.zeros(3)
        normal[axis] = sign
        return normal

    def face_vertices(self, color: FaceColor) -> List[int]:
        """Vertex indices of a face, in cyclic order around the face."""
        axis, sign = self.face_layout[color]
        u, v = [k for k in range(3) if k != axis]
        base = (1 << axis) if sign > 0 else 0
        corners = [(0, 0), (1, 0), (1, 1), (0, 1)]
        return [base | (cu << u) | (cv << v) for cu, cv in corners]


@dataclass(frozen=True, eq=False)
class CameraParameters:
    """
    Calibration of one camera.

    Attributes:
        camera_matrix: Intrinsic matrix (3, 3)
        distortion_coefficients: OpenCV lens distortion coefficients (N,)
        tf_world_to_camera: Rigid transform (4, 4) from the world frame to the camera frame
        image_size: Optional (width, height) in pixels
        name: Camera name, e.g. "camera60"
    """

    camera_matrix: npt.NDArray[np.float64]
    distortion_coefficients: npt.NDArray[np.float64] = field(
        default_factory=lambda: np.zeros(5)
    )
    tf_world_to_camera: npt.NDArray[np.float64] = field(
        default_factory=lambda: np.eye(4)
    )
    image_size: Optional[Tuple[int, int]] = None
    name: str = ""

    def __post_init__(self):
        K = np.asarray(self.camera_matrix, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"camera_matrix must be 3x3, got {K.shape}")
        T = np.asarray(self.tf_world_to_camera, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"tf_world_to_camera must be 4x4, got {T.shape}")
        dist = np.asarray(self.distortion_coefficients, dtype=np.float64).ravel()
        object.__setattr__(self, "camera_matrix", _readonly(K))
        object.__setattr__(self, "tf_world_to_camera", _readonly(T))
        object.__setattr__(self, "distortion_coefficients", _readonly(dist))
        if self.image_size is not None:
            object.__setattr__(self, "image_size", tuple(int(s) for s in self.image_size))

    @property
    def rotation(self) -> npt.NDArray[np.float64]:
        """Rotation part of the world to camera transform."""
        return self.tf_world_to_camera[:3, :3]

    @property
    def translation(self) -> npt.NDArray[np.float64]:
        """Translation part of the world to camera transform."""
        return self.tf_world_to_camera[:3, 3]

    @property
    def position(self) -> npt.NDArray[np.float64]:
        """Camera center in world coordinates."""
        return -self.rotation.T @ self.translation

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(np.abs(self.distortion_coefficients) > 0))

    @classmethod
    def look_at(
        cls,
        position,
        target,
        camera_matrix,
        distortion_coefficients=None,
        up_vector=(0.0, 0.0, 1.0),
        image_size: Optional[Tuple[int, int]] = None,
        name: str = "",
    ) -> "CameraParameters":
        """
        Create parameters for a camera at ``position`` looking at ``target``.

        The camera frame follows the OpenCV convention (x right, y down,
        z forward).
        """
        position = np.asarray(position, dtype=np.float64)
        forward = np.asarray(target, dtype=np.float64) - position
        length = np.linalg.norm(forward)
        if length < 1e-10:
            raise ValueError("Camera and target positions are identical")
        forward = forward / length

        right = np.cross(forward, np.asarray(up_vector, dtype=np.float64))
        if np.linalg.norm(right) < 1e-6:
            raise ValueError("Up vector is parallel to the viewing direction")
        right = right / np.linalg.norm(right)
        down = np.cross(forward, right)

        rotation_cam_to_world = np.column_stack([right, down, forward])
        tf = np.eye(4)
        tf[:3, :3] = rotation_cam_to_world.T
        tf[:3, 3] = -rotation_cam_to_world.T @ position

        return cls(
            camera_matrix=np.asarray(camera_matrix, dtype=np.float64),
            distortion_coefficients=(
                np.zeros(5) if distortion_coefficients is None else distortion_coefficients
            ),
            tf_world_to_camera=tf,
            image_size=image_size,
            name=name,
        )


@dataclass
class Pose:
    """
    Pose of the cube in the world frame.

    ``p_world = rotation @ p_cube + translation``

    Attributes:
        rotation: Rotation matrix (3, 3)
        translation: Translation vector (3,) in meters
        scores: Quality scores (final cost, number of observations, ...)
        metadata: Additional metadata dictionary
        converged: False if the optimizer ran out of iterations
    """

    rotation: npt.NDArray[np.float64]
    translation: npt.NDArray[np.float64]
    scores: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    converged: bool = True

    @property
    def position(self) -> npt.NDArray[np.float64]:
        return self.translation

    @property
    def quaternion(self) -> npt.NDArray[np.float64]:
        """Orientation as quaternion (x, y, z, w)."""
        return Rotation.from_matrix(self.rotation).as_quat()

    @classmethod
    def from_quaternion(cls, position, quaternion, **kwargs) -> "Pose":
        """Create a pose from a position and a quaternion (x, y, z, w)."""
        return cls(
            rotation=Rotation.from_quat(quaternion).as_matrix(),
            translation=np.asarray(position, dtype=np.float64),
            **kwargs,
        )

    def as_matrix(self) -> npt.NDArray[np.float64]:
        """Homogeneous transform (4, 4) from the cube frame to the world frame."""
        transform = np.eye(4)
        transform[:3, :3] = self.rotation
        transform[:3, 3] = self.translation
        return transform

    def transform_points(self, points) -> npt.NDArray[np.float64]:
        """Map points (N, 3) from the cube frame to the world frame."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation


@dataclass
class Frame:
    """
    Per-camera image and the artifacts derived from it.

    Attributes:
        image: BGR image as numpy array (H, W, 3)
        camera_index: Index of the camera that took the image
        segmentation: Label image (H, W) with FaceColor values, or None
        boundary: Mask (H, W) of pixels on color-pair boundaries, or None
        lines: Detected line per color pair
        metadata: Additional metadata dictionary
    """

    image: npt.NDArray[np.uint8]
    camera_index: Optional[int] = None
    segmentation: Optional[npt.NDArray[np.uint8]] = None
    boundary: Optional[npt.NDArray[np.uint8]] = None
    lines: Dict[ColorPair, Line] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


LineMaps = Sequence[Mapping[ColorPair, Line]]

"""
Exceptions raised by the cube detection pipeline.

A color pair that is not visible in any camera is not an error: it is simply
absent from the line maps and contributes nothing to the pose solve.
"""

from typing import Optional


class CubeDetectionError(Exception):
    """Base class for cube detection failures."""


class InputShapeMismatchError(CubeDetectionError, ValueError):
    """Input images or line maps do not have the expected count, shape or type."""


class UnderconstrainedPoseError(CubeDetectionError):
    """
    Too few independent line observations to determine all six pose parameters.

    Attributes:
        num_observations: Number of usable (camera, color pair) observations
    """

    def __init__(self, message: str, num_observations: int = 0):
        super().__init__(message)
        self.num_observations = num_observations


class NonConvergenceError(CubeDetectionError):
    """
    The pose optimizer exhausted its iteration budget.

    Attributes:
        pose: Best pose estimate reached before giving up
    """

    def __init__(self, message: str, pose: Optional["Pose"] = None):  # noqa: F821
        super().__init__(message)
        self.pose = pose

"""
Synthetic cube detection example.

This example demonstrates how to:
1. Set up a three-camera rig around the workspace
2. Render the colored cube at a known pose in every camera
3. Detect the cube pose from the rendered images
4. Save the debug image showing every detection stage

Optionally, intermediate results are streamed to the Rerun viewer.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from wuerfel import CameraParameters, CubeDetector, CubeModel, Pose
from wuerfel.nodes import CubeRendererNode

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_camera_rig(
    radius: float, height: float, image_size: tuple[int, int]
) -> list[CameraParameters]:
    """
    Create camera60, camera180 and camera300 on a circle around the workspace.

    Args:
        radius: Horizontal distance of the cameras from the z axis (meters)
        height: Camera height above the ground (meters)
        image_size: (width, height) of the camera images

    Returns:
        Calibrations of the three cameras
    """
    width, img_height = image_size
    camera_matrix = np.array(
        [[590.0, 0.0, width / 2], [0.0, 590.0, img_height / 2], [0.0, 0.0, 1.0]]
    )

    cameras = []
    for azimuth in (60, 180, 300):
        angle = np.deg2rad(azimuth)
        cameras.append(
            CameraParameters.look_at(
                position=(radius * np.cos(angle), radius * np.sin(angle), height),
                target=(0.0, 0.0, 0.05),
                camera_matrix=camera_matrix,
                image_size=image_size,
                name=f"camera{azimuth}",
            )
        )
    return cameras


def main():
    """Main function for command-line interface."""
    parser = argparse.ArgumentParser(
        description="Detect the colored cube in synthetic camera images"
    )
    parser.add_argument(
        "--position",
        type=float,
        nargs=3,
        default=[0.0, 0.0, 0.1],
        help="Cube position in meters"
    )
    parser.add_argument(
        "--euler",
        type=float,
        nargs=3,
        default=[0.0, 0.0, 0.0],
        help="Cube orientation as xyz Euler angles in degrees"
    )
    parser.add_argument(
        "--width",
        type=float,
        default=0.065,
        help="Cube edge length (meters)"
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=0.3,
        help="Camera distance from the z axis (meters)"
    )
    parser.add_argument(
        "--output",
        type=str,
        default="cube_debug.png",
        help="Path of the debug image"
    )
    parser.add_argument(
        "--fill-faces",
        action="store_true",
        help="Draw the detected cube with filled faces in the debug image"
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Stream intermediate results to Rerun"
    )

    args = parser.parse_args()

    cube_model = CubeModel.create(width=args.width)
    cameras = create_camera_rig(args.radius, 0.3, (720, 540))
    truth = Pose(
        rotation=Rotation.from_euler("xyz", args.euler, degrees=True).as_matrix(),
        translation=np.array(args.position),
    )

    renderer = CubeRendererNode(cube_model=cube_model, camera_parameters=cameras)
    images = renderer.process(truth)

    detector = CubeDetector(
        cameras,
        cube_model=cube_model,
        enable_rerun_logging=args.visualize,
    )
    pose = detector.detect_cube(images)

    position_error = np.linalg.norm(pose.translation - truth.translation)
    angle_error = np.rad2deg(
        (Rotation.from_matrix(truth.rotation).inv() * Rotation.from_matrix(pose.rotation)).magnitude()
    )
    logger.info(f"True position:     {truth.translation.round(4).tolist()}")
    logger.info(f"Detected position: {pose.translation.round(4).tolist()}")
    logger.info(f"Position error: {position_error * 1000:.2f} mm, rotation error: {angle_error:.2f} deg")
    logger.info(f"Scores: {pose.scores}")

    output = Path(args.output)
    cv2.imwrite(str(output), detector.create_debug_image(fill_faces=args.fill_faces))
    logger.info(f"Saved debug image to {output}")


if __name__ == "__main__":
    main()

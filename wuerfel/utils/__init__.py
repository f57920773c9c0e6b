"""Utilities for wuerfel."""

from .debug_image import colorize_segmentation, compose_grid
from .rerun_logger import RerunLogger

__all__ = ["RerunLogger", "colorize_segmentation", "compose_grid"]

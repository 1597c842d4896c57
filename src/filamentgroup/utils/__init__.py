"""Utility modules for FilamentGroup."""

from .color import Color, color_distance, hex_to_rgb
from .config import ConfigManager, GroupingConfig
from .logging import setup_logging

__all__ = [
    "ConfigManager",
    "GroupingConfig",
    "setup_logging",
    "Color",
    "color_distance",
    "hex_to_rgb",
]

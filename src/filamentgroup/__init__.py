"""FilamentGroup: filament to extruder and nozzle grouping for multi-material printing."""

__version__ = "0.1.0"
__author__ = "FilamentGroup Team"

from .core.context import FilamentGroupContext
from .core.grouper import FilamentGrouper, MultiNozzleGrouper, group_filaments
from .io.context_loader import load_context

__all__ = [
    "FilamentGroupContext",
    "FilamentGrouper",
    "MultiNozzleGrouper",
    "group_filaments",
    "load_context",
]

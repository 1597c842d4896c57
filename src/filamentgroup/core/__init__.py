"""Core grouping engine for FilamentGroup."""

from .clustering import MultiGroupMedoids, TwoGroupMedoids
from .context import (
    FilamentGroupContext,
    FilamentInfo,
    FilamentUsageType,
    GroupInfo,
    GroupMode,
    GroupStrategy,
    MachineFilamentInfo,
    MachineInfo,
    ModelInfo,
    NozzleGroupInfo,
    NozzleInfo,
    NozzleVolumeType,
    SpeedInfo,
)
from .distance import FlushDistanceEvaluator
from .errors import ErrorCode, FilamentGroupError, GroupOutcome
from .grouper import (
    FilamentGrouper,
    MultiNozzleGrouper,
    calc_filament_group_for_manual_multi_nozzle,
    calc_filament_group_for_match_multi_nozzle,
    group_filaments,
)
from .memory import CandidatePool, MemoryedGroup
from .reorder import reorder_filaments_for_minimum_flush_volume
from .selector import select_best_group_for_ams

__all__ = [
    "FilamentGrouper",
    "MultiNozzleGrouper",
    "group_filaments",
    "calc_filament_group_for_match_multi_nozzle",
    "calc_filament_group_for_manual_multi_nozzle",
    "TwoGroupMedoids",
    "MultiGroupMedoids",
    "FlushDistanceEvaluator",
    "CandidatePool",
    "MemoryedGroup",
    "reorder_filaments_for_minimum_flush_volume",
    "select_best_group_for_ams",
    "FilamentGroupContext",
    "FilamentInfo",
    "FilamentUsageType",
    "GroupInfo",
    "GroupMode",
    "GroupStrategy",
    "MachineFilamentInfo",
    "MachineInfo",
    "ModelInfo",
    "NozzleGroupInfo",
    "NozzleInfo",
    "NozzleVolumeType",
    "SpeedInfo",
    "ErrorCode",
    "FilamentGroupError",
    "GroupOutcome",
]

"""Input data model of the grouping optimizer.

The caller assembles a :class:`FilamentGroupContext` once per slicing session;
the grouping code only reads it. Strategies that need a modified view (merged
filaments, pinned extruders) build a new context instead of editing the
caller's one.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Set, Tuple

import numpy as np

from ..utils.color import Color


class NozzleVolumeType(IntEnum):
    """Flow class of a physical nozzle."""

    STANDARD = 0
    HIGH_FLOW = 1
    HYBRID = 2
    TPU_HIGH_FLOW = 3


class FilamentUsageType(IntEnum):
    SUPPORT_ONLY = 0
    MODEL_ONLY = 1
    HYBRID = 2


class GroupMode(Enum):
    FLUSH = "flush"
    MATCH = "match"


class GroupStrategy(Enum):
    BEST_COST = "best_cost"
    BEST_FIT = "best_fit"


@dataclass
class FilamentInfo:
    """Filament attributes that matter for grouping."""

    color: Color
    type: str
    is_support: bool = False
    usage_type: FilamentUsageType = FilamentUsageType.MODEL_ONLY


@dataclass
class MachineFilamentInfo(FilamentInfo):
    """A spool physically loaded in the printer (AMS slot or external spool)."""

    extruder_id: int = 0
    is_extended: bool = False

    def signature(self) -> Tuple[Color, str, bool]:
        """Key shared by interchangeable spools (same color, type and support flag)."""
        return (self.color, self.type, self.is_support)


@dataclass
class NozzleInfo:
    diameter: float
    volume_type: NozzleVolumeType
    extruder_id: int
    group_id: int  # unique nozzle id


@dataclass
class ModelInfo:
    """What the print needs: flush costs, layer usage and printability."""

    flush_matrix: np.ndarray  # [extruder][from][to]
    layer_filaments: List[List[int]]
    filament_info: List[FilamentInfo]
    filament_ids: List[str]
    unprintable_filaments: List[Set[int]] = field(default_factory=list)
    unprintable_volumes: Dict[int, Set[NozzleVolumeType]] = field(default_factory=dict)

    def __post_init__(self):
        self.flush_matrix = np.asarray(self.flush_matrix, dtype=np.float64)
        if self.flush_matrix.ndim != 3:
            raise ValueError(
                f"flush_matrix must be 3-dimensional, got shape {self.flush_matrix.shape}"
            )


@dataclass
class GroupInfo:
    total_filament_num: int
    max_gap_threshold: float = 0.0
    mode: GroupMode = GroupMode.FLUSH
    strategy: GroupStrategy = GroupStrategy.BEST_FIT
    ignore_ext_filament: bool = False
    filament_volume_map: List[int] = field(default_factory=list)


@dataclass
class MachineInfo:
    max_group_size: List[int]
    machine_filament_info: List[List[MachineFilamentInfo]] = field(default_factory=list)
    prefer_non_model_filament: List[bool] = field(default_factory=list)
    master_extruder_id: int = 0


@dataclass
class SpeedInfo:
    # filament -> extruder -> seconds
    filament_print_time: Dict[int, Dict[int, float]] = field(default_factory=dict)
    extruder_change_time: float = 0.0
    filament_change_time: float = 0.0
    group_with_time: bool = False


@dataclass
class NozzleGroupInfo:
    extruder_nozzle_list: Dict[int, List[int]] = field(default_factory=dict)
    nozzle_list: List[NozzleInfo] = field(default_factory=list)


@dataclass
class FilamentGroupContext:
    """Everything one grouping run reads."""

    model_info: ModelInfo
    group_info: GroupInfo
    machine_info: MachineInfo
    speed_info: SpeedInfo = field(default_factory=SpeedInfo)
    nozzle_info: NozzleGroupInfo = field(default_factory=NozzleGroupInfo)

    @property
    def extruder_count(self) -> int:
        return int(self.model_info.flush_matrix.shape[0])

    @property
    def is_multi_nozzle(self) -> bool:
        """True when at least one extruder owns more than one nozzle."""
        return any(len(nozzles) > 1 for nozzles in self.nozzle_info.extruder_nozzle_list.values())

    def prefers_non_model(self, extruder_id: int) -> bool:
        prefer = self.machine_info.prefer_non_model_filament
        return extruder_id < len(prefer) and bool(prefer[extruder_id])

    def copy(self) -> "FilamentGroupContext":
        """Deep copy for strategies that rewrite limits or layer usage."""
        return copy.deepcopy(self)

"""Shared fixtures for FilamentGroup tests."""

from typing import Dict, List, Optional, Sequence, Set

import numpy as np
import pytest

from filamentgroup.core.context import (
    FilamentGroupContext,
    FilamentInfo,
    GroupInfo,
    GroupMode,
    MachineFilamentInfo,
    MachineInfo,
    ModelInfo,
    NozzleGroupInfo,
    NozzleInfo,
    NozzleVolumeType,
    SpeedInfo,
)
from filamentgroup.core.limits import build_extruder_nozzle_list
from filamentgroup.utils.color import Color

PALETTE = ["#FF0000", "#00FF00", "#0000FF", "#FFFF00", "#FF00FF", "#00FFFF", "#FFFFFF", "#000000"]


def block_flush(n: int, blocks: Sequence[Set[int]], near: float = 10, far: float = 500, extruders: int = 2):
    """Flush matrix where switching inside a block is cheap and across blocks expensive."""
    block_of = {f: idx for idx, block in enumerate(blocks) for f in block}
    matrix = np.full((n, n), float(far))
    for a in range(n):
        for b in range(n):
            if a == b:
                matrix[a, b] = 0.0
            elif block_of.get(a, -1) == block_of.get(b, -2):
                matrix[a, b] = float(near)
    return np.stack([matrix] * extruders)


def make_context(
    flush_matrix,
    layer_filaments: List[List[int]],
    filament_types: Optional[List[str]] = None,
    filament_ids: Optional[List[str]] = None,
    colors: Optional[List[str]] = None,
    unprintable_filaments: Optional[List[Set[int]]] = None,
    spools: Optional[List[List[MachineFilamentInfo]]] = None,
    mode: GroupMode = GroupMode.FLUSH,
    nozzles: Optional[List[NozzleInfo]] = None,
    max_group_size: Optional[List[int]] = None,
    master_extruder_id: int = 0,
    print_time: Optional[Dict[int, Dict[int, float]]] = None,
) -> FilamentGroupContext:
    flush = np.asarray(flush_matrix, dtype=np.float64)
    n = flush.shape[1]
    types = filament_types or ["PLA"] * n
    colors = colors or [PALETTE[i % len(PALETTE)] for i in range(n)]
    nozzles = nozzles or []
    return FilamentGroupContext(
        model_info=ModelInfo(
            flush_matrix=flush,
            layer_filaments=layer_filaments,
            filament_info=[FilamentInfo(color=Color.from_hex(colors[i]), type=types[i]) for i in range(n)],
            filament_ids=filament_ids or [f"GF{i:02d}" for i in range(n)],
            unprintable_filaments=unprintable_filaments or [set(), set()],
        ),
        group_info=GroupInfo(total_filament_num=n, mode=mode),
        machine_info=MachineInfo(
            max_group_size=max_group_size or [16, 16],
            machine_filament_info=spools or [[], []],
            master_extruder_id=master_extruder_id,
        ),
        speed_info=SpeedInfo(filament_print_time=print_time or {}),
        nozzle_info=NozzleGroupInfo(extruder_nozzle_list=build_extruder_nozzle_list(nozzles), nozzle_list=nozzles),
    )


def spool(color: str, extruder_id: int, type_name: str = "PLA", is_support: bool = False) -> MachineFilamentInfo:
    return MachineFilamentInfo(
        color=Color.from_hex(color), type=type_name, is_support=is_support, extruder_id=extruder_id
    )


def dual_nozzle_heads(volume_type: NozzleVolumeType = NozzleVolumeType.STANDARD) -> List[NozzleInfo]:
    """Two extruders with two nozzles each: ids 0, 1 on extruder 0 and 2, 3 on extruder 1."""
    return [
        NozzleInfo(diameter=0.4, volume_type=volume_type, extruder_id=nid // 2, group_id=nid) for nid in range(4)
    ]


@pytest.fixture
def four_filament_context():
    """Filaments {0, 1} and {2, 3} are cheap to switch between, all share one layer."""
    return make_context(block_flush(4, [{0, 1}, {2, 3}]), [[0, 1, 2, 3]])

"""Placement limits, capacities and loaded-material helpers."""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..utils.color import Color
from ..utils.logging import get_logger
from .context import FilamentUsageType, MachineFilamentInfo, NozzleInfo

logger = get_logger(__name__)

_SUPPORT_PREFIX = re.compile(r"^Sup.(\w+)$")
_SUPPORT_SUFFIX = re.compile(r"^(\w+)-S$")

EXTERNAL_TRAY_NAME = "Ext"


def collect_sorted_used_filaments(layer_filaments: Iterable[Iterable[int]]) -> List[int]:
    """Sorted unique filament ids used on any layer."""
    used = set()
    for layer in layer_filaments:
        used.update(layer)
    return sorted(used)


def calc_max_group_size(
    ams_counts: Sequence[Mapping[int, int]], ignore_ext_filament: bool = False
) -> List[int]:
    """Filament capacity of each extruder.

    Args:
        ams_counts: Per extruder, a map of slots-per-unit to unit count
        ignore_ext_filament: If False, an extruder without AMS slots can still
            take one filament from its external spool

    Returns:
        Capacity per extruder, at least two entries
    """
    group_size = [0] * max(2, len(ams_counts))
    for idx, ams_count in enumerate(ams_counts):
        for slots, count in ams_count.items():
            group_size[idx] += int(slots) * int(count)

    if not ignore_ext_filament:
        group_size = [size if size > 0 else 1 for size in group_size]
    return group_size


def normalize_filament_type(type_name: str) -> str:
    """Strip support decorations (``Sup.PLA`` / ``PLA-S``) from a material type."""
    for pattern in (_SUPPORT_PREFIX, _SUPPORT_SUFFIX):
        match = pattern.match(type_name)
        if match:
            return match.group(1)
    return type_name


def _build_full_machine_filaments(
    slot_lists: Sequence[Sequence[Mapping]],
) -> List[List[MachineFilamentInfo]]:
    machine_filaments: List[List[MachineFilamentInfo]] = [[] for _ in range(max(2, len(slot_lists)))]
    for extruder_id, slots in enumerate(slot_lists):
        for slot in slots:
            color = slot.get("color") or ""
            type_name = normalize_filament_type(slot.get("type") or "")
            tray_name = slot.get("tray_name") or ""
            if not color or not type_name or not tray_name:
                logger.debug(f"Skipping incomplete slot on extruder {extruder_id}: {dict(slot)}")
                continue

            machine_filaments[extruder_id].append(
                MachineFilamentInfo(
                    color=Color.from_hex(color),
                    type=type_name,
                    is_support=bool(slot.get("is_support", False)),
                    extruder_id=extruder_id,
                    is_extended=tray_name == EXTERNAL_TRAY_NAME,
                )
            )
    return machine_filaments


def build_machine_filaments(
    slot_lists: Sequence[Sequence[Mapping]],
    ams_counts: Sequence[Mapping[int, int]],
    ignore_ext_filament: bool = False,
) -> List[List[MachineFilamentInfo]]:
    """Build the per-extruder list of loaded spools.

    AMS slots are preferred. An extruder falls back to its external spool
    only when it has no usable AMS slot and external spools are not ignored.

    Args:
        slot_lists: Per extruder, slot dicts with ``color``, ``type``,
            ``tray_name`` and optional ``is_support`` keys
        ams_counts: Per extruder AMS unit counts (see :func:`calc_max_group_size`)
        ignore_ext_filament: Never use external spools

    Returns:
        Loaded spools per extruder, at least two entries
    """
    full = _build_full_machine_filaments(slot_lists)
    result: List[List[MachineFilamentInfo]] = [[] for _ in range(len(full))]

    for idx, filaments in enumerate(full):
        if idx >= len(ams_counts):
            continue
        selected = [f for f in filaments if not f.is_extended]
        if not selected and not ignore_ext_filament:
            selected = [f for f in filaments if f.is_extended]
        result[idx] = selected
    return result


def remove_intersection(a: Set[int], b: Set[int]) -> bool:
    """Remove common members from both sets in place.

    Returns:
        True if the sets had any member in common
    """
    common = a & b
    a -= common
    b -= common
    return bool(common)


def collect_unprintable_limits(
    physical_unprintables: Sequence[Set[int]],
    geometric_unprintables: Sequence[Set[int]],
) -> Tuple[bool, List[Set[int]]]:
    """Merge material and geometry based unprintable sets into one limit per extruder.

    A filament unprintable on both extruders is dropped from the limits, and a
    filament reported on different extruders by different sources keeps the
    first extruder seen.

    Returns:
        (no_conflict, limits) where limits has one set per extruder
    """
    physical = [set(s) for s in physical_unprintables] + [set(), set()]
    geometric = [set(s) for s in geometric_unprintables] + [set(), set()]
    physical, geometric = physical[:2], geometric[:2]

    conflict = False
    conflict |= remove_intersection(physical[0], physical[1])
    conflict |= remove_intersection(geometric[0], geometric[1])

    filament_extruder: Dict[int, int] = {}
    for source in (physical, geometric):
        for extruder_id, filaments in enumerate(source):
            for fid in sorted(filaments):
                known = filament_extruder.get(fid)
                if known is not None and known != extruder_id:
                    conflict = True
                else:
                    filament_extruder[fid] = extruder_id

    limits: List[Set[int]] = [set(), set()]
    for fid, extruder_id in filament_extruder.items():
        limits[extruder_id].add(fid)

    if conflict:
        logger.warning("Unprintable limits conflict between extruders; conflicting filaments are left free")
    return not conflict, limits


def extract_indices(used_filaments: Sequence[int], unprintable_elems: Sequence[Set[int]]) -> List[Set[int]]:
    """Translate filament ids to positions in ``used_filaments``; unused ids are dropped."""
    position = {f: i for i, f in enumerate(used_filaments)}
    return [{position[f] for f in elems if f in position} for elems in unprintable_elems]


def extract_unprintable_limit_indices(
    unprintable_elems: Sequence[Set[int]], used_filaments: Sequence[int]
) -> Dict[int, int]:
    """Map used-filament position -> the single extruder it cannot be placed on."""
    idxs = extract_indices(used_filaments, unprintable_elems)
    if len(idxs) > 1:
        remove_intersection(idxs[0], idxs[1])

    limits: Dict[int, int] = {}
    for group_id, elems in enumerate(idxs):
        for f in sorted(elems):
            limits.setdefault(f, group_id)
    return limits


def extract_unprintable_limit_list(
    unprintable_elems: Sequence[Set[int]], used_filaments: Sequence[int]
) -> Dict[int, List[int]]:
    """Map used-filament position -> sorted list of groups it cannot be placed on."""
    idxs = extract_indices(used_filaments, unprintable_elems)
    if len(idxs) > 1:
        remove_intersection(idxs[0], idxs[1])

    limits: Dict[int, List[int]] = {}
    for group_id, elems in enumerate(idxs):
        for f in elems:
            limits.setdefault(f, []).append(group_id)
    return {f: sorted(set(groups)) for f, groups in limits.items()}


def check_printable(groups: Sequence[Iterable[int]], unprintable: Mapping[int, int]) -> bool:
    """True if no filament sits in the group it is forbidden from."""
    for group_id, group in enumerate(groups):
        for filament in group:
            if unprintable.get(filament) == group_id:
                return False
    return True


def build_extruder_nozzle_list(nozzles: Iterable[NozzleInfo]) -> Dict[int, List[int]]:
    """Sorted nozzle ids per extruder."""
    result: Dict[int, List[int]] = {}
    for nozzle in nozzles:
        result.setdefault(nozzle.extruder_id, []).append(nozzle.group_id)
    return {extruder_id: sorted(ids) for extruder_id, ids in sorted(result.items())}


def build_filament_usage_type_list(
    filament_is_support: Sequence[bool],
    object_filaments: Sequence[Iterable[int]],
    support_filaments: Optional[Iterable[int]] = None,
) -> List[FilamentUsageType]:
    """Classify each filament as support only, model only, or both.

    Args:
        filament_is_support: Per-filament support material flag
        object_filaments: Per object, the filaments its model uses
        support_filaments: Filaments configured for support or support interface

    Returns:
        Usage type per filament
    """
    model_used = set()
    for filaments in object_filaments:
        model_used.update(filaments)
    support_used = set(support_filaments or ())

    usage = []
    for idx, is_support in enumerate(filament_is_support):
        if is_support:
            usage.append(FilamentUsageType.SUPPORT_ONLY)
        elif idx in model_used and idx in support_used:
            usage.append(FilamentUsageType.HYBRID)
        elif idx in support_used:
            usage.append(FilamentUsageType.SUPPORT_ONLY)
        else:
            usage.append(FilamentUsageType.MODEL_ONLY)
    return usage


def update_used_filament_values(
    old_values: Sequence[int], new_values: Sequence[int], used_filaments: Iterable[int]
) -> List[int]:
    """Copy ``new_values`` into ``old_values`` at the used filament positions only."""
    result = list(old_values)
    for f in used_filaments:
        result[f] = new_values[f]
    return result

"""Re-rank grouping candidates against the spools loaded in the printer."""

from typing import List, Optional, Sequence

from ..utils.color import color_distance_matrix
from ..utils.logging import get_logger
from .context import FilamentInfo, MachineFilamentInfo, NozzleInfo
from .flow import INVALID_ID, make_match_solver

logger = get_logger(__name__)

FAIL_COST = 9999
DEFAULT_COLOR_THRESHOLD = 20.0


def _candidate_ams_cost(
    filament_to_nozzle: Sequence[int],
    nozzles_by_id,
    used_filaments: Sequence[int],
    used_filament_info: Sequence[FilamentInfo],
    machine_filament_info: Sequence[Sequence[MachineFilamentInfo]],
    color_threshold: float,
    backend: str,
) -> float:
    group_filaments: List[List[int]] = [[], []]
    for i, filament in enumerate(used_filaments):
        nozzle = nozzles_by_id.get(filament_to_nozzle[filament])
        extruder_id = nozzle.extruder_id if nozzle is not None else filament_to_nozzle[filament]
        group_filaments[0 if extruder_id == 0 else 1].append(i)

    cost = 0.0
    for extruder_id, members in enumerate(group_filaments):
        if not members:
            continue
        spools = machine_filament_info[extruder_id]
        if not spools:
            cost += len(group_filaments) * FAIL_COST
            continue

        distance = color_distance_matrix(
            [used_filament_info[i].color for i in members], [spool.color for spool in spools]
        )
        unlink = {}
        for row, i in enumerate(members):
            info = used_filament_info[i]
            forbidden = [
                col
                for col, spool in enumerate(spools)
                if info.type != spool.type or info.is_support != spool.is_support
            ]
            if forbidden:
                unlink[row] = forbidden

        l_nodes = list(range(len(members)))
        r_nodes = list(range(len(spools)))
        solver = make_match_solver(backend, distance, l_nodes, r_nodes, [len(l_nodes)] * len(r_nodes), unlink)
        for row, col in enumerate(solver.solve()):
            if col == INVALID_ID or distance[row, col] > color_threshold:
                cost += FAIL_COST
            else:
                cost += float(distance[row, col])
    return cost


def select_best_group_for_ams(
    filament_to_nozzles: Sequence[Sequence[int]],
    nozzle_list: Sequence[NozzleInfo],
    used_filaments: Sequence[int],
    used_filament_info: Sequence[FilamentInfo],
    machine_filament_info: Sequence[Sequence[MachineFilamentInfo]],
    color_threshold: float = DEFAULT_COLOR_THRESHOLD,
    backend: str = "flow",
) -> Optional[List[int]]:
    """Pick the candidate whose extruder groups best match the loaded spools.

    For each candidate the used filaments are split by extruder and matched to
    that extruder's spools (same material type and support flag only) by
    color distance. Unmatched filaments, matches above ``color_threshold``
    and filaments on an extruder without spools cost :data:`FAIL_COST`;
    other matches cost their color distance.

    Args:
        filament_to_nozzles: Candidate label vectors over all filaments
        nozzle_list: Nozzles; labels are looked up by nozzle id. Without
            nozzles, labels are taken as extruder ids
        used_filaments: Sorted used filament ids
        used_filament_info: Info of each used filament, same order
        machine_filament_info: Loaded spools per extruder
        color_threshold: Largest CIEDE2000 distance counted as a match
        backend: Match solver backend, "flow" or "hungarian"

    Returns:
        The lowest cost candidate (first wins ties), or None without
        candidates. With no spool loaded at all the first candidate wins
    """
    if not any(machine_filament_info):
        # nothing loaded: keep the caller's ranking
        return list(filament_to_nozzles[0]) if filament_to_nozzles else None

    machine = [list(spools) for spools in machine_filament_info][:2]
    while len(machine) < 2:
        machine.append([])
    nozzles_by_id = {nozzle.group_id: nozzle for nozzle in nozzle_list}

    best_map: Optional[List[int]] = None
    best_cost = float("inf")
    for idx, candidate in enumerate(filament_to_nozzles):
        cost = _candidate_ams_cost(
            candidate,
            nozzles_by_id,
            used_filaments,
            used_filament_info,
            machine,
            color_threshold,
            backend,
        )
        logger.debug(f"AMS candidate {idx}: cost {cost:.1f}")
        if best_map is None or cost < best_cost:
            best_cost = cost
            best_map = list(candidate)
    return best_map

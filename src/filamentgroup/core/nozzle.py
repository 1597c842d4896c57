"""Queries over a filament -> nozzle assignment and change-count estimates."""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .context import NozzleInfo


class MultiNozzleGroupResult:
    """Extruder and nozzle lookups for a nozzle label vector.

    Args:
        filament_nozzle_map: Nozzle id of every filament
        nozzle_list: Nozzles indexed by their id
        used_filaments: If given, only these filaments are considered assigned
    """

    def __init__(
        self,
        filament_nozzle_map: Sequence[int],
        nozzle_list: Sequence[NozzleInfo],
        used_filaments: Optional[Iterable[int]] = None,
    ):
        self.filament_map = list(filament_nozzle_map)
        nozzles_by_id = {nozzle.group_id: nozzle for nozzle in nozzle_list}

        filaments = range(len(self.filament_map)) if used_filaments is None else used_filaments
        self._filament_nozzle: Dict[int, NozzleInfo] = {}
        for filament_idx in filaments:
            self._filament_nozzle[filament_idx] = nozzles_by_id[self.filament_map[filament_idx]]

    def get_extruder_id(self, filament_id: int) -> int:
        nozzle = self._filament_nozzle.get(filament_id)
        return nozzle.extruder_id if nozzle is not None else -1

    def get_nozzle_for_filament(self, filament_id: int) -> Optional[NozzleInfo]:
        return self._filament_nozzle.get(filament_id)

    def are_filaments_same_extruder(self, filament_a: int, filament_b: int) -> bool:
        extruder_a = self.get_extruder_id(filament_a)
        extruder_b = self.get_extruder_id(filament_b)
        if extruder_a == -1 or extruder_b == -1:
            return False
        return extruder_a == extruder_b

    def are_filaments_same_nozzle(self, filament_a: int, filament_b: int) -> bool:
        nozzle_a = self.get_nozzle_for_filament(filament_a)
        nozzle_b = self.get_nozzle_for_filament(filament_b)
        if nozzle_a is None or nozzle_b is None:
            return False
        return nozzle_a.group_id == nozzle_b.group_id

    def get_extruder_list(self) -> List[int]:
        return sorted({nozzle.extruder_id for nozzle in self._filament_nozzle.values()})

    def get_extruder_count(self) -> int:
        return len(self.get_extruder_list())

    def get_nozzle_count(self, extruder_id: int = -1) -> int:
        """Distinct nozzles in use on ``extruder_id`` (all extruders for -1)."""
        return len(
            {
                nozzle.group_id
                for nozzle in self._filament_nozzle.values()
                if extruder_id == -1 or nozzle.extruder_id == extruder_id
            }
        )

    def get_used_nozzles(self, filament_list: Iterable[int], extruder_id: int = -1) -> List[NozzleInfo]:
        used: Dict[int, NozzleInfo] = {}
        for filament in filament_list:
            nozzle = self._filament_nozzle.get(filament)
            if nozzle is None:
                continue
            if extruder_id != -1 and nozzle.extruder_id != extruder_id:
                continue
            used.setdefault(nozzle.group_id, nozzle)
        return [used[nozzle_id] for nozzle_id in sorted(used)]

    def get_used_extruders(self, filament_list: Iterable[int]) -> List[int]:
        extruders = {self.get_extruder_id(f) for f in filament_list}
        extruders.discard(-1)
        return sorted(extruders)

    def get_used_extruders_nozzles_count(self, filament_list: Iterable[int]) -> Tuple[int, int]:
        """(distinct extruders, distinct nozzles) touched by the filaments."""
        filament_list = list(filament_list)
        return len(self.get_used_extruders(filament_list)), len(self.get_used_nozzles(filament_list))


class NozzleStatusRecorder:
    """Which filament currently sits in each nozzle."""

    def __init__(self):
        self._status: Dict[int, int] = {}

    def is_nozzle_empty(self, nozzle_id: int) -> bool:
        return nozzle_id not in self._status

    def get_filament_in_nozzle(self, nozzle_id: int) -> int:
        return self._status.get(nozzle_id, -1)

    def set_nozzle_status(self, nozzle_id: int, filament_id: int) -> None:
        self._status[nozzle_id] = filament_id

    def clear_nozzle_status(self, nozzle_id: int) -> None:
        self._status.pop(nozzle_id, None)


def get_estimate_extruder_change_count(
    layer_filaments: Sequence[Sequence[int]], result: MultiNozzleGroupResult
) -> int:
    """Extruder switches needed if every layer visits each used extruder once."""
    total = 0
    for filament_list in layer_filaments:
        total += max(0, len(result.get_used_extruders(filament_list)) - 1)
    return total


def get_estimate_nozzle_change_count(
    layer_filaments: Sequence[Sequence[int]], result: MultiNozzleGroupResult
) -> int:
    """Nozzle switches within extruders, summed over layers."""
    total = 0
    extruders = result.get_extruder_list()
    for filament_list in layer_filaments:
        for extruder_id in extruders:
            nozzle_count = len(result.get_used_nozzles(filament_list, extruder_id))
            if nozzle_count > 1:
                total += nozzle_count - 1
    return total


def get_estimate_extruder_filament_change_count(
    layer_filaments: Sequence[Sequence[int]],
    result: MultiNozzleGroupResult,
    layer_weights: Optional[Sequence[int]] = None,
) -> Tuple[int, int]:
    """Estimated (extruder changes, filament changes) over all layers.

    A layer touching ``e`` extruders and ``n`` nozzles with ``f`` filaments
    costs ``e - 1`` extruder changes and ``f - n`` filament changes.

    Args:
        layer_filaments: Filament ids per layer
        result: Nozzle assignment to evaluate
        layer_weights: Optional repeat count of each layer, for callers that
            collapse identical layers
    """
    extruder_changes = 0
    filament_changes = 0
    for idx, filament_list in enumerate(layer_filaments):
        weight = 1 if layer_weights is None else layer_weights[idx]
        extruders, nozzles = result.get_used_extruders_nozzles_count(filament_list)
        extruder_changes += weight * max(0, extruders - 1)
        filament_changes += weight * max(0, len(filament_list) - nozzles)
    return extruder_changes, filament_changes

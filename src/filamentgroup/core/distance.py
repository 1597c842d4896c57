"""Pairwise filament distances and scoring."""

from typing import Mapping, Sequence

import numpy as np

from ..utils.logging import get_logger
from .context import SpeedInfo

logger = get_logger(__name__)

# Approximate material constants used to convert flush volume into seconds
APPROX_DENSITY = 1.26  # g/cm^3
APPROX_FLUSH_SPEED = 180  # s/g
CORRECTION_FACTOR = 2


def evaluate_score(flush: float, time: float, with_time: bool = False) -> float:
    """Combine flush volume and print time into one score.

    Args:
        flush: Flush volume in mm^3
        time: Estimated time in seconds
        with_time: Whether time participates in the score

    Returns:
        ``flush`` alone, or flush converted to seconds plus ``time``
    """
    if not with_time:
        return flush
    flush_score = flush * APPROX_DENSITY * APPROX_FLUSH_SPEED * CORRECTION_FACTOR / 1000
    return flush_score + time


class FlushDistanceEvaluator:
    """Per-extruder distance between used filaments.

    The distance blends both flush directions (weighted towards the larger
    one by ``p``) and scales it by how many layers need both filaments, so
    filaments that are cheap to switch between and rarely coexist end up
    close to each other.

    Args:
        flush_matrix: Flush volumes, shape (extruders, filaments, filaments)
        used_filaments: Sorted filament ids; distances are indexed by position here
        layer_filaments: Filament ids used on each layer
        p: Weight of the larger flush direction
    """

    def __init__(
        self,
        flush_matrix,
        used_filaments: Sequence[int],
        layer_filaments: Sequence[Sequence[int]],
        p: float = 0.65,
    ):
        flush = np.asarray(flush_matrix, dtype=np.float64)
        used = list(used_filaments)
        n = len(used)
        position = {f: i for i, f in enumerate(used)}

        counts = np.zeros((n, n), dtype=np.int64)
        for layer in layer_filaments:
            idxs = [position[f] for f in layer if f in position]
            for a in range(len(idxs)):
                for b in range(a + 1, len(idxs)):
                    counts[idxs[a], idxs[b]] += 1
                    counts[idxs[b], idxs[a]] += 1

        if n == 0:
            self._distance = np.zeros((flush.shape[0], 0, 0), dtype=np.float64)
            return

        sub = flush[:, used][:, :, used]
        forward = sub
        backward = np.transpose(sub, (0, 2, 1))
        upper = np.maximum(forward, backward)
        lower = np.minimum(forward, backward)
        weight = np.maximum(counts, 1)

        distance = (upper * p + lower * (1 - p)) * weight[None, :, :]
        idx = np.arange(n)
        distance[:, idx, idx] = 0.0
        self._distance = distance

    @property
    def extruder_count(self) -> int:
        return int(self._distance.shape[0])

    @property
    def elem_count(self) -> int:
        return int(self._distance.shape[1])

    def get_distance(self, idx_a: int, idx_b: int, extruder_id: int) -> float:
        assert 0 <= extruder_id < self._distance.shape[0], f"extruder {extruder_id} out of range"
        assert 0 <= idx_a < self._distance.shape[1], f"index {idx_a} out of range"
        assert 0 <= idx_b < self._distance.shape[2], f"index {idx_b} out of range"
        return float(self._distance[extruder_id, idx_a, idx_b])


class TimeEvaluator:
    """Estimated print time of a filament map from per-extruder print times."""

    def __init__(self, speed_info: SpeedInfo):
        self.filament_print_time: Mapping[int, Mapping[int, float]] = speed_info.filament_print_time

    def get_estimated_time(self, filament_map: Sequence[int]) -> float:
        total = 0.0
        for filament_idx, extruder_time in self.filament_print_time.items():
            total += extruder_time.get(filament_map[filament_idx], 0.0)
        return total

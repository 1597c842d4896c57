"""Per-layer filament ordering for minimum flush volume.

These routines estimate how much a given extruder grouping will purge by
ordering the filaments of each layer on each extruder.
"""

from itertools import permutations
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..utils.logging import get_logger

logger = get_logger(__name__)

MAX_FORECAST_FILAMENTS = 5
MAX_EXACT_ORDER_FILAMENTS = 20

CustomSequence = Callable[[int], Optional[Sequence[int]]]
ReorderCache = Dict[Hashable, Tuple[float, List[int]]]


def _sequence_cost(wipe: np.ndarray, sequence: Sequence[int], start: Optional[int]) -> float:
    cost = 0.0
    prev = start
    for f in sequence:
        if prev is not None:
            cost += wipe[prev, f]
        prev = f
    return float(cost)


def _change_count(curr_seq: Sequence[int], next_seq: Sequence[int], start: Optional[int]) -> int:
    count = 0
    prev = start
    for seq in (curr_seq, next_seq):
        for f in seq:
            if prev is not None and prev != f:
                count += 1
            prev = f
    return count


def _order_greedy(wipe: np.ndarray, filaments: Sequence[int], start: Optional[int]) -> Tuple[List[int], float]:
    remaining = list(filaments)
    visited = [False] * len(remaining)
    sequence: List[int] = []
    cost = 0.0
    prev = start

    for _ in range(len(remaining)):
        if prev is None:
            prev = remaining[visited.index(False)]
        target_idx = -1
        target_cost = float("inf")
        for k, f in enumerate(remaining):
            if visited[k]:
                continue
            step = wipe[prev, f]
            if step < target_cost or (step == target_cost and prev == f):
                target_idx = k
                target_cost = step
        cost += target_cost
        sequence.append(remaining[target_idx])
        prev = remaining[target_idx]
        visited[target_idx] = True
    return sequence, float(cost)


def _order_with_forecast(
    wipe: np.ndarray,
    curr_filaments: Sequence[int],
    next_filaments: Sequence[int],
    start: Optional[int],
) -> Tuple[List[int], float]:
    best_cost = float("inf")
    best_change = None
    best_seq: List[int] = []
    next_orders = list(permutations(sorted(next_filaments)))

    for curr_seq in permutations(sorted(curr_filaments)):
        curr_cost = _sequence_cost(wipe, curr_seq, start)
        if curr_cost > best_cost:
            continue
        last = curr_seq[-1] if curr_seq else start
        for next_seq in next_orders:
            total_cost = curr_cost + _sequence_cost(wipe, next_seq, last)
            total_change = _change_count(curr_seq, next_seq, start)
            if total_cost < best_cost or (
                total_cost == best_cost and (best_change is None or total_change < best_change)
            ):
                best_cost = total_cost
                best_change = total_change
                best_seq = list(curr_seq)

    return best_seq, _sequence_cost(wipe, best_seq, start)


def _order_exact(wipe: np.ndarray, filaments: Sequence[int], start: Optional[int]) -> Tuple[List[int], float]:
    """Shortest Hamiltonian path by bitmask DP; node 0 is the fixed start."""
    order = list(filaments)
    inserted_start = False
    if start is not None:
        if start in order:
            pos = order.index(start)
            order[0], order[pos] = order[pos], order[0]
        else:
            order.insert(0, start)
            inserted_start = True
    else:
        start = order[0]

    n = len(order)
    weights = wipe[np.ix_(order, order)]
    size = 1 << n
    cache = np.full((size, n), np.inf)
    prev = np.full((size, n), -1, dtype=np.int64)
    cache[1, 0] = 0.0

    bits = 1 << np.arange(n)
    for state in range(3, size, 2):
        members = (state & bits) != 0
        prev_states = state ^ bits  # one row per target
        candidates = cache[prev_states] + weights.T  # [target, mid]
        candidates[:, ~members] = np.inf
        best_mid = np.argmin(candidates, axis=1)
        best_val = candidates[np.arange(n), best_mid]
        improve = members & (best_val < cache[state])
        cache[state, improve] = best_val[improve]
        prev[state, improve] = best_mid[improve]

    final_state = size - 1
    cost = float("inf")
    final_dst = 0
    for dst in range(n):
        if order[dst] != start and cost > cache[final_state, dst]:
            cost = float(cache[final_state, dst])
            final_dst = dst

    path = []
    state = final_state
    point = final_dst
    while point != -1:
        path.append(order[point])
        mid = int(prev[state, point])
        state -= 1 << point
        point = mid

    if inserted_start:
        path.pop()
    path.reverse()
    return path, cost


def get_extruders_order(
    wipe_volumes,
    curr_layer_filaments: Sequence[int],
    next_layer_filaments: Sequence[int],
    start_filament: Optional[int],
    use_forecast: bool,
    max_exact: int = MAX_EXACT_ORDER_FILAMENTS,
) -> Tuple[List[int], float]:
    """Best print order of one layer's filaments on a single nozzle.

    Args:
        wipe_volumes: Flush matrix of the nozzle, indexed [from][to]
        curr_layer_filaments: Filaments to order
        next_layer_filaments: Filaments of the next layer, used for forecasting
        start_filament: Filament loaded before the layer starts, if any
        use_forecast: Optimise this layer and the next one together
        max_exact: Largest layer solved exactly; bigger layers use a greedy order

    Returns:
        (sequence, flush cost of the sequence starting from ``start_filament``)
    """
    wipe = np.asarray(wipe_volumes, dtype=np.float64)
    curr = list(curr_layer_filaments)
    if not curr:
        return [], 0.0
    if len(curr) == 1:
        cost = float(wipe[start_filament, curr[0]]) if start_filament is not None else 0.0
        return curr, cost

    if use_forecast:
        return _order_with_forecast(wipe, curr, next_layer_filaments, start_filament)
    if len(curr) <= max_exact:
        return _order_exact(wipe, curr, start_filament)
    return _order_greedy(wipe, curr, start_filament)


def _filaments_in_group(group, filament_list: Sequence[int]) -> List[int]:
    return [f for f in filament_list if f in group]


def _collect_custom_sequences(
    layer_filaments: Sequence[Sequence[int]], get_custom_seq: Optional[CustomSequence]
) -> Dict[int, List[int]]:
    custom: Dict[int, List[int]] = {}
    if get_custom_seq is None:
        return custom
    for layer, curr_lf in enumerate(layer_filaments):
        seq = get_custom_seq(layer)
        if not seq:
            continue
        # custom sequences are 1-based filament numbers
        custom[layer] = [f - 1 for f in seq if (f - 1) in curr_lf]
    return custom


def reorder_filaments_for_minimum_flush_volume(
    filament_list: Sequence[int],
    filament_maps: Sequence[int],
    layer_filaments: Sequence[Sequence[int]],
    flush_matrix,
    get_custom_seq: Optional[CustomSequence] = None,
    with_sequences: bool = False,
    cache: Optional[ReorderCache] = None,
    max_forecast: int = MAX_FORECAST_FILAMENTS,
    max_exact: int = MAX_EXACT_ORDER_FILAMENTS,
) -> Union[float, Tuple[float, List[List[int]]]]:
    """Total flush volume of a two-extruder grouping with per-layer best ordering.

    Args:
        filament_list: Used filament ids
        filament_maps: Extruder (0 or 1) of each entry of ``filament_list``
        layer_filaments: Filament ids used on each layer
        flush_matrix: Flush volumes, shape (extruders, filaments, filaments)
        get_custom_seq: Optional callback returning a user defined 1-based
            filament order for a layer, or None
        with_sequences: Also return the merged per-layer print sequence
        cache: Optional memo shared between calls with the same inputs
        max_forecast: Forecast only when both layers have at most this many filaments
        max_exact: Largest layer ordered exactly

    Returns:
        The total flush, or (total flush, per-layer sequences) when
        ``with_sequences`` is set
    """
    flush = np.asarray(flush_matrix, dtype=np.float64)
    groups = [set(), set()]
    for f, label in zip(filament_list, filament_maps):
        if label in (0, 1):
            groups[label].add(f)

    custom_map = _collect_custom_sequences(layer_filaments, get_custom_seq)
    layer_sequences: List[List[List[int]]] = [[], []]
    memo: ReorderCache = cache if cache is not None else {}
    cost = 0.0

    for idx, group in enumerate(groups):
        if not group:
            continue
        current: Optional[int] = None

        for layer, curr_lf in enumerate(layer_filaments):
            if layer in custom_map:
                seq_in_group = _filaments_in_group(group, custom_map[layer])
                cost += _sequence_cost(flush[idx], seq_in_group, current)
                if seq_in_group:
                    current = seq_in_group[-1]
                layer_sequences[idx].append([])
                continue

            used = _filaments_in_group(group, curr_lf)
            next_lf = layer_filaments[layer + 1] if layer + 1 < len(layer_filaments) else []
            used_next = _filaments_in_group(group, next_lf)

            use_forecast = len(used) <= max_forecast and len(used_next) <= max_forecast
            key = (
                idx,
                frozenset(used),
                frozenset(used_next) if use_forecast else None,
                current,
            )
            if key in memo:
                layer_cost, sequence = memo[key]
            else:
                sequence, layer_cost = get_extruders_order(
                    flush[idx], used, used_next, current, use_forecast, max_exact
                )
                memo[key] = (layer_cost, sequence)

            layer_sequences[idx].append(list(sequence))
            if sequence:
                current = sequence[-1]
            cost += layer_cost

    if not with_sequences:
        return cost
    return cost, _merge_layer_sequences(layer_filaments, groups, layer_sequences, custom_map)


def _merge_layer_sequences(
    layer_filaments: Sequence[Sequence[int]],
    groups: List[set],
    layer_sequences: List[List[List[int]]],
    custom_map: Dict[int, List[int]],
) -> List[List[int]]:
    """Interleave both extruders per layer, starting with the extruder printed last."""
    sequences: List[List[int]] = [[] for _ in layer_filaments]
    last_group = 0
    if custom_map:
        first_layer = min(custom_map)
        first_filaments = custom_map[first_layer]
        if first_filaments:
            first_group = 0 if first_filaments[0] in groups[0] else 1
            last_group = 1 - first_group if first_layer & 1 else first_group

    def layer_part(group_id: int, layer: int) -> List[int]:
        per_layer = layer_sequences[group_id]
        return per_layer[layer] if per_layer else []

    for layer in range(len(layer_filaments)):
        if layer in custom_map:
            sequences[layer] = list(custom_map[layer])
            if sequences[layer]:
                last_group = 0 if sequences[layer][-1] in groups[0] else 1
            continue

        first, second = (1, 0) if last_group == 1 else (0, 1)
        sequences[layer].extend(layer_part(first, layer))
        tail = layer_part(second, layer)
        if tail:
            sequences[layer].extend(tail)
            last_group = second
    return sequences

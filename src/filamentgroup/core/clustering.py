"""Partitioning around medoids for filament grouping.

:class:`TwoGroupMedoids` splits filaments across two extruders;
:class:`MultiGroupMedoids` assigns them to any number of nozzles, where
nozzles on the same extruder share a capacity budget. Elements are positions
in the sorted used-filament list, and every evaluated partition is offered to
a :class:`CandidatePool` with prefer level 1.
"""

import itertools
import random
import time
from collections import Counter
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..utils.logging import get_logger
from .context import FilamentGroupContext, GroupStrategy, NozzleVolumeType
from .distance import FlushDistanceEvaluator, evaluate_score
from .flow import INVALID_ID, MaxFlowSolver, MinFlushFlowSolver
from .memory import ABSOLUTE_FLUSH_GAP_TOLERANCE, CandidatePool, MemoryedGroup
from .nozzle import MultiNozzleGroupResult, get_estimate_extruder_filament_change_count

logger = get_logger(__name__)

DEFAULT_CLUSTER_SIZE = 16
CLUSTER_PREFER_LEVEL = 1

# prefer level weights of the exhaustive small-instance search
PLACEABLE_WEIGHT = 10000
EXTRUDER_SPREAD_WEIGHT = 100
NOZZLE_TYPE_WEIGHT = 1


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


def init_cluster_center(
    elem_count: int,
    k: int,
    placeable_limits: Dict[int, List[int]],
    unplaceable_limits: Dict[int, List[int]],
    seed: int,
) -> List[int]:
    """Pick one feasible element per cluster.

    Elements are shuffled with a generator seeded by ``seed`` so restarts
    explore different medoids. A cluster that no element may join keeps -1.
    """
    l_nodes = list(range(elem_count))
    random.Random(seed).shuffle(l_nodes)
    position = {elem: idx for idx, elem in enumerate(l_nodes)}

    shuffled_placeable = {position[e]: list(groups) for e, groups in placeable_limits.items()}
    shuffled_unplaceable = {position[e]: list(groups) for e, groups in unplaceable_limits.items()}

    solver = MaxFlowSolver(l_nodes, list(range(k)), shuffled_placeable, shuffled_unplaceable)
    matching = solver.solve()

    centers = [-1] * k
    for idx, cluster in enumerate(matching):
        if cluster != INVALID_ID:
            centers[cluster] = l_nodes[idx]
    return centers


class TwoGroupMedoids:
    """Two-way PAM over used filaments with per-extruder capacities.

    Args:
        elem_count: Number of used filaments
        evaluator: Distances between used filaments
        default_group_id: Group that receives elements nothing else accepts
        max_cluster_size: Capacity of each of the two groups
        unplaceable_limits: Element -> the group it must not join
        memory_threshold: Relative gap of retained candidates
        absolute_tolerance: Retention tolerance when the best cost is zero
        retry: Number of seeded restarts
        seed: Base seed; restart i shuffles with seed + i
    """

    k = 2

    def __init__(
        self,
        elem_count: int,
        evaluator: FlushDistanceEvaluator,
        default_group_id: int = 0,
        max_cluster_size: Optional[Sequence[int]] = None,
        unplaceable_limits: Optional[Dict[int, int]] = None,
        memory_threshold: float = 0.0,
        absolute_tolerance: float = ABSOLUTE_FLUSH_GAP_TOLERANCE,
        retry: int = 10,
        seed: int = 0,
    ):
        self.elem_count = elem_count
        self.evaluator = evaluator
        self.default_group_id = default_group_id
        self.max_cluster_size = list(max_cluster_size or [DEFAULT_CLUSTER_SIZE] * self.k)
        self.unplaceable_limits = dict(unplaceable_limits or {})
        self.memory_threshold = memory_threshold
        self.retry = retry
        self.seed = seed
        self.memoryed_groups = CandidatePool(absolute_tolerance=absolute_tolerance)
        self.cluster_labels: List[int] = []

    def _remember(self, labels: List[int], cost: float) -> None:
        self.memoryed_groups.update(
            MemoryedGroup(list(labels), cost, CLUSTER_PREFER_LEVEL), self.memory_threshold
        )

    def cluster_small_data(self, unplaceable_limits: Dict[int, int], group_size: Sequence[int]) -> List[int]:
        """Place elements directly: limited ones on their allowed side, the rest
        into the first group with room left, else the default group."""
        labels = [-1] * self.elem_count
        remaining = list(group_size)

        for elem, forbidden in sorted(unplaceable_limits.items()):
            if elem < self.elem_count and labels[elem] == -1:
                gid = 1 - forbidden
                labels[elem] = gid
                remaining[gid] -= 1

        for elem in range(self.elem_count):
            if labels[elem] != -1:
                continue
            gid = next((idx for idx, size in enumerate(remaining) if size > 0), -1)
            if gid != -1:
                labels[elem] = gid
                remaining[gid] -= 1
            else:
                labels[elem] = self.default_group_id
        return labels

    def _distance_to_center(self, elem: int, center: int, group: int) -> float:
        if center == -1:
            return 0.0
        return self.evaluator.get_distance(elem, center, group)

    def assign_cluster_label(
        self,
        center: Sequence[int],
        unplaceable_limits: Dict[int, int],
        group_size: Sequence[int],
        strategy: GroupStrategy,
    ) -> List[int]:
        """Assign every element to one of the two medoids.

        Limited elements go to their only allowed group first. The rest are
        ranked by how much closer they are to medoid 0 than to medoid 1 and
        filled in that order, respecting capacities when they can hold all
        elements or when the strategy is BEST_FIT.
        """
        groups: List[Set[int]] = [set(), set()]
        capacity = list(group_size)
        ranked: List[Tuple[float, int]] = []

        for elem in range(self.elem_count):
            if elem in unplaceable_limits:
                gid = 1 - unplaceable_limits[elem]
                groups[gid].add(elem)
                capacity[gid] = max(capacity[gid] - 1, 0)
                continue
            gap = self._distance_to_center(elem, center[0], 0) - self._distance_to_center(elem, center[1], 1)
            ranked.append((gap, elem))
        ranked.sort()

        have_enough_size = len(ranked) <= capacity[0] + capacity[1]
        if have_enough_size or strategy == GroupStrategy.BEST_FIT:
            for gap, elem in ranked:
                if len(groups[0]) < capacity[0] and (gap <= 0 or len(groups[1]) >= capacity[1]):
                    groups[0].add(elem)
                elif len(groups[1]) < capacity[1] and (gap > 0 or len(groups[0]) >= capacity[0]):
                    groups[1].add(elem)
                elif gap <= 0:
                    groups[0].add(elem)
                else:
                    groups[1].add(elem)
        else:
            for gap, elem in ranked:
                groups[0 if gap <= 0 else 1].add(elem)

        labels = [0] * self.elem_count
        for elem in groups[1]:
            labels[elem] = 1
        return labels

    def calc_cost(self, labels: Sequence[int], medoids: Sequence[int]) -> float:
        total = 0.0
        for elem, label in enumerate(labels):
            if medoids[label] == -1:
                continue
            total += self.evaluator.get_distance(elem, medoids[label], label)
        return total

    def _forbidden_lists(self) -> Dict[int, List[int]]:
        return {elem: [group] for elem, group in self.unplaceable_limits.items()}

    def do_clustering(self, strategy: GroupStrategy, timeout_ms: int = 100) -> List[int]:
        """Run seeded restarts of medoid swapping until ``timeout_ms`` elapses.

        Returns:
            Labels of the lowest cost partition found
        """
        start = time.monotonic()

        if self.elem_count < self.k:
            self.cluster_labels = self.cluster_small_data(self.unplaceable_limits, self.max_cluster_size)
            centers = [-1] * self.k
            for elem, label in enumerate(self.cluster_labels):
                if centers[label] == -1:
                    centers[label] = elem
            self._remember(self.cluster_labels, self.calc_cost(self.cluster_labels, centers))
            return self.cluster_labels

        forbidden = self._forbidden_lists()
        best_labels: List[int] = [self.default_group_id] * self.elem_count
        best_cost = float("inf")
        timed_out = False

        for retry_count in range(self.retry):
            if retry_count > 0 and _elapsed_ms(start) >= timeout_ms:
                timed_out = True
                break

            centers = init_cluster_center(self.elem_count, self.k, {}, forbidden, self.seed + retry_count)
            labels = self.assign_cluster_label(centers, self.unplaceable_limits, self.max_cluster_size, strategy)
            cost = self.calc_cost(labels, centers)
            self._remember(labels, cost)

            improved = True
            while improved and _elapsed_ms(start) < timeout_ms:
                improved = False
                best_swap = (cost, -1, -1)
                for cluster_id in range(self.k):
                    for elem in range(self.elem_count):
                        if elem in centers or self.unplaceable_limits.get(elem) == cluster_id:
                            continue
                        trial = list(centers)
                        trial[cluster_id] = elem
                        trial_labels = self.assign_cluster_label(
                            trial, self.unplaceable_limits, self.max_cluster_size, strategy
                        )
                        trial_cost = self.calc_cost(trial_labels, trial)
                        if trial_cost < best_swap[0]:
                            best_swap = (trial_cost, cluster_id, elem)

                if best_swap[1] != -1:
                    improved = True
                    centers[best_swap[1]] = best_swap[2]
                    labels = self.assign_cluster_label(
                        centers, self.unplaceable_limits, self.max_cluster_size, strategy
                    )
                    cost = self.calc_cost(labels, centers)
                    self._remember(labels, cost)

            if cost < best_cost:
                best_cost = cost
                best_labels = labels

        if timed_out:
            logger.warning(f"Two-group clustering stopped after {timeout_ms}ms; using best partition so far")
        logger.debug(f"Two-group clustering finished with cost {best_cost:.1f}")
        self.cluster_labels = best_labels
        return best_labels


class MultiGroupMedoids:
    """K-way PAM over nozzles with per-nozzle and per-extruder capacities.

    Args:
        k: Number of clusters (nozzles)
        elem_count: Number of used filaments
        evaluator: Distances between used filaments
        default_group_id: Cluster that receives elements nothing else accepts
    """

    def __init__(
        self,
        k: int,
        elem_count: int,
        evaluator: FlushDistanceEvaluator,
        default_group_id: int = 0,
        default_cluster_size: int = DEFAULT_CLUSTER_SIZE,
        absolute_tolerance: float = ABSOLUTE_FLUSH_GAP_TOLERANCE,
        seed: int = 0,
    ):
        self.k = k
        self.seed = seed
        self.elem_count = elem_count
        self.evaluator = evaluator
        self.default_group_id = default_group_id
        self.max_cluster_size = [default_cluster_size] * k
        self.cluster_group_size: List[Tuple[Set[int], int]] = []
        self.nozzle_to_extruder = [0] * k
        self.placeable_limits: Dict[int, List[int]] = {}
        self.unplaceable_limits: Dict[int, List[int]] = {}
        self.memory_threshold = 0.0
        self.absolute_tolerance = absolute_tolerance
        self.memoryed_groups = CandidatePool(absolute_tolerance=absolute_tolerance)
        self.cluster_labels: List[int] = []

    def set_max_cluster_size(self, group_size: Sequence[int]) -> None:
        self.max_cluster_size = list(group_size)

    def set_cluster_group_size(self, cluster_group_size: Sequence[Tuple[Set[int], int]]) -> None:
        """Set (nozzle ids, shared capacity) per extruder; entry index is the extruder id."""
        self.cluster_group_size = [(set(nozzles), capacity) for nozzles, capacity in cluster_group_size]
        self.nozzle_to_extruder = [0] * self.k
        for extruder_id, (nozzles, _) in enumerate(self.cluster_group_size):
            for nozzle_id in nozzles:
                self.nozzle_to_extruder[nozzle_id] = extruder_id

    def set_placeable_limits(self, limits: Dict[int, List[int]]) -> None:
        self.placeable_limits = {elem: list(groups) for elem, groups in limits.items()}

    def set_unplaceable_limits(self, limits: Dict[int, List[int]]) -> None:
        self.unplaceable_limits = {elem: list(groups) for elem, groups in limits.items()}

    def set_memory_threshold(self, threshold: float) -> None:
        self.memory_threshold = threshold

    def have_enough_size(self) -> bool:
        enough = True
        if self.max_cluster_size:
            enough &= sum(self.max_cluster_size) >= self.elem_count
        if self.cluster_group_size:
            enough &= sum(capacity for _, capacity in self.cluster_group_size) >= self.elem_count
        return enough

    def calc_cost(self, labels: Sequence[int], centers: Sequence[int], cluster_id: int = -1) -> float:
        """Average intra-nozzle pair distance scaled by filament count minus one."""
        pair_count = [0] * self.k
        pair_sum = [0.0] * self.k
        members = [0] * self.k

        for i in range(self.elem_count):
            nozzle = labels[i]
            if cluster_id != -1 and nozzle != cluster_id:
                continue
            if centers[nozzle] == -1:
                continue
            members[nozzle] += 1
            for j in range(i + 1, self.elem_count):
                if labels[j] == nozzle:
                    pair_count[nozzle] += 1
                    pair_sum[nozzle] += self.evaluator.get_distance(i, j, self.nozzle_to_extruder[nozzle])

        total = 0.0
        for nozzle in range(self.k):
            if members[nozzle] > 0 and pair_sum[nozzle] > 0:
                total += pair_sum[nozzle] / pair_count[nozzle] * (members[nozzle] - 1)
        return total

    def assign_cluster_label(self, center: Sequence[int]) -> List[int]:
        """Minimum distance assignment of all elements to the current medoids."""
        distance = [
            [
                0.0 if center[j] == -1 else self.evaluator.get_distance(i, center[j], self.nozzle_to_extruder[j])
                for j in range(self.k)
            ]
            for i in range(self.elem_count)
        ]

        if self.have_enough_size():
            r_capacity = list(self.max_cluster_size)
            group_capacity = self.cluster_group_size
        else:
            logger.warning("Nozzle capacity below filament count; clustering without capacity limits")
            r_capacity = [self.elem_count] * self.k
            group_capacity = []

        solver = MinFlushFlowSolver(
            distance,
            list(range(self.elem_count)),
            list(range(self.k)),
            link_limits=self.placeable_limits,
            unlink_limits=self.unplaceable_limits,
            u_capacity=[1] * self.elem_count,
            v_capacity=r_capacity,
            v_group_capacity=group_capacity,
        )
        matching = solver.solve()
        return [self.default_group_id if label == INVALID_ID else label for label in matching]

    def _candidate_nozzles(self) -> List[List[int]]:
        candidates = []
        for elem in range(self.elem_count):
            allowed = set(self.placeable_limits.get(elem, range(self.k)))
            allowed -= set(self.unplaceable_limits.get(elem, ()))
            candidates.append(sorted(allowed))
        return candidates

    def cluster_small_data(self, context: FilamentGroupContext, used_filaments: Sequence[int]) -> List[int]:
        """Enumerate every nozzle assignment when there are no more filaments than nozzles.

        Each assignment is ranked by a three part prefer level (respected
        limits, spread over extruders, single nozzle type per extruder) and
        scored by intra-nozzle flush plus estimated change time.
        """
        nozzle_list = context.nozzle_info.nozzle_list
        nozzles_by_id = {nozzle.group_id: nozzle for nozzle in nozzle_list}
        candidates = self._candidate_nozzles()
        extruder_count = max(len(self.cluster_group_size), 1)

        position = {f: idx for idx, f in enumerate(used_filaments)}
        layer_counter = Counter(
            tuple(position[f] for f in layer if f in position) for layer in context.model_info.layer_filaments
        )
        unique_layers = list(layer_counter)
        layer_weights = [layer_counter[layer] for layer in unique_layers]

        speed = context.speed_info
        master_id = context.machine_info.master_extruder_id
        self.memoryed_groups = CandidatePool(absolute_tolerance=self.absolute_tolerance)
        seen: Set[Tuple] = set()
        all_centers = [0] * self.k

        for labels in itertools.product(range(self.k), repeat=self.elem_count):
            labels = list(labels)
            extruder_load = [0] * extruder_count
            volume_nozzles: List[Dict[NozzleVolumeType, Set[int]]] = [dict() for _ in range(extruder_count)]
            nozzle_members: Dict[int, List[int]] = {}
            placeable = 0

            for elem, nozzle_id in enumerate(labels):
                extruder_id = self.nozzle_to_extruder[nozzle_id]
                extruder_load[extruder_id] += 1
                volume_type = nozzles_by_id[nozzle_id].volume_type
                volume_nozzles[extruder_id].setdefault(volume_type, set()).add(nozzle_id)
                nozzle_members.setdefault(nozzle_id, []).append(elem)
                if nozzle_id in candidates[elem]:
                    placeable += 1

            spread = sum(
                min(extruder_load[e], len(self.cluster_group_size[e][0]))
                for e in range(len(self.cluster_group_size))
            )
            uniform = 0
            uniform_types = set()
            for e in range(extruder_count):
                if len(volume_nozzles[e]) == 1:
                    (volume_type, nozzles), = volume_nozzles[e].items()
                    if len(nozzles) == extruder_load[e]:
                        uniform += 1
                        uniform_types.add(volume_type)
            if len(uniform_types) == 1:
                uniform += 1

            prefer_level = placeable * PLACEABLE_WEIGHT + spread * EXTRUDER_SPREAD_WEIGHT + uniform * NOZZLE_TYPE_WEIGHT

            # nozzles of the same type on the same extruder are interchangeable
            signature = tuple(
                sorted(
                    (
                        int(nozzles_by_id[nozzle_id].volume_type),
                        self.nozzle_to_extruder[nozzle_id],
                        tuple(members),
                    )
                    for nozzle_id, members in nozzle_members.items()
                )
            )
            if signature in seen:
                continue
            seen.add(signature)

            result = MultiNozzleGroupResult(labels, nozzle_list)
            extruder_changes, filament_changes = get_estimate_extruder_filament_change_count(
                unique_layers, result, layer_weights
            )
            flush = self.calc_cost(labels, all_centers)
            change_time = extruder_changes * speed.extruder_change_time + filament_changes * speed.filament_change_time
            score = evaluate_score(flush, change_time, True)
            if master_id < extruder_count and extruder_load[master_id] < (self.elem_count + 1) // 2:
                score += self.absolute_tolerance

            self.memoryed_groups.update(MemoryedGroup(labels, score, prefer_level), self.memory_threshold)

        return list(self.memoryed_groups.best.group)

    def do_clustering(
        self,
        context: FilamentGroupContext,
        used_filaments: Sequence[int],
        timeout_ms: int = 100,
        retry: int = 10,
    ) -> List[int]:
        """Run seeded restarts of best-improving medoid swaps.

        Returns:
            Nozzle label of every element in the best partition found
        """
        start = time.monotonic()

        if self.elem_count <= self.k:
            self.cluster_labels = self.cluster_small_data(context, used_filaments)
            return self.cluster_labels

        best_labels = [self.default_group_id] * self.elem_count
        best_cost = float("inf")
        retry_count = 0

        while retry_count < retry and (retry_count == 0 or _elapsed_ms(start) < timeout_ms):
            centers = init_cluster_center(
                self.elem_count, self.k, self.placeable_limits, self.unplaceable_limits, self.seed + retry_count
            )
            labels = self.assign_cluster_label(centers)
            cost = self.calc_cost(labels, centers)
            self.memoryed_groups.update(MemoryedGroup(labels, cost, CLUSTER_PREFER_LEVEL), self.memory_threshold)

            changed = True
            while changed and _elapsed_ms(start) < timeout_ms:
                changed = False
                best_swap = (cost, -1, -1)
                for cluster_id in range(self.k):
                    if centers[cluster_id] == -1:
                        continue
                    for elem in range(self.elem_count):
                        if elem in centers or cluster_id in self.unplaceable_limits.get(elem, ()):
                            continue
                        trial = list(centers)
                        trial[cluster_id] = elem
                        trial_labels = self.assign_cluster_label(trial)
                        trial_cost = self.calc_cost(trial_labels, trial)
                        if trial_cost < best_swap[0]:
                            best_swap = (trial_cost, cluster_id, elem)

                if best_swap[1] != -1:
                    changed = True
                    centers[best_swap[1]] = best_swap[2]
                    labels = self.assign_cluster_label(centers)
                    cost = self.calc_cost(labels, centers)
                    self.memoryed_groups.update(
                        MemoryedGroup(labels, cost, CLUSTER_PREFER_LEVEL), self.memory_threshold
                    )

            if cost < best_cost:
                best_cost = cost
                best_labels = labels
            retry_count += 1

        if retry_count < retry:
            logger.warning(f"Nozzle clustering stopped after {retry_count} restarts ({timeout_ms}ms budget)")
        self.cluster_labels = best_labels
        return best_labels

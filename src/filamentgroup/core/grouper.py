"""Strategy selection for filament grouping.

:class:`FilamentGrouper` assigns filaments to extruders (single nozzle per
extruder); :class:`MultiNozzleGrouper` assigns them to individual nozzles.
:func:`group_filaments` picks the right one for a context.
"""

from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..utils.color import color_distance_matrix
from ..utils.config import GroupingConfig
from ..utils.logging import PerformanceLogger, get_logger
from .clustering import MultiGroupMedoids, TwoGroupMedoids
from .context import (
    FilamentGroupContext,
    FilamentInfo,
    FilamentUsageType,
    GroupMode,
    GroupStrategy,
    MachineFilamentInfo,
    NozzleVolumeType,
)
from .distance import FlushDistanceEvaluator, TimeEvaluator, evaluate_score
from .errors import ErrorCode, GroupOutcome
from .flow import INVALID_ID, make_match_solver
from .limits import (
    check_printable,
    collect_sorted_used_filaments,
    extract_unprintable_limit_indices,
    extract_unprintable_limit_list,
)
from .memory import CandidatePool, MemoryedGroup
from .reorder import CustomSequence, ReorderCache, reorder_filaments_for_minimum_flush_volume
from .selector import select_best_group_for_ams

logger = get_logger(__name__)

# prefer level rewards of the exhaustive two-extruder search
UNPLACEABLE_LIMIT_REWARD = 10000
MAX_SIZE_LIMIT_REWARD = 5000
SUPPORT_PREFER_REWARD = 100
BEST_FIT_LIMIT_REWARD = 10

TPU_HIGH_FLOW_TIME_FACTOR = 0.9

MergedFilaments = Dict[int, List[int]]


class FilamentGrouper:
    """Assign every filament to an extruder.

    Args:
        ctx: Grouping input; never modified
        config: Tunable constants, defaults when omitted
        get_custom_seq: Optional user defined per-layer print order (1-based)
    """

    def __init__(
        self,
        ctx: FilamentGroupContext,
        config: Optional[GroupingConfig] = None,
        get_custom_seq: Optional[CustomSequence] = None,
    ):
        self.ctx = ctx
        self.config = config or GroupingConfig()
        self.get_custom_seq = get_custom_seq
        self.memoryed_groups: List[List[int]] = []
        self.perf = PerformanceLogger()
        self._reorder_cache: ReorderCache = {}

    # ------------------------------------------------------------------
    # entry point

    def calc_filament_group(self) -> Tuple[List[int], float]:
        """Group filaments with the strategy the context calls for.

        Returns:
            (extruder label per filament, flush cost of the grouping)
        """
        if self.config.enable_tpu_strategy and self._has_tpu_high_flow():
            logger.info("Using TPU high-flow strategy")
            return self.calc_filament_group_for_tpu()

        if self.ctx.group_info.mode == GroupMode.MATCH:
            outcome = self.calc_filament_group_for_match()
            if outcome.ok:
                return outcome.labels, outcome.cost
            logger.info(f"Match mode unavailable ({outcome.error}); falling back to flush mode")

        merged = self.try_merge_filaments()
        original_ctx = self.ctx
        self.ctx = self.rebuild_context(merged)
        try:
            labels, cost = self.calc_filament_group_for_flush()
        finally:
            self.ctx = original_ctx
        return self.separate_merged_filaments(labels, merged), cost

    # ------------------------------------------------------------------
    # helpers

    def _used_filaments(self) -> List[int]:
        return collect_sorted_used_filaments(self.ctx.model_info.layer_filaments)

    def _used_filament_info(self, used_filaments: Sequence[int]) -> List[FilamentInfo]:
        return [self.ctx.model_info.filament_info[f] for f in used_filaments]

    def _has_tpu_high_flow(self) -> bool:
        return any(
            nozzle.volume_type == NozzleVolumeType.TPU_HIGH_FLOW for nozzle in self.ctx.nozzle_info.nozzle_list
        )

    def _max_group_size(self) -> List[int]:
        sizes = list(self.ctx.machine_info.max_group_size)
        while len(sizes) < 2:
            sizes.append(self.config.default_cluster_size)
        return sizes

    def _flush_of(self, labels: Sequence[int], used_filaments: Sequence[int]) -> float:
        return reorder_filaments_for_minimum_flush_volume(
            used_filaments,
            [labels[f] for f in used_filaments],
            self.ctx.model_info.layer_filaments,
            self.ctx.model_info.flush_matrix,
            get_custom_seq=self.get_custom_seq,
            cache=self._reorder_cache,
            max_forecast=self.config.max_forecast_filaments,
            max_exact=self.config.max_exact_order_filaments,
        )

    def rebuild_unprintables(self, used_filaments: Sequence[int], extruder_unprintables: Dict[int, int]) -> Dict[int, int]:
        """Fold nozzle volume incompatibilities into the per-extruder limits.

        A filament that ends up forbidden on more than one extruder is left
        without a limit.
        """
        result: Dict[int, int] = {}
        volumes = self.ctx.model_info.unprintable_volumes
        for f_idx, filament in enumerate(used_filaments):
            unprintable_ext = extruder_unprintables.get(f_idx, -1)
            multi_unprintable = False
            bad_volumes = volumes.get(filament, set())
            for nozzle in self.ctx.nozzle_info.nozzle_list:
                if nozzle.volume_type in bad_volumes:
                    if unprintable_ext == -1:
                        unprintable_ext = nozzle.extruder_id
                    elif unprintable_ext != nozzle.extruder_id:
                        multi_unprintable = True
            if not multi_unprintable and unprintable_ext != -1:
                result[f_idx] = unprintable_ext
        return result

    def _unplaceable_limits(self, used_filaments: Sequence[int]) -> Dict[int, int]:
        limits = extract_unprintable_limit_indices(self.ctx.model_info.unprintable_filaments, used_filaments)
        return self.rebuild_unprintables(used_filaments, limits)

    # ------------------------------------------------------------------
    # filament merging

    def try_merge_filaments(self) -> MergedFilaments:
        """Find filaments with the same id, color and unprintable extruders.

        Returns:
            Representative (lowest index) -> all members, for groups of two or more
        """
        model = self.ctx.model_info
        buckets: Dict[Tuple, List[int]] = {}
        for idx, filament_id in enumerate(model.filament_ids):
            unprintable_on = tuple(
                eid for eid, filaments in enumerate(model.unprintable_filaments) if idx in filaments
            )
            key = (filament_id, model.filament_info[idx].color.to_hex_str(include_alpha=True), unprintable_on)
            buckets.setdefault(key, []).append(idx)
        return {members[0]: members for members in buckets.values() if len(members) > 1}

    def rebuild_context(self, merged_filaments: MergedFilaments) -> FilamentGroupContext:
        """Context in which every merged filament is replaced by its representative."""
        if not merged_filaments:
            return self.ctx

        new_ctx = self.ctx.copy()
        merge_map = {f: rep for rep, members in merged_filaments.items() for f in members}

        model = new_ctx.model_info
        model.layer_filaments = [
            list(dict.fromkeys(merge_map.get(f, f) for f in layer)) for layer in model.layer_filaments
        ]
        model.unprintable_filaments = [
            {merge_map.get(f, f) for f in unprintables} for unprintables in model.unprintable_filaments
        ]

        print_time = new_ctx.speed_info.filament_print_time
        for f, rep in merge_map.items():
            if f == rep or f not in print_time:
                continue
            rep_time = print_time.setdefault(rep, {})
            for extruder_id, seconds in print_time.pop(f).items():
                rep_time[extruder_id] = rep_time.get(extruder_id, 0.0) + seconds

        logger.debug(f"Merged identical filaments: {merged_filaments}")
        return new_ctx

    @staticmethod
    def separate_merged_filaments(filament_map: Sequence[int], merged_filaments: MergedFilaments) -> List[int]:
        """Give every merged filament the label of its representative."""
        result = list(filament_map)
        for rep, members in merged_filaments.items():
            for f in members:
                result[f] = result[rep]
        return result

    # ------------------------------------------------------------------
    # match mode

    def calc_filament_group_for_match(self) -> GroupOutcome:
        """Assign each used filament to the extruder holding its closest loaded spool.

        Matching runs in three stages, relaxing constraints each time: same
        type, support flag and compatible extruder; compatible extruder
        only; no constraint.

        Returns:
            Outcome with extruder labels, or an EMPTY_AMS_FILAMENTS failure
            when nothing is loaded
        """
        self.perf.start_timer("match")
        ctx = self.ctx
        used_filaments = self._used_filaments()
        used_info = self._used_filament_info(used_filaments)

        machine_list: List[MachineFilamentInfo] = []
        equivalents: Dict[Tuple, List[int]] = {}
        for spools in ctx.machine_info.machine_filament_info:
            for spool in spools:
                equivalents.setdefault(spool.signature(), []).append(len(machine_list))
                machine_list.append(spool)

        if not machine_list:
            self.perf.end_timer("match")
            return GroupOutcome.failure(ErrorCode.EMPTY_AMS_FILAMENTS, "Empty ams filament in match mode")

        limits = self._unplaceable_limits(used_filaments)
        distance = color_distance_matrix([info.color for info in used_info], [spool.color for spool in machine_list])
        r_nodes = list(range(len(machine_list)))
        group = [ctx.machine_info.master_extruder_id] * ctx.group_info.total_filament_num
        extruder_filament_count: Dict[int, int] = {}

        def compatible(f_idx: int, extruder_id: int) -> bool:
            return limits.get(f_idx) != extruder_id

        def build_unlink(l_nodes, can_link) -> Dict[int, List[int]]:
            unlink = {}
            for i, f_idx in enumerate(l_nodes):
                forbidden = [j for j, m_idx in enumerate(r_nodes) if not can_link(f_idx, m_idx)]
                if forbidden:
                    unlink[i] = forbidden
            return unlink

        def assign(f_idx: int, m_idx: int) -> None:
            extruder_id = machine_list[m_idx].extruder_id
            group[used_filaments[f_idx]] = extruder_id
            extruder_filament_count[extruder_id] = extruder_filament_count.get(extruder_id, 0) + 1

        def apply_matching(matching: Sequence[int], l_nodes: Sequence[int]) -> List[int]:
            ungrouped = []
            to_optimize = []
            for idx, m_idx in enumerate(matching):
                f_idx = l_nodes[idx]
                if m_idx == INVALID_ID:
                    ungrouped.append(f_idx)
                    continue
                if len(equivalents[machine_list[m_idx].signature()]) > 1 and f_idx not in limits:
                    to_optimize.append((f_idx, m_idx))
                assign(f_idx, m_idx)

            for f_idx, old_m_idx in to_optimize:
                old_extruder = machine_list[old_m_idx].extruder_id
                extruder_filament_count[old_extruder] -= 1
                best = self._rebalance_equivalent_spool(
                    used_info[f_idx], equivalents[machine_list[old_m_idx].signature()], machine_list,
                    extruder_filament_count,
                )
                assign(f_idx, best if best != -1 else old_m_idx)
            return ungrouped

        def solve(l_nodes, unlink) -> List[int]:
            solver = make_match_solver(
                self.config.assignment_backend, distance, l_nodes, r_nodes, [len(l_nodes)] * len(r_nodes), unlink
            )
            return solver.solve()

        stages = [
            (
                "type+support+extruder",
                lambda f, m: used_info[f].type == machine_list[m].type
                and used_info[f].is_support == machine_list[m].is_support
                and compatible(f, machine_list[m].extruder_id),
            ),
            ("extruder", lambda f, m: compatible(f, machine_list[m].extruder_id)),
            ("none", None),
        ]

        l_nodes = list(range(len(used_filaments)))
        for name, can_link in stages:
            if not l_nodes:
                break
            unlink = build_unlink(l_nodes, can_link) if can_link is not None else {}
            l_nodes = apply_matching(solve(l_nodes, unlink), l_nodes)
            logger.debug(f"Match stage '{name}': {len(l_nodes)} filaments left")

        self.perf.end_timer("match")
        return GroupOutcome.success(group, self._flush_of(group, used_filaments))

    def _rebalance_equivalent_spool(
        self,
        info: FilamentInfo,
        options: Sequence[int],
        machine_list: Sequence[MachineFilamentInfo],
        extruder_filament_count: Dict[int, int],
    ) -> int:
        """Among equivalent spools, prefer support-friendly extruders, then the best balance."""
        is_support = info.usage_type == FilamentUsageType.SUPPORT_ONLY
        scored = []
        for m_idx in options:
            extruder_id = machine_list[m_idx].extruder_id
            score = self.config.support_prefer_score if is_support and self.ctx.prefers_non_model(extruder_id) else 0
            scored.append((m_idx, score))

        best_score = max(score for _, score in scored)
        best_candidate = -1
        best_gap = None
        for m_idx, score in scored:
            if score != best_score:
                continue
            extruder_id = machine_list[m_idx].extruder_id
            others = sum(count for eid, count in extruder_filament_count.items() if eid != extruder_id)
            gap = abs(extruder_filament_count.get(extruder_id, 0) + 1 - others)
            if best_gap is None or gap < best_gap:
                best_gap = gap
                best_candidate = m_idx
        return best_candidate

    # ------------------------------------------------------------------
    # flush mode

    def calc_filament_group_for_flush(self) -> Tuple[List[int], float]:
        """Minimum flush grouping, re-ranked against the loaded spools."""
        used_filaments = self._used_filaments()
        labels, cost = self.calc_min_flush_group()

        candidates = [labels] + self.memoryed_groups
        selected = select_best_group_for_ams(
            candidates,
            self.ctx.nozzle_info.nozzle_list,
            used_filaments,
            self._used_filament_info(used_filaments),
            self.ctx.machine_info.machine_filament_info,
            self.config.color_delta_threshold,
            self.config.assignment_backend,
        )
        if selected is not None and selected != labels:
            logger.info("Loaded spools favour an alternative grouping")
            return selected, self._flush_of(selected, used_filaments)
        return labels, cost

    def calc_min_flush_group(self) -> Tuple[List[int], float]:
        used_filaments = self._used_filaments()
        if len(used_filaments) < self.config.enum_threshold:
            return self.calc_min_flush_group_by_enum(used_filaments)
        return self.calc_min_flush_group_by_pam2(used_filaments, self.config.pam_timeout_ms)

    def calc_min_flush_group_by_enum(self, used_filaments: Sequence[int]) -> Tuple[List[int], float]:
        """Score every two-way split of the used filaments.

        Returns:
            (best extruder labels, flush of the best split)
        """
        self.perf.start_timer("enum")
        ctx = self.ctx
        limits = self._unplaceable_limits(used_filaments)
        max_size = self._max_group_size()
        master_id = ctx.machine_info.master_extruder_id
        time_evaluator = TimeEvaluator(ctx.speed_info)
        pool = CandidatePool(absolute_tolerance=self.config.absolute_flush_gap_tolerance)
        n = len(used_filaments)

        best: Optional[Tuple[int, float, float, List[int]]] = None
        for mask in range(1 << n):
            labels = [(mask >> j) & 1 for j in range(n)]
            groups = [[j for j in range(n) if labels[j] == 0], [j for j in range(n) if labels[j] == 1]]

            prefer_level = 0
            if check_printable(groups, limits):
                prefer_level += UNPLACEABLE_LIMIT_REWARD
            if len(groups[0]) <= max_size[0] and len(groups[1]) <= max_size[1]:
                prefer_level += MAX_SIZE_LIMIT_REWARD
            if (
                ctx.group_info.strategy == GroupStrategy.BEST_FIT
                and len(groups[0]) >= max_size[0]
                and len(groups[1]) >= max_size[1]
            ):
                prefer_level += BEST_FIT_LIMIT_REWARD
            for gidx in (0, 1):
                if ctx.prefers_non_model(gidx):
                    support_count = sum(
                        1
                        for j in groups[gidx]
                        if ctx.model_info.filament_info[used_filaments[j]].usage_type
                        == FilamentUsageType.SUPPORT_ONLY
                    )
                    prefer_level += support_count * SUPPORT_PREFER_REWARD

            filament_map = [master_id] * ctx.group_info.total_filament_num
            for j, f in enumerate(used_filaments):
                filament_map[f] = labels[j]

            flush = reorder_filaments_for_minimum_flush_volume(
                used_filaments,
                labels,
                ctx.model_info.layer_filaments,
                ctx.model_info.flush_matrix,
                get_custom_seq=self.get_custom_seq,
                cache=self._reorder_cache,
                max_forecast=self.config.max_forecast_filaments,
                max_exact=self.config.max_exact_order_filaments,
            )
            if master_id in (0, 1) and len(groups[master_id]) < (n + 1) // 2:
                flush += self.config.absolute_flush_gap_tolerance

            print_time = time_evaluator.get_estimated_time(filament_map)
            score = evaluate_score(flush, print_time, ctx.speed_info.group_with_time)

            if best is None or prefer_level > best[0] or (prefer_level == best[0] and score < best[1]):
                best = (prefer_level, score, flush, filament_map)

            pool.update(MemoryedGroup(filament_map, score, prefer_level), ctx.group_info.max_gap_threshold)
            logger.debug(
                f"Filament group {mask}: score {score:.1f}, flush {flush:.1f}, "
                f"time {print_time:.1f}, prefer {prefer_level}"
            )

        self.memoryed_groups = pool.groups()
        self.perf.end_timer("enum")
        return list(best[3]), best[2]

    def calc_min_flush_group_by_pam2(self, used_filaments: Sequence[int], timeout_ms: int) -> Tuple[List[int], float]:
        """Two-way clustering for instances too large to enumerate."""
        self.perf.start_timer("pam2")
        ctx = self.ctx
        master_id = ctx.machine_info.master_extruder_id
        evaluator = FlushDistanceEvaluator(
            ctx.model_info.flush_matrix, used_filaments, ctx.model_info.layer_filaments, self.config.flush_weight_p
        )
        pam = TwoGroupMedoids(
            len(used_filaments),
            evaluator,
            default_group_id=master_id,
            max_cluster_size=self._max_group_size()[:2],
            unplaceable_limits=self._unplaceable_limits(used_filaments),
            memory_threshold=ctx.group_info.max_gap_threshold,
            absolute_tolerance=self.config.absolute_flush_gap_tolerance,
            retry=self.config.multi_nozzle_retry,
            seed=self.config.random_seed,
        )
        cluster_labels = pam.do_clustering(ctx.group_info.strategy, timeout_ms)

        self.memoryed_groups = pam.memoryed_groups.expand(
            used_filaments, ctx.group_info.total_filament_num, fill=master_id
        )
        labels = [master_id] * ctx.group_info.total_filament_num
        for idx, f in enumerate(used_filaments):
            labels[f] = cluster_labels[idx]

        cost = self._flush_of(labels, used_filaments)
        self.perf.end_timer("pam2")
        return labels, cost

    # ------------------------------------------------------------------
    # TPU high-flow

    def calc_filament_group_for_tpu(self) -> Tuple[List[int], float]:
        """Assign filaments by print time, favouring extruders with a TPU high-flow nozzle."""
        ctx = self.ctx
        used_filaments = self._used_filaments()
        extruder_ids = sorted(ctx.nozzle_info.extruder_nozzle_list) or list(range(ctx.extruder_count))
        nozzles_by_id = {nozzle.group_id: nozzle for nozzle in ctx.nozzle_info.nozzle_list}
        tpu_extruders = {
            extruder_id
            for extruder_id, nozzle_ids in ctx.nozzle_info.extruder_nozzle_list.items()
            if any(
                nozzles_by_id[nid].volume_type == NozzleVolumeType.TPU_HIGH_FLOW
                for nid in nozzle_ids
                if nid in nozzles_by_id
            )
        }

        print_time = [
            [
                ctx.speed_info.filament_print_time.get(f, {}).get(e, 0.0)
                * (TPU_HIGH_FLOW_TIME_FACTOR if e in tpu_extruders else 1.0)
                for e in extruder_ids
            ]
            for f in used_filaments
        ]

        limits = self._unplaceable_limits(used_filaments)
        position = {e: j for j, e in enumerate(extruder_ids)}
        unlink = {i: [position[e]] for i, e in limits.items() if e in position}

        l_nodes = list(range(len(used_filaments)))
        solver = make_match_solver(
            self.config.assignment_backend,
            print_time,
            l_nodes,
            list(range(len(extruder_ids))),
            [len(l_nodes)] * len(extruder_ids),
            unlink,
        )
        group = [ctx.machine_info.master_extruder_id] * ctx.group_info.total_filament_num
        for idx, col in enumerate(solver.solve()):
            if col != INVALID_ID:
                group[used_filaments[idx]] = extruder_ids[col]
        return group, self._flush_of(group, used_filaments)


class MultiNozzleGrouper:
    """Assign every filament to a nozzle on printers with several nozzles per extruder.

    Nozzle ids (``NozzleInfo.group_id``) are expected to be 0..K-1.
    """

    def __init__(self, ctx: FilamentGroupContext, config: Optional[GroupingConfig] = None):
        self.ctx = ctx
        self.config = config or GroupingConfig()
        self.memoryed_groups: List[List[int]] = []
        self.perf = PerformanceLogger()

    def _used_filaments(self) -> List[int]:
        return collect_sorted_used_filaments(self.ctx.model_info.layer_filaments)

    def _default_nozzle(self) -> int:
        """First nozzle of the master extruder; label of unused filaments."""
        nozzles = self.ctx.nozzle_info.extruder_nozzle_list.get(self.ctx.machine_info.master_extruder_id)
        return nozzles[0] if nozzles else 0

    def _evaluator(self, used_filaments: Sequence[int]) -> FlushDistanceEvaluator:
        return FlushDistanceEvaluator(
            self.ctx.model_info.flush_matrix,
            used_filaments,
            self.ctx.model_info.layer_filaments,
            self.config.flush_weight_p,
        )

    def rebuild_nozzle_unprintables(
        self,
        used_filaments: Sequence[int],
        extruder_unprintables: Dict[int, List[int]],
        filament_volume_map: Sequence[int],
    ) -> Dict[int, List[int]]:
        """Nozzles each used filament must avoid.

        A nozzle is forbidden when its extruder is forbidden, when its volume
        type differs from the filament's expected volume (unless that is
        HYBRID), or when its volume type is unprintable for the filament.
        """
        result: Dict[int, List[int]] = {}
        volumes = self.ctx.model_info.unprintable_volumes
        for f_idx, filament in enumerate(used_filaments):
            expected = (
                NozzleVolumeType(filament_volume_map[filament])
                if filament < len(filament_volume_map)
                else NozzleVolumeType.HYBRID
            )
            bad_extruders = set(extruder_unprintables.get(f_idx, ()))
            bad_volumes = volumes.get(filament, set())

            forbidden = sorted(
                {
                    nozzle.group_id
                    for nozzle in self.ctx.nozzle_info.nozzle_list
                    if nozzle.extruder_id in bad_extruders
                    or (expected != NozzleVolumeType.HYBRID and expected != nozzle.volume_type)
                    or nozzle.volume_type in bad_volumes
                }
            )
            if forbidden:
                result[f_idx] = forbidden
        return result

    def calc_filament_group_by_pam(
        self, extruder_pins: Optional[Dict[int, int]] = None
    ) -> List[int]:
        """K-way clustering over all nozzles, re-ranked against the loaded spools.

        Args:
            extruder_pins: Optional used-filament position -> extruder it must stay on

        Returns:
            Nozzle id per filament
        """
        self.perf.start_timer("multi_nozzle_pam")
        ctx = self.ctx
        used_filaments = self._used_filaments()

        extruder_limits = extract_unprintable_limit_list(ctx.model_info.unprintable_filaments, used_filaments)
        for f_idx, extruder_id in (extruder_pins or {}).items():
            others = [e for e in ctx.nozzle_info.extruder_nozzle_list if e != extruder_id]
            extruder_limits[f_idx] = sorted(set(extruder_limits.get(f_idx, [])) | set(others))
        limits = self.rebuild_nozzle_unprintables(used_filaments, extruder_limits, ctx.group_info.filament_volume_map)

        k = len(ctx.nozzle_info.nozzle_list)
        default_nozzle = self._default_nozzle()
        pam = MultiGroupMedoids(
            k,
            len(used_filaments),
            self._evaluator(used_filaments),
            default_group_id=default_nozzle,
            default_cluster_size=self.config.default_cluster_size,
            absolute_tolerance=self.config.absolute_flush_gap_tolerance,
            seed=self.config.random_seed,
        )
        pam.set_unplaceable_limits(limits)
        max_group_size = ctx.machine_info.max_group_size
        pam.set_cluster_group_size(
            [
                (
                    set(nozzles),
                    max_group_size[extruder_id]
                    if extruder_id < len(max_group_size)
                    else self.config.default_cluster_size,
                )
                for extruder_id, nozzles in sorted(ctx.nozzle_info.extruder_nozzle_list.items())
            ]
        )
        pam.set_memory_threshold(ctx.group_info.max_gap_threshold)
        cluster_labels = pam.do_clustering(
            ctx, used_filaments, self.config.multi_nozzle_timeout_ms, self.config.multi_nozzle_retry
        )

        total = ctx.group_info.total_filament_num
        best = [default_nozzle] * total
        for idx, f in enumerate(used_filaments):
            best[f] = cluster_labels[idx]
        self.memoryed_groups = pam.memoryed_groups.expand(used_filaments, total, fill=default_nozzle)

        candidates = [best] + [group for group in self.memoryed_groups if group != best]
        selected = select_best_group_for_ams(
            candidates,
            ctx.nozzle_info.nozzle_list,
            used_filaments,
            [ctx.model_info.filament_info[f] for f in used_filaments],
            ctx.machine_info.machine_filament_info,
            self.config.color_delta_threshold,
            self.config.assignment_backend,
        )
        self.perf.end_timer("multi_nozzle_pam")
        return selected if selected is not None else best

    def calc_filament_group_two_pass(self) -> List[int]:
        """Split across extruders first, then refine to nozzles within each extruder."""
        ctx = self.ctx
        used_filaments = self._used_filaments()
        nozzle_lists = ctx.nozzle_info.extruder_nozzle_list
        if len(nozzle_lists) < 2 or ctx.extruder_count < 2:
            logger.debug("Single extruder head; grouping directly onto nozzles")
            return self.calc_filament_group_by_pam()

        nozzle_ceiling = [len(nozzle_lists.get(0, [])), len(nozzle_lists.get(1, []))]

        limits = extract_unprintable_limit_indices(ctx.model_info.unprintable_filaments, used_filaments)
        first = TwoGroupMedoids(
            len(used_filaments),
            self._evaluator(used_filaments),
            max_cluster_size=nozzle_ceiling,
            unplaceable_limits=limits,
            absolute_tolerance=self.config.absolute_flush_gap_tolerance,
            retry=self.config.multi_nozzle_retry,
            seed=self.config.random_seed,
        )
        first_labels = first.do_clustering(GroupStrategy.BEST_FIT, self.config.pam_timeout_ms)

        if len(ctx.nozzle_info.nozzle_list) > len(used_filaments):
            pins = dict(enumerate(first_labels))
        else:
            groups: List[Set[int]] = [set(), set()]
            for idx, label in enumerate(first_labels):
                if idx in limits:
                    groups[label].add(idx)
            for idx, label in enumerate(first_labels):
                if len(groups[label]) < nozzle_ceiling[label]:
                    groups[label].add(idx)
            pins = {idx: label for label, members in enumerate(groups) for idx in members}

        logger.debug(f"Two-pass grouping pins {len(pins)} of {len(used_filaments)} filaments")
        return self.calc_filament_group_by_pam(pins)


def _pin_to_extruders(ctx: FilamentGroupContext, filament_extruder_map: Sequence[int]) -> FilamentGroupContext:
    new_ctx = ctx.copy()
    unprintables = new_ctx.model_info.unprintable_filaments
    while len(unprintables) < 2:
        unprintables.append(set())
    for f in collect_sorted_used_filaments(ctx.model_info.layer_filaments):
        unprintables[1 - filament_extruder_map[f]].add(f)
    unlimited = len(collect_sorted_used_filaments(ctx.model_info.layer_filaments)) or 1
    new_ctx.machine_info.max_group_size = [max(unlimited, size) for size in new_ctx.machine_info.max_group_size]
    return new_ctx


def calc_filament_group_for_match_multi_nozzle(
    ctx: FilamentGroupContext, config: Optional[GroupingConfig] = None
) -> GroupOutcome:
    """Pin filaments to the extruder of their matched spool, then refine to nozzles."""
    outcome = FilamentGrouper(ctx, config).calc_filament_group_for_match()
    if not outcome.ok:
        return outcome
    labels = MultiNozzleGrouper(_pin_to_extruders(ctx, outcome.labels), config).calc_filament_group_by_pam()
    return GroupOutcome.success(labels)


def calc_filament_group_for_manual_multi_nozzle(
    filament_map_manual: Sequence[int], ctx: FilamentGroupContext, config: Optional[GroupingConfig] = None
) -> List[int]:
    """Refine a user chosen filament -> extruder map to nozzles."""
    return MultiNozzleGrouper(_pin_to_extruders(ctx, filament_map_manual), config).calc_filament_group_by_pam()


def group_filaments(
    ctx: FilamentGroupContext,
    config: Optional[GroupingConfig] = None,
    get_custom_seq: Optional[CustomSequence] = None,
) -> Tuple[List[int], Optional[float]]:
    """Group filaments for a context, choosing single or multi nozzle strategies.

    Returns:
        (label per filament, cost); labels are nozzle ids on multi-nozzle
        printers and extruder ids otherwise. The cost is None for nozzle labels.
    """
    perf = PerformanceLogger()
    perf.start_timer("group_filaments")

    if ctx.is_multi_nozzle:
        labels = None
        if ctx.group_info.mode == GroupMode.MATCH:
            outcome = calc_filament_group_for_match_multi_nozzle(ctx, config)
            if outcome.ok:
                labels = outcome.labels
            else:
                logger.info(f"Match mode unavailable ({outcome.error}); falling back to flush mode")
        if labels is None:
            labels = MultiNozzleGrouper(ctx, config).calc_filament_group_two_pass()
        perf.end_timer("group_filaments")
        return labels, None

    labels, cost = FilamentGrouper(ctx, config, get_custom_seq).calc_filament_group()
    perf.end_timer("group_filaments")
    return labels, cost

"""End-to-end tests for the grouping strategies."""

import time
from unittest.mock import patch

import numpy as np
import pytest

from conftest import block_flush, dual_nozzle_heads, make_context, spool
from filamentgroup.core.context import FilamentUsageType, GroupMode, NozzleInfo, NozzleVolumeType
from filamentgroup.core.errors import ErrorCode
from filamentgroup.core.grouper import (
    FilamentGrouper,
    MultiNozzleGrouper,
    calc_filament_group_for_manual_multi_nozzle,
    group_filaments,
)
from filamentgroup.utils.config import GroupingConfig


def _nozzle(volume_type, extruder_id, group_id):
    return NozzleInfo(diameter=0.4, volume_type=volume_type, extruder_id=extruder_id, group_id=group_id)


class TestFlushMode:
    """Test minimum flush grouping."""

    def test_cheap_pairs_share_an_extruder(self, four_filament_context):
        labels, cost = FilamentGrouper(four_filament_context).calc_filament_group()
        assert labels[0] == labels[1]
        assert labels[2] == labels[3]
        assert labels[0] != labels[2]
        assert cost == pytest.approx(20.0)

    def test_forced_placement(self):
        ctx = make_context(block_flush(4, [{0, 1}, {2, 3}]), [[0, 1, 2, 3]], unprintable_filaments=[{0}, set()])
        labels, _ = FilamentGrouper(ctx).calc_filament_group()
        assert labels == [1, 1, 0, 0]

    def test_every_filament_labelled(self):
        ctx = make_context(block_flush(5, [{0, 1}, {2, 3}, {4}]), [[0, 1, 2, 3]], master_extruder_id=1)
        labels, _ = FilamentGrouper(ctx).calc_filament_group()
        assert len(labels) == 5
        assert set(labels) <= {0, 1}
        # unused filament stays on the master extruder
        assert labels[4] == 1

    def test_candidates_retained(self, four_filament_context):
        grouper = FilamentGrouper(four_filament_context)
        grouper.calc_filament_group()
        assert grouper.memoryed_groups
        assert all(len(group) == 4 for group in grouper.memoryed_groups)

    def test_support_filament_goes_to_preferred_extruder(self):
        ctx = make_context(np.zeros((2, 3, 3)), [[0, 1, 2]])
        ctx.model_info.filament_info[2].usage_type = FilamentUsageType.SUPPORT_ONLY
        ctx.machine_info.prefer_non_model_filament = [False, True]
        labels, _ = FilamentGrouper(ctx).calc_filament_group()
        assert labels[2] == 1

    def test_large_instance_uses_clustering(self):
        ctx = make_context(
            block_flush(12, [set(range(6)), set(range(6, 12))]),
            [list(range(12)), [0, 6], [1, 7, 8]],
        )
        config = GroupingConfig(pam_timeout_ms=2000)
        with patch.object(FilamentGrouper, "calc_min_flush_group_by_enum") as enum_mock:
            labels, cost = FilamentGrouper(ctx, config).calc_filament_group()
        enum_mock.assert_not_called()
        assert len(set(labels[:6])) == 1
        assert len(set(labels[6:])) == 1
        assert labels[0] != labels[6]
        assert cost >= 0

    def test_clustering_respects_time_budget(self):
        ctx = make_context(
            block_flush(12, [set(range(6)), set(range(6, 12))]),
            [list(range(12)), [0, 6], [1, 7, 8]],
        )
        grouper = FilamentGrouper(ctx, GroupingConfig(pam_timeout_ms=200))
        start = time.monotonic()
        labels, _ = grouper.calc_min_flush_group_by_pam2(list(range(12)), 200)
        elapsed = time.monotonic() - start
        assert len(labels) == 12
        # one swap round may finish after the deadline
        assert elapsed < 0.2 + 1.5

    def test_duplicate_filaments_keep_flush_optimal_split(self):
        # nothing loaded, so fewer used extruders must not win over lower flush
        ctx = make_context(
            block_flush(4, [{0, 1, 2, 3}]),
            [[0, 2], [1, 3]],
            filament_ids=["GFA00", "GFB00", "GFA00", "GFB00"],
            colors=["#FF0000", "#00FF00", "#FF0000", "#00FF00"],
        )
        labels, cost = FilamentGrouper(ctx).calc_filament_group()
        assert cost == pytest.approx(0.0)
        assert labels[0] == labels[2]
        assert labels[1] == labels[3]
        assert labels[0] != labels[1]

    def test_loaded_spools_break_ties(self, four_filament_context):
        # red/green on extruder 1 and blue/yellow on extruder 0 favour the mirrored split
        four_filament_context.machine_info.machine_filament_info = [
            [spool("#0000FF", 0), spool("#FFFF00", 0)],
            [spool("#FF0000", 1), spool("#00FF00", 1)],
        ]
        labels, _ = FilamentGrouper(four_filament_context).calc_filament_group()
        assert labels == [1, 1, 0, 0]
        four_filament_context.machine_info.machine_filament_info.reverse()
        for extruder_id, spools in enumerate(four_filament_context.machine_info.machine_filament_info):
            for s in spools:
                s.extruder_id = extruder_id
        labels, _ = FilamentGrouper(four_filament_context).calc_filament_group()
        assert labels == [0, 0, 1, 1]


class TestMergeFilaments:
    """Test merging of identical filaments."""

    @pytest.fixture
    def ctx(self):
        return make_context(
            block_flush(4, [{0, 1}, {2, 3}]),
            [[0, 1, 2, 3], [1, 2]],
            filament_ids=["GFA00", "GFA00", "GFB00", "GFC00"],
            colors=["#FF0000", "#FF0000", "#00FF00", "#0000FF"],
            print_time={0: {0: 1.0}, 1: {0: 2.0, 1: 3.0}},
        )

    def test_identical_filaments_merged(self, ctx):
        assert FilamentGrouper(ctx).try_merge_filaments() == {0: [0, 1]}

    def test_unprintable_difference_blocks_merge(self, ctx):
        ctx.model_info.unprintable_filaments = [{1}, set()]
        assert FilamentGrouper(ctx).try_merge_filaments() == {}

    def test_rebuild_context(self, ctx):
        grouper = FilamentGrouper(ctx)
        rebuilt = grouper.rebuild_context({0: [0, 1]})
        assert rebuilt.model_info.layer_filaments == [[0, 2, 3], [0, 2]]
        assert rebuilt.speed_info.filament_print_time == {0: {0: 3.0, 1: 3.0}}
        assert ctx.model_info.layer_filaments == [[0, 1, 2, 3], [1, 2]]

    def test_separate_merged_filaments(self):
        assert FilamentGrouper.separate_merged_filaments([1, 0, 0, 1], {0: [0, 1]}) == [1, 1, 0, 1]

    def test_merged_filaments_share_label(self, ctx):
        labels, _ = FilamentGrouper(ctx).calc_filament_group()
        assert labels[0] == labels[1]
        assert ctx.model_info.layer_filaments == [[0, 1, 2, 3], [1, 2]]


class TestMatchMode:
    """Test matching filaments to loaded spools."""

    @pytest.fixture
    def ctx(self):
        return make_context(
            block_flush(3, [{0}, {1}, {2}]),
            [[0, 1, 2]],
            filament_types=["PLA", "PLA", "PETG"],
            colors=["#FF0000", "#0000FF", "#00FF00"],
            spools=[[spool("#FF0000", 0)], [spool("#0000FF", 1)]],
            mode=GroupMode.MATCH,
        )

    @pytest.mark.parametrize("backend", ["flow", "hungarian"])
    def test_partial_match(self, ctx, backend):
        outcome = FilamentGrouper(ctx, GroupingConfig(assignment_backend=backend)).calc_filament_group_for_match()
        assert outcome.ok
        assert outcome.labels[0] == 0
        assert outcome.labels[1] == 1
        assert outcome.labels[2] in (0, 1)
        assert outcome.cost is not None

    def test_unprintable_limit_overrides_color(self, ctx):
        ctx.model_info.unprintable_filaments = [{0}, set()]
        labels, _ = FilamentGrouper(ctx).calc_filament_group()
        assert labels[0] == 1

    def test_empty_ams(self, ctx):
        ctx.machine_info.machine_filament_info = [[], []]
        outcome = FilamentGrouper(ctx).calc_filament_group_for_match()
        assert not outcome.ok
        assert outcome.error.code == ErrorCode.EMPTY_AMS_FILAMENTS

    def test_empty_ams_falls_back_to_flush(self, four_filament_context):
        four_filament_context.group_info.mode = GroupMode.MATCH
        labels, cost = FilamentGrouper(four_filament_context).calc_filament_group()
        assert labels[0] == labels[1] != labels[2] == labels[3]
        assert cost == pytest.approx(20.0)

    def test_equivalent_spools_balance_extruders(self):
        ctx = make_context(
            block_flush(2, [{0}, {1}]),
            [[0, 1]],
            colors=["#FF0000", "#FF0000"],
            filament_ids=["GFA00", "GFA01"],
            spools=[[spool("#FF0000", 0)], [spool("#FF0000", 1)]],
            mode=GroupMode.MATCH,
        )
        outcome = FilamentGrouper(ctx).calc_filament_group_for_match()
        assert sorted(outcome.labels) == [0, 1]


class TestTpuStrategy:
    """Test the TPU high-flow strategy."""

    @pytest.fixture
    def ctx(self):
        return make_context(
            block_flush(2, [{0}, {1}]),
            [[0, 1]],
            nozzles=[_nozzle(NozzleVolumeType.TPU_HIGH_FLOW, 0, 0), _nozzle(NozzleVolumeType.STANDARD, 1, 1)],
            print_time={0: {0: 10.0, 1: 10.0}, 1: {0: 100.0, 1: 50.0}},
        )

    def test_assigns_by_print_time(self, ctx):
        labels, _ = FilamentGrouper(ctx, GroupingConfig(enable_tpu_strategy=True)).calc_filament_group()
        assert labels == [0, 1]

    def test_disabled_by_default(self, ctx):
        with patch.object(FilamentGrouper, "calc_filament_group_for_tpu") as tpu_mock:
            FilamentGrouper(ctx).calc_filament_group()
        tpu_mock.assert_not_called()


class TestUnprintableRebuild:
    """Test folding nozzle volume limits into placement limits."""

    def test_extruder_limits_from_volume_types(self):
        ctx = make_context(
            np.zeros((2, 3, 3)),
            [[0, 1, 2]],
            nozzles=[_nozzle(NozzleVolumeType.STANDARD, 0, 0), _nozzle(NozzleVolumeType.HIGH_FLOW, 1, 1)],
        )
        ctx.model_info.unprintable_volumes = {
            0: {NozzleVolumeType.HIGH_FLOW},
            2: {NozzleVolumeType.STANDARD, NozzleVolumeType.HIGH_FLOW},
        }
        assert FilamentGrouper(ctx).rebuild_unprintables([0, 1, 2], {}) == {0: 1}

    def test_nozzle_limits(self):
        nozzles = [
            _nozzle(NozzleVolumeType.STANDARD, 0, 0),
            _nozzle(NozzleVolumeType.HIGH_FLOW, 0, 1),
            _nozzle(NozzleVolumeType.STANDARD, 1, 2),
            _nozzle(NozzleVolumeType.HIGH_FLOW, 1, 3),
        ]
        ctx = make_context(np.zeros((2, 2, 2)), [[0, 1]], nozzles=nozzles)
        ctx.model_info.unprintable_volumes = {1: {NozzleVolumeType.HIGH_FLOW}}
        limits = MultiNozzleGrouper(ctx).rebuild_nozzle_unprintables(
            [0, 1], {1: [1]}, [int(NozzleVolumeType.HIGH_FLOW), int(NozzleVolumeType.HYBRID)]
        )
        assert limits == {0: [0, 2], 1: [1, 2, 3]}


class TestMultiNozzle:
    """Test grouping onto individual nozzles."""

    @pytest.fixture
    def ctx(self):
        return make_context(
            block_flush(4, [{0, 1}, {2, 3}]),
            [[0, 1, 2, 3]],
            nozzles=dual_nozzle_heads(),
            unprintable_filaments=[{0}, set()],
        )

    def test_two_pass_labels_nozzles(self, ctx):
        labels, cost = group_filaments(ctx, GroupingConfig(multi_nozzle_timeout_ms=2000))
        assert cost is None
        assert len(labels) == 4
        assert all(0 <= label < 4 for label in labels)
        # filament 0 cannot use extruder 0 (nozzles 0 and 1)
        assert labels[0] in (2, 3)

    def test_single_extruder_head(self):
        nozzles = [_nozzle(NozzleVolumeType.STANDARD, 0, 0), _nozzle(NozzleVolumeType.STANDARD, 0, 1)]
        ctx = make_context(
            block_flush(4, [{0, 1}, {2, 3}], extruders=1),
            [[0, 1, 2, 3]],
            nozzles=nozzles,
            unprintable_filaments=[set()],
            max_group_size=[16],
        )
        labels, cost = group_filaments(ctx, GroupingConfig(multi_nozzle_timeout_ms=2000))
        assert cost is None
        assert set(labels) <= {0, 1}
        assert labels[0] == labels[1]
        assert labels[2] == labels[3]
        assert labels[0] != labels[2]

    def test_manual_map_pins_extruders(self, ctx):
        labels = calc_filament_group_for_manual_multi_nozzle([1, 1, 0, 0], ctx)
        assert [label // 2 for label in labels] == [1, 1, 0, 0]

    def test_match_mode_pins_matched_extruder(self):
        ctx = make_context(
            block_flush(2, [{0}, {1}]),
            [[0, 1]],
            colors=["#FF0000", "#0000FF"],
            spools=[[spool("#FF0000", 0)], [spool("#0000FF", 1)]],
            mode=GroupMode.MATCH,
            nozzles=dual_nozzle_heads(),
        )
        labels, _ = group_filaments(ctx)
        assert labels[0] in (0, 1)
        assert labels[1] in (2, 3)

    def test_single_nozzle_dispatch(self, four_filament_context):
        labels, cost = group_filaments(four_filament_context)
        assert labels[0] == labels[1] != labels[2] == labels[3]
        assert cost == pytest.approx(20.0)

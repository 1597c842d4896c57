"""Tests for filament distances and scoring."""

import numpy as np
import pytest

from filamentgroup.core.context import SpeedInfo
from filamentgroup.core.distance import FlushDistanceEvaluator, TimeEvaluator, evaluate_score


class TestFlushDistanceEvaluator:
    """Test distances derived from flush volumes and layer co-occurrence."""

    @pytest.fixture
    def flush(self):
        one = np.array([[0.0, 10.0, 40.0], [30.0, 0.0, 20.0], [60.0, 80.0, 0.0]])
        return np.stack([one, one * 2])

    def test_symmetric_with_zero_diagonal(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [0, 1, 2], [[0, 1], [1, 2], [0, 2]])
        for e in range(2):
            for a in range(3):
                assert evaluator.get_distance(a, a, e) == 0.0
                for b in range(3):
                    assert evaluator.get_distance(a, b, e) == pytest.approx(evaluator.get_distance(b, a, e))

    def test_weighted_towards_larger_direction(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [0, 1, 2], [[0], [1]], p=0.65)
        assert evaluator.get_distance(0, 1, 0) == pytest.approx(30 * 0.65 + 10 * 0.35)

    def test_scaled_by_shared_layers(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [0, 1, 2], [[0, 1], [0, 1], [0, 1, 2]], p=0.65)
        assert evaluator.get_distance(0, 1, 0) == pytest.approx((30 * 0.65 + 10 * 0.35) * 3)
        assert evaluator.get_distance(0, 2, 0) == pytest.approx(60 * 0.65 + 40 * 0.35)

    def test_indexed_by_used_position(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [1, 2], [[1], [2]])
        assert evaluator.elem_count == 2
        assert evaluator.extruder_count == 2
        assert evaluator.get_distance(0, 1, 1) == pytest.approx((80 * 0.65 + 20 * 0.35) * 2)

    def test_out_of_range_index(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [0, 1], [[0, 1]])
        with pytest.raises(AssertionError):
            evaluator.get_distance(0, 2, 0)
        with pytest.raises(AssertionError):
            evaluator.get_distance(0, 1, 2)

    def test_no_used_filaments(self, flush):
        evaluator = FlushDistanceEvaluator(flush, [], [])
        assert evaluator.elem_count == 0


class TestScoring:
    """Test flush/time scoring."""

    def test_flush_only(self):
        assert evaluate_score(120.0, 999.0) == 120.0

    def test_with_time(self):
        assert evaluate_score(1000.0, 10.0, with_time=True) == pytest.approx(1.26 * 180 * 2 + 10.0)

    def test_estimated_time_follows_filament_map(self):
        evaluator = TimeEvaluator(SpeedInfo(filament_print_time={0: {0: 5.0, 1: 7.0}, 2: {0: 3.0, 1: 1.0}}))
        assert evaluator.get_estimated_time([0, 0, 1]) == pytest.approx(6.0)
        assert evaluator.get_estimated_time([1, 0, 0]) == pytest.approx(10.0)

"""Tests for the assignment solvers."""

import numpy as np
import pytest

from filamentgroup.core.flow import (
    INVALID_ID,
    GeneralMinCostSolver,
    HungarianMatchSolver,
    MatchModeGroupSolver,
    MaxFlowSolver,
    MinFlushFlowSolver,
    make_match_solver,
    scale_cost,
)


class TestCostScaling:
    """Test integer cost scaling for the min-cost-flow engine."""

    def test_scale_cost_keeps_three_decimals(self):
        assert scale_cost(1.2344) == 1234
        assert scale_cost(0.0) == 0
        assert scale_cost(2.5) == 2500

    def test_fractional_costs_are_respected(self):
        distance = [[0.2, 0.3], [0.25, 0.45]]
        solver = GeneralMinCostSolver(distance, [0, 1], [0, 1])
        # 0.3 + 0.25 beats 0.2 + 0.45
        assert solver.solve() == [1, 0]

    def test_group_capacity_is_a_bottleneck(self):
        solver = MaxFlowSolver(
            [0, 1, 2], [0, 1], v_capacity=[3, 3], v_group_capacity=[({0, 1}, 2)]
        )
        matching = solver.solve()
        assert matching.count(INVALID_ID) == 1

    def test_empty_sides(self):
        assert GeneralMinCostSolver([[0.0]], [], [0]).solve() == []
        assert MaxFlowSolver([0, 1], []).solve() == [INVALID_ID, INVALID_ID]


class TestBipartiteSolvers:
    """Test the constrained assignment solvers."""

    def test_max_flow_solver_respects_unlink_limits(self):
        solver = MaxFlowSolver([0, 1], [0, 1], unlink_limits={0: [0]})
        assert solver.solve() == [1, 0]

    def test_max_flow_solver_link_limits(self):
        solver = MaxFlowSolver([0, 1, 2], [0, 1, 2], link_limits={2: [1]})
        matching = solver.solve()
        assert matching[2] == 1
        assert sorted(matching) == [0, 1, 2]

    def test_min_flush_solver_minimises_distance(self):
        distance = [[1.0, 9.0], [8.0, 2.0], [1.5, 7.0]]
        solver = MinFlushFlowSolver(
            distance, [0, 1, 2], [0, 1], u_capacity=[1, 1, 1], v_capacity=[2, 2]
        )
        assert solver.solve() == [0, 1, 0]

    def test_min_flush_solver_group_capacity(self):
        distance = [[0.0, 1.0, 10.0], [0.0, 1.0, 10.0], [0.0, 1.0, 10.0]]
        solver = MinFlushFlowSolver(
            distance,
            [0, 1, 2],
            [0, 1, 2],
            u_capacity=[1, 1, 1],
            v_capacity=[3, 3, 3],
            v_group_capacity=[({0, 1}, 2), ({2}, 3)],
        )
        matching = solver.solve()
        assert sum(1 for m in matching if m in (0, 1)) == 2
        assert matching.count(2) == 1

    def test_does_not_mutate_input_matrix(self):
        distance = np.array([[1.0, 2.0], [3.0, 4.0]])
        original = distance.copy()
        MinFlushFlowSolver(distance, [0, 1], [0, 1]).solve()
        np.testing.assert_array_equal(distance, original)

    def test_general_min_cost_one_to_one(self):
        matrix = [[4.0, 1.0, 3.0], [2.0, 0.0, 5.0], [3.0, 2.0, 2.0]]
        matching = GeneralMinCostSolver(matrix, [0, 1, 2], [0, 1, 2]).solve()
        assert sorted(matching) == [0, 1, 2]
        assert sum(matrix[i][j] for i, j in enumerate(matching)) == pytest.approx(5.0)


class TestMatchSolvers:
    """Test the match-mode solvers and backend selection."""

    @pytest.fixture
    def distance(self):
        return np.array([[1.0, 30.0, 50.0], [40.0, 2.0, 35.0], [25.0, 20.0, 3.0], [5.0, 60.0, 45.0]])

    @pytest.mark.parametrize("backend", ["flow", "hungarian"])
    def test_nearest_spool_with_shared_capacity(self, backend, distance):
        solver = make_match_solver(backend, distance, [0, 1, 2, 3], [0, 1, 2], [4, 4, 4])
        assert solver.solve() == [0, 1, 2, 0]

    @pytest.mark.parametrize("backend", ["flow", "hungarian"])
    def test_forbidden_pairs_unmatched(self, backend, distance):
        solver = make_match_solver(backend, distance, [0, 1], [0, 1, 2], [2, 2, 2], {0: [0, 1, 2]})
        assert solver.solve() == [INVALID_ID, 1]

    def test_backends_agree_on_total_cost(self, distance):
        flow = MatchModeGroupSolver(distance, [0, 1, 2, 3], [0, 1, 2], [1, 2, 1]).solve()
        hungarian = HungarianMatchSolver(distance, [0, 1, 2, 3], [0, 1, 2], [1, 2, 1]).solve()

        def total(matching):
            return sum(distance[i, j] for i, j in enumerate(matching) if j != INVALID_ID)

        assert total(flow) == pytest.approx(total(hungarian))

    def test_unknown_backend(self, distance):
        with pytest.raises(ValueError, match="Unknown assignment backend"):
            make_match_solver("simplex", distance, [0], [0], [1])

"""Constrained bipartite assignment on top of OR-Tools max-flow / min-cost-flow.

Every solver builds the same layered network::

    source -> left nodes -> right nodes -> [right-node groups] -> sink

Left node ``i`` is position ``i`` of ``u_nodes``; right node ``j`` is position
``j`` of ``v_nodes``. Costs are read as ``matrix[u_nodes[i]][v_nodes[j]]``.
``solve()`` returns, for every left position, the matched ``v_nodes`` value or
:data:`INVALID_ID` when the node could not be placed under the capacities and
link constraints. An unplaced node is never an error.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Set, Tuple, Type

import numpy as np
from ortools.graph.python import max_flow, min_cost_flow
from scipy.optimize import linear_sum_assignment

from ..utils.logging import get_logger

logger = get_logger(__name__)

INVALID_ID = -1

# OR-Tools takes integer unit costs; distances keep three decimals
COST_SCALE = 1000

LinkLimits = Dict[int, List[int]]
GroupCapacity = Sequence[Tuple[Set[int], int]]


def scale_cost(cost: float) -> int:
    return int(round(cost * COST_SCALE))


class AssignmentSolver(ABC):
    """Bipartite assignment returning one right-node value (or INVALID_ID) per left node."""

    @abstractmethod
    def solve(self) -> List[int]:
        pass


class _BipartiteFlowSolver(AssignmentSolver):
    """Network layout and result extraction shared by the flow based solvers."""

    use_cost = True

    def __init__(
        self,
        matrix,
        u_nodes: Sequence[int],
        v_nodes: Sequence[int],
        link_limits: Optional[LinkLimits] = None,
        unlink_limits: Optional[LinkLimits] = None,
        u_capacity: Optional[Sequence[int]] = None,
        v_capacity: Optional[Sequence[int]] = None,
        v_group_capacity: Optional[GroupCapacity] = None,
    ):
        u_capacity = list(u_capacity or [])
        v_capacity = list(v_capacity or [])
        v_group_capacity = list(v_group_capacity or [])
        assert not u_capacity or len(u_capacity) == len(u_nodes)
        assert not v_capacity or len(v_capacity) == len(v_nodes)

        self.matrix = None if matrix is None else np.asarray(matrix, dtype=np.float64)
        self.l_nodes = list(u_nodes)
        self.r_nodes = list(v_nodes)

        left = len(self.l_nodes)
        right = len(self.r_nodes)
        node_count = left + right + len(v_group_capacity) + 2
        self.source_id = node_count - 2
        self.sink_id = node_count - 1
        self.supply = sum(u_capacity) if u_capacity else left

        if self.use_cost:
            self.network = min_cost_flow.SimpleMinCostFlow()
        else:
            self.network = max_flow.SimpleMaxFlow()

        v_node_to = [self.sink_id] * right
        for gid, (members, _) in enumerate(v_group_capacity):
            for vid in members:
                v_node_to[vid] = left + right + gid

        for i in range(left):
            self._add_arc(self.source_id, i, u_capacity[i] if u_capacity else 1)
        for j in range(right):
            self._add_arc(left + j, v_node_to[j], v_capacity[j] if v_capacity else 1)
        for gid, (_, capacity) in enumerate(v_group_capacity):
            self._add_arc(left + right + gid, self.sink_id, capacity)

        # (left position, right position) of every left -> right arc, by arc index
        self.match_arcs: Dict[int, Tuple[int, int]] = {}
        link_limits = link_limits or {}
        unlink_limits = unlink_limits or {}
        for i in range(left):
            if i in link_limits:
                targets = link_limits[i]
            else:
                forbidden = set(unlink_limits.get(i, ()))
                targets = [j for j in range(right) if j not in forbidden]
            for j in targets:
                arc = self._add_arc(i, left + j, 1, self.get_distance(i, j))
                self.match_arcs[arc] = (i, j)

    def _add_arc(self, tail: int, head: int, capacity: int, cost: float = 0.0) -> int:
        if self.use_cost:
            return self.network.add_arc_with_capacity_and_unit_cost(tail, head, int(capacity), scale_cost(cost))
        return self.network.add_arc_with_capacity(tail, head, int(capacity))

    def get_distance(self, idx_in_left: int, idx_in_right: int) -> float:
        if not self.use_cost or self.l_nodes[idx_in_left] == INVALID_ID:
            return 0.0
        return float(self.matrix[self.l_nodes[idx_in_left], self.r_nodes[idx_in_right]])

    def _run(self) -> bool:
        net = self.network
        if self.use_cost:
            net.set_node_supply(self.source_id, self.supply)
            net.set_node_supply(self.sink_id, -self.supply)
            status = net.solve_max_flow_with_min_cost()
        else:
            status = net.solve(self.source_id, self.sink_id)
        if status != net.OPTIMAL:
            logger.warning(f"{type(self).__name__}: flow solver returned status {status}; nothing placed")
            return False
        return True

    def solve(self) -> List[int]:
        matching = [INVALID_ID] * len(self.l_nodes)
        if not self.match_arcs or not self._run():
            return matching

        for arc, (i, j) in self.match_arcs.items():
            if self.network.flow(arc) > 0:
                matching[i] = self.r_nodes[j]
        return matching


class MaxFlowSolver(_BipartiteFlowSolver):
    """Feasibility matching without costs.

    Used to seed one representative element per group while honouring
    must-place (``link_limits``) and must-not-place (``unlink_limits``) maps.
    """

    use_cost = False

    def __init__(
        self,
        u_nodes: Sequence[int],
        v_nodes: Sequence[int],
        link_limits: Optional[LinkLimits] = None,
        unlink_limits: Optional[LinkLimits] = None,
        u_capacity: Optional[Sequence[int]] = None,
        v_capacity: Optional[Sequence[int]] = None,
        v_group_capacity: Optional[GroupCapacity] = None,
    ):
        super().__init__(
            None,
            u_nodes,
            v_nodes,
            link_limits=link_limits,
            unlink_limits=unlink_limits,
            u_capacity=u_capacity,
            v_capacity=v_capacity,
            v_group_capacity=v_group_capacity,
        )


class MinFlushFlowSolver(_BipartiteFlowSolver):
    """Minimum total distance assignment with per-node and per-group capacities."""


class MatchModeGroupSolver(_BipartiteFlowSolver):
    """Filament to loaded spool matching by color distance.

    Args:
        matrix: Distance matrix indexed by (u_nodes value, v_nodes value)
        u_nodes: Left node values
        v_nodes: Right node values
        v_capacity: How many left nodes each right node accepts
        unlink_limits: Left position -> right positions it must not use
    """

    def __init__(
        self,
        matrix,
        u_nodes: Sequence[int],
        v_nodes: Sequence[int],
        v_capacity: Sequence[int],
        unlink_limits: Optional[LinkLimits] = None,
    ):
        assert len(v_capacity) == len(v_nodes)
        super().__init__(
            matrix, u_nodes, v_nodes, unlink_limits=unlink_limits, v_capacity=v_capacity
        )


class GeneralMinCostSolver(_BipartiteFlowSolver):
    """Plain one-to-one minimum cost matching."""

    def __init__(self, matrix, u_nodes: Sequence[int], v_nodes: Sequence[int]):
        super().__init__(matrix, u_nodes, v_nodes)


class HungarianMatchSolver(AssignmentSolver):
    """Drop-in replacement for :class:`MatchModeGroupSolver` using scipy's
    ``linear_sum_assignment``.

    Each right node is replicated once per unit of capacity. Forbidden pairs
    get a penalty larger than any feasible total so the matching size is
    maximised first; pairs that still land on a penalty are reported as
    :data:`INVALID_ID`.
    """

    def __init__(
        self,
        matrix,
        u_nodes: Sequence[int],
        v_nodes: Sequence[int],
        v_capacity: Sequence[int],
        unlink_limits: Optional[LinkLimits] = None,
    ):
        assert len(v_capacity) == len(v_nodes)
        self.matrix = np.asarray(matrix, dtype=np.float64)
        self.l_nodes = list(u_nodes)
        self.r_nodes = list(v_nodes)
        self.v_capacity = list(v_capacity)
        self.unlink_limits = unlink_limits or {}

    def solve(self) -> List[int]:
        left = len(self.l_nodes)
        matching = [INVALID_ID] * left
        if left == 0 or not self.r_nodes:
            return matching

        columns = []
        for j, capacity in enumerate(self.v_capacity):
            columns.extend([j] * min(int(capacity), left))
        if not columns:
            return matching

        cost = np.zeros((left, len(columns)), dtype=np.float64)
        allowed = np.ones((left, len(columns)), dtype=bool)
        for i, u in enumerate(self.l_nodes):
            forbidden = set(self.unlink_limits.get(i, ()))
            for c, j in enumerate(columns):
                if j in forbidden:
                    allowed[i, c] = False
                elif u != INVALID_ID:
                    cost[i, c] = self.matrix[u, self.r_nodes[j]]

        penalty = (np.abs(cost).sum() + 1.0) * (left + 1)
        cost[~allowed] = penalty

        rows, cols = linear_sum_assignment(cost)
        for i, c in zip(rows, cols):
            if allowed[i, c]:
                matching[i] = self.r_nodes[columns[c]]
        return matching


_MATCH_SOLVERS: Dict[str, Type[AssignmentSolver]] = {
    "flow": MatchModeGroupSolver,
    "hungarian": HungarianMatchSolver,
}


def make_match_solver(
    backend: str,
    matrix,
    u_nodes: Sequence[int],
    v_nodes: Sequence[int],
    v_capacity: Sequence[int],
    unlink_limits: Optional[LinkLimits] = None,
) -> AssignmentSolver:
    """Create a match-mode solver for the configured assignment backend."""
    try:
        solver_cls = _MATCH_SOLVERS[backend]
    except KeyError:
        raise ValueError(
            f"Unknown assignment backend: {backend}. Available: {list(_MATCH_SOLVERS)}"
        ) from None
    return solver_cls(matrix, u_nodes, v_nodes, v_capacity, unlink_limits)

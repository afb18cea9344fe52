from __future__ import annotations

import heapq
import itertools
import math
from collections.abc import Iterator
from dataclasses import dataclass

from .errors import Unreachable
from .locator import GraphPosition
from .network import BACKWARD, FORWARD, Arc, CostGraph
from .turntable import TurnGraph

# Virtual node keys for mid-arc endpoints; real nodes use their index.
START = -1
END = -2

State = tuple[int, int | None]


@dataclass(frozen=True)
class PathStep:
    arc: int
    direction: int
    t_from: float
    t_to: float
    cost: float

    @property
    def partial(self) -> bool:
        return abs(self.t_to - self.t_from) < 1.0


@dataclass(frozen=True)
class PathResult:
    start: GraphPosition
    end: GraphPosition
    steps: tuple[PathStep, ...]
    cost: float
    node_cost: float = 0.0
    turn_cost: float = 0.0
    explored_states: int = 0

    @property
    def arcs(self) -> tuple[int, ...]:
        return tuple(step.arc for step in self.steps)


@dataclass(frozen=True)
class _Transition:
    arc: int
    direction: int
    t_from: float
    t_to: float
    arc_cost: float
    node_cost: float = 0.0
    turn_cost: float = 0.0

    @property
    def total(self) -> float:
        return self.arc_cost + self.node_cost + self.turn_cost


class PathSolver:
    """Dijkstra over the cost graph, optionally through a turn graph.

    Mid-arc endpoints are handled as query-local virtual nodes; the shared graph
    is never touched. With a turn graph the search state is
    ``(node, arrived-via arc)`` so every turn is priced against its entry.
    """

    def __init__(
        self,
        graph: CostGraph,
        *,
        turn_graph: TurnGraph | None = None,
        max_search_cost: float | None = None,
    ) -> None:
        self._graph = graph
        self._turns = turn_graph
        self._max_search_cost = max_search_cost

    @property
    def turntable(self) -> bool:
        return self._turns is not None

    def _arc_cost(self, arc: Arc, direction: int, direction_aware: bool) -> float:
        if direction_aware:
            return arc.cost(direction) if arc.open(direction) else math.inf
        open_costs = [arc.cost(d) for d in (FORWARD, BACKWARD) if arc.open(d)]
        return min(open_costs) if open_costs else math.inf

    def _components(self, position: GraphPosition) -> set[int]:
        comp = self._graph.component_by_node
        if position.kind == "node":
            assert position.node is not None
            return {comp[position.node]}
        assert position.arc is not None
        arc = self._graph.arcs[position.arc]
        return {comp[arc.from_node], comp[arc.to_node]}

    def _moves(self, node: int, incoming: int | None) -> Iterator[tuple[int, int, float]]:
        if self._turns is not None:
            yield from self._turns.allowed_moves(incoming, node)
            return
        for arc, direction in self._graph.outgoing[node]:
            yield arc, direction, 0.0

    def _expand(
        self,
        state: State,
        *,
        start_state: State,
        start: GraphPosition,
        end: GraphPosition,
        direction_aware: bool,
    ) -> Iterator[tuple[State, _Transition]]:
        key, via = state
        arcs = self._graph.arcs
        if key == START:
            assert start.arc is not None
            arc = arcs[start.arc]
            for direction in (FORWARD, BACKWARD):
                cost = self._arc_cost(arc, direction, direction_aware)
                if not math.isfinite(cost):
                    continue
                if end.kind == "arc" and end.arc == arc.index:
                    ahead = end.t > start.t if direction == FORWARD else end.t < start.t
                    if ahead:
                        yield (END, None), _Transition(
                            arc.index, direction, start.t, end.t, cost * abs(end.t - start.t)
                        )
                t_to = 1.0 if direction == FORWARD else 0.0
                head = arc.head(direction)
                yield (head, arc.index if self.turntable else None), _Transition(
                    arc.index, direction, start.t, t_to, cost * abs(t_to - start.t)
                )
            return

        node = self._graph.nodes[key]
        interior = state != start_state
        node_cost = 0.0
        if interior:
            if node.closed:
                return
            node_cost = node.cost
        incoming = via if interior else None
        if not direction_aware:
            moves = self._undirected_moves(key, incoming)
        else:
            moves = self._moves(key, incoming)
        for arc_index, direction, extra in moves:
            arc = arcs[arc_index]
            cost = self._arc_cost(arc, direction, direction_aware)
            if not math.isfinite(cost):
                continue
            t_from = 0.0 if direction == FORWARD else 1.0
            if end.kind == "arc" and end.arc == arc_index:
                frac = end.t if direction == FORWARD else 1.0 - end.t
                yield (END, None), _Transition(
                    arc_index, direction, t_from, end.t, cost * frac, node_cost, extra
                )
            yield (arc.head(direction), arc_index if self.turntable else None), _Transition(
                arc_index, direction, t_from, 1.0 - t_from, cost, node_cost, extra
            )

    def _undirected_moves(self, node: int, incoming: int | None) -> Iterator[tuple[int, int, float]]:
        for arc, direction in self._graph.incident[node]:
            extra = 0.0
            if self._turns is not None and incoming is not None:
                turn = self._turns.entry(node, incoming, arc)
                if turn.forbidden:
                    continue
                extra = turn.cost
            yield arc, direction, extra

    def shortest_path(
        self,
        start: GraphPosition,
        end: GraphPosition,
        direction_aware: bool = True,
    ) -> PathResult:
        if start.same_place(end):
            return PathResult(start=start, end=end, steps=(), cost=0.0)
        if not (self._components(start) & self._components(end)):
            raise Unreachable(
                message="start and end lie in disconnected parts of the network",
                details={"explored_states": 0, "detail": "disconnected"},
            )

        if start.kind == "arc":
            start_state: State = (START, None)
        else:
            assert start.node is not None
            start_state = (start.node, None)
        if end.kind == "arc":
            goal_key = END
        else:
            assert end.node is not None
            goal_key = end.node

        counter = itertools.count()
        heap: list[tuple[float, int, State]] = [(0.0, next(counter), start_state)]
        best_cost_by_state: dict[State, float] = {start_state: 0.0}
        parent: dict[State, tuple[State, _Transition]] = {}
        settled: set[State] = set()
        explored = 0

        while heap:
            cost, _seq, state = heapq.heappop(heap)
            if state in settled or cost > best_cost_by_state.get(state, math.inf):
                continue
            settled.add(state)
            explored += 1
            if state[0] == goal_key:
                return self._reconstruct(start, end, state, cost, parent, explored)
            if self._max_search_cost is not None and cost > self._max_search_cost:
                raise Unreachable(
                    reason_code="search_cost_exceeded",
                    message=f"search cost ceiling {self._max_search_cost:g} exceeded",
                    details={"explored_states": explored, "detail": "search_cost_exceeded"},
                )
            for nxt, transition in self._expand(
                state,
                start_state=start_state,
                start=start,
                end=end,
                direction_aware=direction_aware,
            ):
                if nxt in settled:
                    continue
                new_cost = cost + transition.total
                if new_cost < best_cost_by_state.get(nxt, math.inf):
                    best_cost_by_state[nxt] = new_cost
                    parent[nxt] = (state, transition)
                    heapq.heappush(heap, (new_cost, next(counter), nxt))

        raise Unreachable(details={"explored_states": explored, "detail": "no_path"})

    def _reconstruct(
        self,
        start: GraphPosition,
        end: GraphPosition,
        goal: State,
        cost: float,
        parent: dict[State, tuple[State, _Transition]],
        explored: int,
    ) -> PathResult:
        transitions: list[_Transition] = []
        state = goal
        while state in parent:
            state, transition = parent[state]
            transitions.append(transition)
        transitions.reverse()
        return PathResult(
            start=start,
            end=end,
            steps=tuple(
                PathStep(
                    arc=tr.arc,
                    direction=tr.direction,
                    t_from=tr.t_from,
                    t_to=tr.t_to,
                    cost=tr.arc_cost,
                )
                for tr in transitions
            ),
            cost=cost,
            node_cost=sum(tr.node_cost for tr in transitions),
            turn_cost=sum(tr.turn_cost for tr in transitions),
            explored_states=explored,
        )

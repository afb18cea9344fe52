from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, NamedTuple

from .errors import GraphBuildFailure
from .logging_utils import log_event
from .network import CostGraph, _as_float, _as_int


@dataclass(frozen=True)
class TurnEntry:
    forbidden: bool
    cost: float = 0.0


FORBIDDEN = TurnEntry(forbidden=True)
FREE = TurnEntry(forbidden=False, cost=0.0)


class Move(NamedTuple):
    arc: int
    direction: int
    extra_cost: float


class TurnGraph:
    """Turn restrictions keyed by ``(node, incoming arc, outgoing arc)``.

    Arc and node values are graph indices. A move back onto the arc it
    arrived by is forbidden unless an explicit entry allows it.
    """

    def __init__(
        self,
        graph: CostGraph,
        entries: Mapping[tuple[int, int, int], TurnEntry],
        *,
        default: TurnEntry = FREE,
    ) -> None:
        self._graph = graph
        self._entries = dict(entries)
        self._default = default

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def entry(self, node: int, incoming_arc: int, outgoing_arc: int) -> TurnEntry:
        explicit = self._entries.get((node, incoming_arc, outgoing_arc))
        if explicit is not None:
            return explicit
        if incoming_arc == outgoing_arc:
            return FORBIDDEN
        return self._default

    def allowed_moves(self, incoming_arc: int | None, node: int) -> tuple[Move, ...]:
        """Moves out of ``node`` after arriving by ``incoming_arc``.

        ``incoming_arc=None`` marks the start of a path: everything is allowed.
        """
        moves: list[Move] = []
        for arc, direction in self._graph.outgoing[node]:
            if incoming_arc is None:
                moves.append(Move(arc, direction, 0.0))
                continue
            turn = self.entry(node, incoming_arc, arc)
            if turn.forbidden:
                continue
            moves.append(Move(arc, direction, turn.cost))
        return tuple(moves)


def _turn_node(
    graph: CostGraph,
    row: Mapping[str, Any],
    *,
    in_arc: int,
    out_arc: int,
    turn_category_layer: int,
) -> int | None:
    isec = _as_int(row.get("isec"))
    if isec is not None:
        return graph.node_for_category(turn_category_layer, isec)
    node_id = _as_int(row.get("node"))
    if node_id is not None:
        return graph.node_by_id.get(node_id)
    a = graph.arcs[in_arc]
    b = graph.arcs[out_arc]
    shared = {a.from_node, a.to_node} & {b.from_node, b.to_node}
    return next(iter(shared)) if len(shared) == 1 else None


def _row_entry(row: Mapping[str, Any], *, layer: int) -> TurnEntry:
    if bool(row.get("forbidden", False)):
        return FORBIDDEN
    raw = row.get("cost")
    if raw is None:
        return FORBIDDEN
    cost = _as_float(raw)
    if cost is None:
        raise GraphBuildFailure(
            reason_code="turn_graph_build_failure",
            message=f"non-numeric turn cost {raw!r} in turntable layer {layer}",
            details={"layer": layer, "row": dict(row)},
        )
    if cost < 0.0:
        return FORBIDDEN
    return TurnEntry(forbidden=False, cost=cost)


def build_turn_graph(
    graph: CostGraph,
    turn_layer: int,
    turn_category_layer: int,
    *,
    default_cost: float = 0.0,
    default_forbidden: bool = False,
) -> TurnGraph:
    """Turn graph from the rows stored on ``turn_layer``.

    Rows carry ``ln_from``/``ln_to`` arc ids (sign ignored), the node as
    ``isec`` (category on ``turn_category_layer``) or ``node`` (node id), and
    ``cost`` where a negative or null cost forbids the turn.
    """
    started = time.monotonic()
    rows = graph.turn_rows.get(int(turn_layer))
    if rows is None:
        raise GraphBuildFailure(
            reason_code="turn_graph_build_failure",
            message=f"no turntable found on layer {turn_layer}",
            details={"turn_layer": turn_layer, "layers": sorted(graph.turn_rows)},
        )
    entries: dict[tuple[int, int, int], TurnEntry] = {}
    skipped = 0
    for row in rows:
        ln_from = _as_int(row.get("ln_from"))
        ln_to = _as_int(row.get("ln_to"))
        if ln_from is None or ln_to is None:
            raise GraphBuildFailure(
                reason_code="turn_graph_build_failure",
                message=f"turntable row without ln_from/ln_to on layer {turn_layer}",
                details={"turn_layer": turn_layer, "row": dict(row)},
            )
        in_arc = graph.arc_by_id.get(abs(ln_from))
        out_arc = graph.arc_by_id.get(abs(ln_to))
        if in_arc is None or out_arc is None:
            # Arc excluded by the type filter or not in the network.
            skipped += 1
            continue
        node = _turn_node(graph, row, in_arc=in_arc, out_arc=out_arc, turn_category_layer=turn_category_layer)
        if node is None:
            skipped += 1
            continue
        a = graph.arcs[in_arc]
        b = graph.arcs[out_arc]
        if node not in (a.from_node, a.to_node) or node not in (b.from_node, b.to_node):
            skipped += 1
            continue
        entries.setdefault((node, in_arc, out_arc), _row_entry(row, layer=turn_layer))

    default = FORBIDDEN if default_forbidden else TurnEntry(forbidden=False, cost=float(default_cost))
    turn_graph = TurnGraph(graph, entries, default=default)
    log_event(
        "turn_graph_ready",
        turn_layer=int(turn_layer),
        turn_category_layer=int(turn_category_layer),
        rows=len(rows),
        entries=turn_graph.entry_count,
        skipped_rows=skipped,
        default_forbidden=bool(default_forbidden),
        elapsed_ms=round((time.monotonic() - started) * 1000.0, 2),
    )
    return turn_graph

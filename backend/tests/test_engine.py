from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

import netpath.engine as engine_module
from netpath.engine import PathEngine
from netpath.errors import LocatorNotFound
from netpath.models import CategoryRef, Coordinate, QueryRecord
from netpath.network import build_graph
from netpath.settings import PathConfig


def test_resolve_category_prefers_nodes_then_arc_midpoints(line_network) -> None:
    engine = PathEngine.from_network(line_network, PathConfig())

    node = engine.resolve(CategoryRef(layer=2, cat=3))
    arc = engine.resolve(CategoryRef(layer=1, cat=2))

    assert node.kind == "node"
    assert engine.graph.nodes[node.node].id == 3
    assert arc.kind == "arc"
    assert engine.graph.arcs[arc.arc].id == 2
    assert arc.t == 0.5
    assert arc.distance == 0.0
    with pytest.raises(LocatorNotFound) as exc:
        engine.resolve(CategoryRef(layer=1, cat=42))
    assert exc.value.reason_code == "category_not_found"


def test_resolve_coordinate_uses_configured_max_distance(line_network) -> None:
    engine = PathEngine.from_network(line_network, PathConfig(max_distance=0.01))

    with pytest.raises(LocatorNotFound):
        engine.resolve(Coordinate(x=0.5, y=0.05))
    assert engine.resolve(Coordinate(x=0.5, y=0.05), max_distance=0.1).kind == "arc"


def test_solve_record(line_network) -> None:
    engine = PathEngine.from_network(line_network, PathConfig(forward_cost_column="fwd"))
    record = QueryRecord(
        seq=1,
        request_id="1",
        start=Coordinate(x=0.0, y=0.2),
        end=CategoryRef(layer=2, cat=3),
    )

    result = engine.solve(record)

    assert result.cost == pytest.approx(2.0)
    assert result.start.distance == pytest.approx(0.2)


def test_turn_graph_is_built_once_across_threads(line_network, monkeypatch) -> None:
    engine = PathEngine.from_network(line_network, PathConfig(turntable=True))
    calls: list[int] = []
    real_build = engine_module.build_turn_graph

    def _counting_build(*args, **kwargs):
        calls.append(1)
        return real_build(*args, **kwargs)

    monkeypatch.setattr(engine_module, "build_turn_graph", _counting_build)

    with ThreadPoolExecutor(max_workers=8) as pool:
        solvers = list(pool.map(lambda _i: engine.solver, range(32)))

    assert len(calls) == 1
    assert all(solver is solvers[0] for solver in solvers)
    assert solvers[0].turntable


def test_turn_graph_is_skipped_without_turntable_mode(line_network) -> None:
    engine = PathEngine.from_network(line_network, PathConfig())

    engine.prepare()

    assert engine.turn_graph is None
    assert not engine.solver.turntable


def test_geodesic_mode_must_match_graph(line_network) -> None:
    graph = build_graph(line_network)

    with pytest.raises(ValueError):
        PathEngine(graph, PathConfig(geodesic=True))


def test_solve_ignores_nearer_closed_arc(line_network) -> None:
    line_network["arcs"].append(
        {"id": 3, "type": "line", "from": 1, "to": 2, "geometry": [[0.0, 0.0], [0.5, 0.02], [1.0, 0.0]]}
    )
    engine = PathEngine.from_network(
        line_network,
        PathConfig(forward_cost_column="fwd", backward_cost_column="bwd"),
    )
    record = QueryRecord(
        seq=1,
        request_id="1",
        start=Coordinate(x=0.5, y=0.03),
        end=CategoryRef(layer=2, cat=3),
    )

    result = engine.solve(record)

    assert [engine.graph.arcs[arc].id for arc in result.arcs] == [1, 2]
    assert result.cost == pytest.approx(1.5)
    assert result.start.distance == pytest.approx(0.03)

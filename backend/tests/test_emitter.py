from __future__ import annotations

import pytest

from netpath.emitter import ResultEmitter
from netpath.geometry import join_lines
from netpath.locator import GraphPosition
from netpath.network import build_graph
from netpath.run_store import MemoryFeatureWriter
from netpath.solver import PathSolver


def _solve(graph, start: GraphPosition, end: GraphPosition):
    return PathSolver(graph).shortest_path(start, end)


def test_merged_mode_writes_one_line_per_path(line_network) -> None:
    graph = build_graph(line_network)
    result = _solve(graph, GraphPosition.at_node(graph, 0), GraphPosition.at_node(graph, 2))
    writer = MemoryFeatureWriter()

    written = ResultEmitter(graph, writer).emit(result, cat=1, request_id="r1", fcat=1, tcat=3)

    assert written == 1
    coords, attributes = writer.features[0]
    assert coords == [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (2.0, 0.0, 0.0)]
    assert attributes == {
        "cat": 1,
        "id": "r1",
        "fcat": 1,
        "tcat": 3,
        "sp": 0,
        "cost": 2.0,
        "fdist": 0.0,
        "tdist": 0.0,
    }


def test_merged_line_is_trimmed_at_mid_arc_endpoints(line_network) -> None:
    graph = build_graph(line_network)
    start = GraphPosition.on_arc(graph, graph.arc_by_id[1], 0.5, distance=0.05)
    end = GraphPosition.on_arc(graph, graph.arc_by_id[2], 0.25)
    emitter = ResultEmitter(graph, MemoryFeatureWriter())

    line = emitter.merged_geometry(_solve(graph, start, end))

    assert line == [(0.5, 0.0, 0.0), (1.0, 0.0, 0.0), (1.25, 0.0, 0.0)]


def test_segments_mode_writes_original_arcs(line_network) -> None:
    graph = build_graph(line_network)
    start = GraphPosition.on_arc(graph, graph.arc_by_id[1], 0.5)
    result = _solve(graph, start, GraphPosition.at_node(graph, 2))
    writer = MemoryFeatureWriter()

    written = ResultEmitter(graph, writer, mode="segments").emit(result, cat=7, request_id="seg")

    assert written == 2
    assert [coords for coords, _ in writer.features] == [
        [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0)],
        [(1.0, 0.0, 0.0), (2.0, 0.0, 0.0)],
    ]
    assert [attrs["seg"] for _, attrs in writer.features] == [1, 2]
    assert [attrs["arc_id"] for _, attrs in writer.features] == [1, 2]
    assert [attrs["arc_cat"] for _, attrs in writer.features] == [1, 2]
    assert {attrs["cat"] for _, attrs in writer.features} == {7}
    assert writer.features[0][1]["cost"] == pytest.approx(0.5)


def test_segments_concatenate_to_merged_line(grid_network) -> None:
    graph = build_graph(grid_network)
    result = _solve(graph, GraphPosition.at_node(graph, 0), GraphPosition.at_node(graph, 8))
    emitter = ResultEmitter(graph, MemoryFeatureWriter())

    merged = emitter.merged_geometry(result)
    oriented = [emitter.step_geometry(step) for step in result.steps]

    assert join_lines(oriented) == merged
    assert merged[0] == (0.0, 0.0, 0.0)
    assert merged[-1] == (2.0, 2.0, 0.0)


def test_backward_steps_are_reported_with_negative_direction(grid_network) -> None:
    graph = build_graph(grid_network)
    result = _solve(graph, GraphPosition.at_node(graph, 4), GraphPosition.at_node(graph, 3))
    writer = MemoryFeatureWriter()

    ResultEmitter(graph, writer, mode="segments").emit(result, cat=1, request_id="1")

    assert [attrs["direction"] for _, attrs in writer.features] == [-1]
    assert writer.features[0][0] == [(0.0, 1.0, 0.0), (1.0, 1.0, 0.0)]


def test_self_path_emits_degenerate_line(line_network) -> None:
    graph = build_graph(line_network)
    here = GraphPosition.at_node(graph, 1)
    writer = MemoryFeatureWriter()
    emitter = ResultEmitter(graph, writer)

    emitter.emit(_solve(graph, here, here), cat=1, request_id="1")

    assert writer.features[0][0] == [(1.0, 0.0, 0.0), (1.0, 0.0, 0.0)]
    assert emitter.close() is writer.features


def test_unknown_mode_is_rejected(line_network) -> None:
    with pytest.raises(ValueError):
        ResultEmitter(build_graph(line_network), MemoryFeatureWriter(), mode="dissolved")

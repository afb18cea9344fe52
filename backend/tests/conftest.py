from __future__ import annotations

import copy
from typing import Any

import pytest

# N1 --A1--> N2 --A2--> N3 along y=0, one map unit per arc.
# Arcs carry forward cost 1 per unit and a closed backward direction.
LINE_NETWORK: dict[str, Any] = {
    "version": "pytest",
    "source": "line.json",
    "nodes": [
        {"id": 1, "x": 0.0, "y": 0.0, "cats": {"2": [1]}},
        {"id": 2, "x": 1.0, "y": 0.0, "cats": {"2": [2], "4": [20]}},
        {"id": 3, "x": 2.0, "y": 0.0, "cats": {"2": [3]}},
    ],
    "arcs": [
        {"id": 1, "type": "line", "from": 1, "to": 2, "geometry": [[0.0, 0.0], [1.0, 0.0]], "cats": {"1": [1]}},
        {"id": 2, "type": "line", "from": 2, "to": 3, "geometry": [[1.0, 0.0], [2.0, 0.0]], "cats": {"1": [2]}},
    ],
    "attributes": {
        "1": [
            {"cat": 1, "fwd": 1.0, "bwd": -1.0},
            {"cat": 2, "fwd": 1.0, "bwd": -1.0},
        ],
        "2": [
            {"cat": 1, "ncost": 0.0},
            {"cat": 2, "ncost": 0.5},
            {"cat": 3, "ncost": 0.0},
        ],
    },
    "turntables": {
        "3": [
            {"ln_from": 1, "ln_to": 2, "isec": 20, "cost": -1},
        ],
    },
}


# A 3x3 grid of nodes, spacing 1, with two-way arcs of unit cost.
#
#   7 - 8 - 9
#   |   |   |
#   4 - 5 - 6
#   |   |   |
#   1 - 2 - 3
def _grid_network() -> dict[str, Any]:
    nodes = []
    for row in range(3):
        for col in range(3):
            node_id = row * 3 + col + 1
            nodes.append({"id": node_id, "x": float(col), "y": float(row), "cats": {"2": [node_id]}})
    coords = {n["id"]: (n["x"], n["y"]) for n in nodes}
    pairs = [(1, 2), (2, 3), (4, 5), (5, 6), (7, 8), (8, 9), (1, 4), (4, 7), (2, 5), (5, 8), (3, 6), (6, 9)]
    arcs = []
    for arc_id, (u, v) in enumerate(pairs, start=10):
        arcs.append(
            {
                "id": arc_id,
                "type": "line",
                "from": u,
                "to": v,
                "geometry": [list(coords[u]), list(coords[v])],
                "cats": {"1": [arc_id]},
            }
        )
    return {"version": "pytest", "source": "grid.json", "nodes": nodes, "arcs": arcs, "turntables": {"3": []}}


@pytest.fixture
def line_network() -> dict[str, Any]:
    return copy.deepcopy(LINE_NETWORK)


@pytest.fixture
def grid_network() -> dict[str, Any]:
    return _grid_network()


@pytest.fixture(autouse=True)
def _isolated_out_dir(tmp_path, monkeypatch) -> None:
    from netpath.settings import settings

    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))

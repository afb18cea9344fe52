from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

import numpy as np

from .errors import LocatorNotFound
from .geometry import Coord, as_xy_array, interpolate, project_point
from .network import BACKWARD, FORWARD, CostGraph

METRES_PER_DEGREE = 111_195.0
ENDPOINT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class GraphPosition:
    """Where a query endpoint sits on the graph: exactly at a node or inside an arc."""

    kind: Literal["node", "arc"]
    node: int | None = None
    arc: int | None = None
    t: float = 0.0
    distance: float = 0.0
    point: Coord = (0.0, 0.0, 0.0)

    @classmethod
    def at_node(cls, graph: CostGraph, node: int, *, distance: float = 0.0) -> "GraphPosition":
        return cls(kind="node", node=node, distance=float(distance), point=graph.nodes[node].coord)

    @classmethod
    def on_arc(
        cls,
        graph: CostGraph,
        arc: int,
        t: float,
        *,
        distance: float = 0.0,
        point: Coord | None = None,
    ) -> "GraphPosition":
        """Position inside an arc; collapses to the end node when ``t`` sits on an end."""
        item = graph.arcs[arc]
        t = min(1.0, max(0.0, float(t)))
        tolerance = ENDPOINT_TOLERANCE * max(1.0, item.length)
        if t * item.length <= tolerance:
            return cls.at_node(graph, item.from_node, distance=distance)
        if (1.0 - t) * item.length <= tolerance:
            return cls.at_node(graph, item.to_node, distance=distance)
        if point is None:
            point = interpolate(item.geometry, t, geodesic=graph.geodesic)
        return cls(kind="arc", arc=arc, t=t, distance=float(distance), point=point)

    def same_place(self, other: "GraphPosition") -> bool:
        if self.kind != other.kind:
            return False
        if self.kind == "node":
            return self.node == other.node
        return self.arc == other.arc and abs(self.t - other.t) <= ENDPOINT_TOLERANCE


def _grid_key(x: float, y: float, cell: float) -> tuple[int, int]:
    return (int(math.floor(x / cell)), int(math.floor(y / cell)))


def _ring_offsets(radius: int) -> tuple[tuple[int, int], ...]:
    if radius <= 0:
        return ((0, 0),)
    offsets: list[tuple[int, int]] = []
    for dx in range(-radius, radius + 1):
        offsets.append((dx, -radius))
        offsets.append((dx, radius))
    for dy in range(-radius + 1, radius):
        offsets.append((-radius, dy))
        offsets.append((radius, dy))
    return tuple(offsets)


class SpatialLocator:
    """Nearest-arc lookup over a uniform grid of arc bounding boxes."""

    def __init__(
        self,
        graph: CostGraph,
        *,
        arc_types: Iterable[str] | None = None,
        layer: int | None = None,
        cell_size: float | None = None,
    ) -> None:
        self._graph = graph
        self._geodesic = graph.geodesic
        types = {t.strip().lower() for t in arc_types} if arc_types is not None else None
        self._arcs = tuple(
            arc.index
            for arc in graph.arcs
            # Arcs closed both ways are not part of the usable network.
            if (arc.open(FORWARD) or arc.open(BACKWARD))
            and (types is None or arc.type in types)
            and (layer is None or layer in arc.cats)
        )
        self._xy: dict[int, np.ndarray] = {idx: as_xy_array(graph.arcs[idx].geometry) for idx in self._arcs}
        boxes = {
            idx: (
                float(xy[:, 0].min()),
                float(xy[:, 1].min()),
                float(xy[:, 0].max()),
                float(xy[:, 1].max()),
            )
            for idx, xy in self._xy.items()
        }
        self._cell = float(cell_size) if cell_size else self._auto_cell_size(boxes)

        grid_mut: dict[tuple[int, int], list[int]] = {}
        for idx in self._arcs:
            x0, y0, x1, y1 = boxes[idx]
            k0 = _grid_key(x0, y0, self._cell)
            k1 = _grid_key(x1, y1, self._cell)
            for gx in range(k0[0], k1[0] + 1):
                for gy in range(k0[1], k1[1] + 1):
                    grid_mut.setdefault((gx, gy), []).append(idx)
        self._grid = {key: tuple(values) for key, values in grid_mut.items()}
        if self._grid:
            self._key_bounds = (
                min(k[0] for k in self._grid),
                min(k[1] for k in self._grid),
                max(k[0] for k in self._grid),
                max(k[1] for k in self._grid),
            )
        else:
            self._key_bounds = (0, 0, 0, 0)
        self._max_abs_lat = max((max(abs(b[1]), abs(b[3])) for b in boxes.values()), default=0.0)

    @staticmethod
    def _auto_cell_size(boxes: dict[int, tuple[float, float, float, float]]) -> float:
        spans = [max(b[2] - b[0], b[3] - b[1]) for b in boxes.values()]
        spans = [s for s in spans if s > 0.0]
        if not spans:
            return 1.0
        return float(sum(spans) / len(spans))

    @property
    def cell_size(self) -> float:
        return self._cell

    @property
    def arc_count(self) -> int:
        return len(self._arcs)

    def _unit_m(self, y: float) -> float:
        """Conservative metres per grid unit around a query, used only for ring lower bounds."""
        if not self._geodesic:
            return 1.0
        lat = min(89.9, max(self._max_abs_lat, abs(y)))
        return METRES_PER_DEGREE * max(0.01, math.cos(math.radians(lat)))

    def _max_radius(self, center: tuple[int, int]) -> int:
        x0, y0, x1, y1 = self._key_bounds
        return max(abs(center[0] - x0), abs(center[0] - x1), abs(center[1] - y0), abs(center[1] - y1))

    def nearest(
        self,
        x: float,
        y: float,
        *,
        max_distance: float = math.inf,
        arc_types: Iterable[str] | None = None,
        layer: int | None = None,
    ) -> tuple[int, float, float, Coord] | None:
        """Closest admissible arc as ``(arc, distance, t, point)``; lower arc id wins ties."""
        if not self._grid:
            return None
        types = {t.strip().lower() for t in arc_types} if arc_types is not None else None
        center = _grid_key(x, y, self._cell)
        unit_m = self._unit_m(y)
        best: tuple[int, float, float, Coord] | None = None
        visited: set[int] = set()
        for radius in range(0, self._max_radius(center) + 1):
            lower_bound = max(0.0, (radius - 1) * self._cell * unit_m)
            limit = min(max_distance, best[1]) if best is not None else max_distance
            if lower_bound > limit:
                break
            ring: set[int] = set()
            for dx, dy in _ring_offsets(radius):
                ring.update(self._grid.get((center[0] + dx, center[1] + dy), ()))
            for idx in sorted(ring - visited):
                visited.add(idx)
                arc = self._graph.arcs[idx]
                if types is not None and arc.type not in types:
                    continue
                if layer is not None and layer not in arc.cats:
                    continue
                distance, t, point = project_point(
                    arc.geometry,
                    self._xy[idx],
                    x,
                    y,
                    geodesic=self._geodesic,
                )
                if not math.isfinite(distance):
                    continue
                if best is None or distance < best[1] or (distance == best[1] and arc.id < self._graph.arcs[best[0]].id):
                    best = (idx, distance, t, point)
        return best

    def locate(
        self,
        coordinate: tuple[float, float] | tuple[float, float, float],
        max_distance: float,
        arc_type_filter: Iterable[str] | None = None,
        *,
        layer: int | None = None,
    ) -> GraphPosition:
        x, y = float(coordinate[0]), float(coordinate[1])
        found = self.nearest(x, y, max_distance=max_distance, arc_types=arc_type_filter, layer=layer)
        if found is None or found[1] > max_distance:
            raise LocatorNotFound(
                message=(
                    f"no network arc within {max_distance:g} of ({x:g}, {y:g})"
                    if found is None
                    else f"nearest arc is {found[1]:g} from ({x:g}, {y:g}), beyond {max_distance:g}"
                ),
                details={
                    "x": x,
                    "y": y,
                    "max_distance": max_distance,
                    "nearest_distance": None if found is None else found[1],
                },
            )
        arc, distance, t, point = found
        return GraphPosition.on_arc(self._graph, arc, t, distance=distance, point=point)

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

import ijson

from .errors import GraphBuildFailure
from .geometry import Coord, polyline_length
from .logging_utils import log_event
from .settings import PathConfig

FORWARD = 1
BACKWARD = -1

INFEASIBLE = math.inf


@dataclass(frozen=True)
class Node:
    index: int
    id: int
    coord: Coord
    cats: dict[int, tuple[int, ...]] = field(default_factory=dict)
    # Negative cost closes the node to through traffic.
    cost: float = 0.0

    @property
    def closed(self) -> bool:
        return self.cost < 0.0


@dataclass(frozen=True)
class Arc:
    index: int
    id: int
    type: str
    from_node: int
    to_node: int
    forward_cost: float
    backward_cost: float
    geometry: tuple[Coord, ...]
    length: float
    cats: dict[int, tuple[int, ...]] = field(default_factory=dict)

    def cost(self, direction: int) -> float:
        return self.forward_cost if direction == FORWARD else self.backward_cost

    def open(self, direction: int) -> bool:
        cost = self.cost(direction)
        return math.isfinite(cost) and cost >= 0.0

    def tail(self, direction: int) -> int:
        return self.from_node if direction == FORWARD else self.to_node

    def head(self, direction: int) -> int:
        return self.to_node if direction == FORWARD else self.from_node

    def first_cat(self, layer: int) -> int | None:
        cats = self.cats.get(layer)
        return cats[0] if cats else None


@dataclass(frozen=True)
class CostGraph:
    """Arena of nodes and arcs addressed by index. Never mutated after build."""

    version: str
    source: str
    geodesic: bool
    has_z: bool
    nodes: tuple[Node, ...]
    arcs: tuple[Arc, ...]
    # Per node: (arc index, direction) pairs leaving the node with a finite cost.
    outgoing: tuple[tuple[tuple[int, int], ...], ...]
    # Per node: (arc index, direction) pairs starting at the node, ignoring which way is open.
    incident: tuple[tuple[tuple[int, int], ...], ...]
    node_by_id: dict[int, int]
    arc_by_id: dict[int, int]
    node_by_cat: dict[tuple[int, int], int]
    arc_by_cat: dict[tuple[int, int], int]
    component_by_node: tuple[int, ...]
    component_count: int
    turn_rows: dict[int, tuple[dict[str, Any], ...]] = field(default_factory=dict)

    def node_for_category(self, layer: int, cat: int) -> int | None:
        return self.node_by_cat.get((int(layer), int(cat)))

    def arc_for_category(self, layer: int, cat: int) -> int | None:
        return self.arc_by_cat.get((int(layer), int(cat)))

    def summary(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "source": self.source,
            "geodesic": self.geodesic,
            "has_z": self.has_z,
            "node_count": len(self.nodes),
            "arc_count": len(self.arcs),
            "component_count": self.component_count,
            "turntable_layers": sorted(self.turn_rows),
        }


def _as_float(raw: object) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if not isinstance(raw, (int, float, str, Decimal)):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if not math.isnan(value) else None


def _as_int(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, Decimal)):
        return int(raw)
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


def _parse_cats(raw: object) -> dict[int, tuple[int, ...]]:
    if not isinstance(raw, Mapping):
        return {}
    out: dict[int, tuple[int, ...]] = {}
    for layer_raw, values in raw.items():
        layer = _as_int(layer_raw)
        if layer is None:
            continue
        if not isinstance(values, (list, tuple)):
            values = [values]
        cats = tuple(cat for cat in (_as_int(v) for v in values) if cat is not None)
        if cats:
            out[layer] = cats
    return out


def _parse_coord(raw: object) -> Coord | None:
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        return None
    x = _as_float(raw[0])
    y = _as_float(raw[1])
    z = _as_float(raw[2]) if len(raw) > 2 else 0.0
    if x is None or y is None or z is None:
        return None
    return (x, y, z)


def _parse_node(raw: object) -> tuple[int, Coord, dict[int, tuple[int, ...]], bool] | None:
    if not isinstance(raw, Mapping):
        return None
    node_id = _as_int(raw.get("id"))
    x = _as_float(raw.get("x"))
    y = _as_float(raw.get("y"))
    if node_id is None or x is None or y is None:
        return None
    has_z = raw.get("z") is not None
    z = _as_float(raw.get("z", 0.0))
    if z is None:
        return None
    return node_id, (x, y, z), _parse_cats(raw.get("cats")), has_z


def _parse_arc(raw: object) -> dict[str, Any] | None:
    if not isinstance(raw, Mapping):
        return None
    arc_id = _as_int(raw.get("id"))
    u = _as_int(raw.get("from"))
    v = _as_int(raw.get("to"))
    if arc_id is None or u is None or v is None:
        return None
    arc_type = str(raw.get("type", "line")).strip().lower() or "line"
    geometry: list[Coord] = []
    raw_geometry = raw.get("geometry") or []
    if not isinstance(raw_geometry, (list, tuple)):
        return None
    for item in raw_geometry:
        coord = _parse_coord(item)
        if coord is None:
            return None
        geometry.append(coord)
    has_z = any(isinstance(item, (list, tuple)) and len(item) > 2 for item in raw_geometry)
    return {
        "id": arc_id,
        "type": arc_type,
        "from": u,
        "to": v,
        "geometry": geometry,
        "cats": _parse_cats(raw.get("cats")),
        "has_z": has_z,
    }


def _parse_attribute_table(rows: object, *, layer: int) -> dict[int, dict[str, Any]]:
    if not isinstance(rows, (list, tuple)):
        raise GraphBuildFailure(
            message=f"attribute table for layer {layer} is not a list",
            details={"layer": layer},
        )
    table: dict[int, dict[str, Any]] = {}
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        cat = _as_int(row.get("cat"))
        if cat is None:
            continue
        table[cat] = dict(row)
    return table


def _column_values(
    table: Mapping[int, Mapping[str, Any]],
    column: str,
    *,
    layer: int,
) -> dict[int, float | None]:
    if not any(column in row for row in table.values()):
        raise GraphBuildFailure(
            message=f"column <{column}> not found in attribute table of layer {layer}",
            details={"layer": layer, "column": column},
        )
    values: dict[int, float | None] = {}
    for cat, row in table.items():
        raw = row.get(column)
        if raw is None:
            values[cat] = None
            continue
        value = _as_float(raw)
        if value is None:
            raise GraphBuildFailure(
                message=f"non-numeric value {raw!r} in column <{column}> (layer {layer}, cat {cat})",
                details={"layer": layer, "column": column, "cat": cat},
            )
        values[cat] = value
    return values


def _graph_meta_from_head(path: Path) -> tuple[str, str]:
    try:
        with path.open("rb") as fh:
            head = fh.read(65_536).decode("utf-8", errors="ignore")
    except OSError:
        return "unknown", str(path)
    version_match = re.search(r'"version"\s*:\s*"([^"]+)"', head)
    source_match = re.search(r'"source"\s*:\s*"([^"]+)"', head)
    version = version_match.group(1) if version_match else "unknown"
    source = source_match.group(1) if source_match else str(path)
    return version, source


class _PayloadReader:
    """Uniform access to an in-memory payload or a streamed JSON asset."""

    def __init__(self, source: Path | str | Mapping[str, Any]) -> None:
        self._payload: Mapping[str, Any] | None = None
        self._path: Path | None = None
        if isinstance(source, Mapping):
            self._payload = source
            self.version = str(source.get("version", "unknown"))
            self.source = str(source.get("source", "memory"))
        else:
            self._path = Path(source)
            if not self._path.exists():
                raise GraphBuildFailure(
                    reason_code="network_asset_unavailable",
                    message=f"network asset <{self._path}> does not exist",
                    details={"path": str(self._path)},
                )
            self.version, self.source = _graph_meta_from_head(self._path)

    def items(self, key: str) -> Iterator[Any]:
        if self._payload is not None:
            yield from self._payload.get(key) or ()
            return
        assert self._path is not None
        try:
            with self._path.open("rb") as fh:
                yield from ijson.items(fh, f"{key}.item")
        except (ijson.JSONError, OSError) as exc:
            raise GraphBuildFailure(
                message=f"unable to read <{key}> from {self._path}: {exc}",
                details={"path": str(self._path), "key": key},
            ) from exc

    def kvitems(self, key: str) -> Iterator[tuple[str, Any]]:
        if self._payload is not None:
            section = self._payload.get(key) or {}
            if not isinstance(section, Mapping):
                raise GraphBuildFailure(message=f"<{key}> section is not an object")
            yield from section.items()
            return
        assert self._path is not None
        try:
            with self._path.open("rb") as fh:
                yield from ijson.kvitems(fh, key)
        except (ijson.JSONError, OSError) as exc:
            raise GraphBuildFailure(
                message=f"unable to read <{key}> from {self._path}: {exc}",
                details={"path": str(self._path), "key": key},
            ) from exc


def _compute_component_index(
    node_count: int,
    arcs: Sequence[Arc],
) -> tuple[tuple[int, ...], int]:
    undirected: list[set[int]] = [set() for _ in range(node_count)]
    for arc in arcs:
        if not (arc.open(FORWARD) or arc.open(BACKWARD)):
            continue
        undirected[arc.from_node].add(arc.to_node)
        undirected[arc.to_node].add(arc.from_node)
    component_by_node = [0] * node_count
    component_idx = 0
    for start in range(node_count):
        if component_by_node[start]:
            continue
        component_idx += 1
        q: deque[int] = deque([start])
        while q:
            current = q.popleft()
            if component_by_node[current]:
                continue
            component_by_node[current] = component_idx
            for nxt in undirected[current]:
                if not component_by_node[nxt]:
                    q.append(nxt)
    return tuple(component_by_node), component_idx


def _direction_cost(
    *,
    length: float,
    cat: int | None,
    values: Mapping[int, float | None] | None,
) -> tuple[float, bool]:
    """Cost of one arc direction and whether the attribute value was missing."""
    if values is None:
        return length, False
    value = values.get(cat) if cat is not None else None
    if value is None:
        return INFEASIBLE, True
    if value < 0.0:
        return INFEASIBLE, False
    return value * length, False


def _warn_if_not_lonlat(graph: CostGraph) -> int:
    """Count vertices that cannot be lon/lat degrees and warn when there are any."""
    outside = 0
    sample: Coord | None = None
    points = [node.coord for node in graph.nodes]
    points.extend(coord for arc in graph.arcs for coord in arc.geometry)
    for point in points:
        if abs(point[0]) > 180.0 or abs(point[1]) > 90.0:
            outside += 1
            sample = sample or point
    if outside:
        log_event(
            "geodesic_coordinates_out_of_range",
            level=logging.WARNING,
            source=graph.source,
            vertices_out_of_range=outside,
            sample=list(sample) if sample is not None else None,
            hint="geodesic mode expects longitude/latitude degrees",
        )
    return outside


def build_graph(
    network: Path | str | Mapping[str, Any],
    *,
    arc_types: Sequence[str] = ("line", "boundary"),
    arc_layer: int = 1,
    node_layer: int = 2,
    forward_cost_column: str | None = None,
    backward_cost_column: str | None = None,
    node_cost_column: str | None = None,
    geodesic: bool = False,
) -> CostGraph:
    """Build the cost graph from a network asset path or an in-memory payload.

    Arc costs are the arc length multiplied by the cost column value of the
    arc's first category on ``arc_layer`` (plain length without a column). A
    negative or missing value closes that direction. Without a backward column
    both directions share the forward cost.
    """
    started = time.monotonic()
    reader = _PayloadReader(network)
    wanted_types = {str(t).strip().lower() for t in arc_types}

    node_ids: list[int] = []
    node_coords: list[Coord] = []
    node_cats: list[dict[int, tuple[int, ...]]] = []
    node_by_id: dict[int, int] = {}
    has_z = False
    nodes_seen = 0
    for raw_node in reader.items("nodes"):
        nodes_seen += 1
        parsed = _parse_node(raw_node)
        if parsed is None:
            continue
        node_id, coord, cats, node_has_z = parsed
        if node_id in node_by_id:
            continue
        node_by_id[node_id] = len(node_ids)
        node_ids.append(node_id)
        node_coords.append(coord)
        node_cats.append(cats)
        has_z = has_z or node_has_z
    if not node_ids:
        raise GraphBuildFailure(message="network has no valid nodes", details={"nodes_seen": nodes_seen})

    raw_arcs: list[dict[str, Any]] = []
    arcs_seen = 0
    arcs_dropped = 0
    seen_arc_ids: set[int] = set()
    for raw_arc in reader.items("arcs"):
        arcs_seen += 1
        parsed_arc = _parse_arc(raw_arc)
        if parsed_arc is None or parsed_arc["from"] not in node_by_id or parsed_arc["to"] not in node_by_id:
            arcs_dropped += 1
            continue
        if parsed_arc["type"] not in wanted_types or parsed_arc["id"] in seen_arc_ids:
            continue
        seen_arc_ids.add(parsed_arc["id"])
        raw_arcs.append(parsed_arc)
    if not raw_arcs:
        raise GraphBuildFailure(
            message="network has no usable arcs",
            details={"arcs_seen": arcs_seen, "arcs_dropped": arcs_dropped, "arc_types": sorted(wanted_types)},
        )
    # Arc index order equals arc id order, so index ties resolve to the lower id.
    raw_arcs.sort(key=lambda item: item["id"])

    tables: dict[int, dict[int, dict[str, Any]]] = {}
    turn_rows: dict[int, tuple[dict[str, Any], ...]] = {}
    needs_tables = bool(forward_cost_column or backward_cost_column or node_cost_column)
    if needs_tables:
        for layer_raw, rows in reader.kvitems("attributes"):
            layer = _as_int(layer_raw)
            if layer is not None:
                tables[layer] = _parse_attribute_table(rows, layer=layer)
    for layer_raw, rows in reader.kvitems("turntables"):
        layer = _as_int(layer_raw)
        if layer is not None and isinstance(rows, (list, tuple)):
            turn_rows[layer] = tuple(dict(row) for row in rows if isinstance(row, Mapping))

    arc_table = tables.get(arc_layer, {})
    forward_values = (
        _column_values(arc_table, forward_cost_column, layer=arc_layer) if forward_cost_column else None
    )
    backward_values = (
        _column_values(arc_table, backward_cost_column, layer=arc_layer) if backward_cost_column else None
    )
    node_values = (
        _column_values(tables.get(node_layer, {}), node_cost_column, layer=node_layer)
        if node_cost_column
        else None
    )

    missing_values = 0
    arcs: list[Arc] = []
    for index, item in enumerate(raw_arcs):
        u = node_by_id[item["from"]]
        v = node_by_id[item["to"]]
        geometry = item["geometry"] or [node_coords[u], node_coords[v]]
        if len(geometry) == 1:
            geometry = [geometry[0], node_coords[v]]
        has_z = has_z or bool(item["has_z"])
        length = polyline_length(geometry, geodesic=geodesic)
        cats = item["cats"]
        cat = cats.get(arc_layer, (None,))[0]
        fwd, fwd_missing = _direction_cost(length=length, cat=cat, values=forward_values)
        if backward_values is not None:
            bwd, bwd_missing = _direction_cost(length=length, cat=cat, values=backward_values)
        else:
            bwd, bwd_missing = fwd, False
        missing_values += int(fwd_missing) + int(bwd_missing)
        arcs.append(
            Arc(
                index=index,
                id=item["id"],
                type=item["type"],
                from_node=u,
                to_node=v,
                forward_cost=fwd,
                backward_cost=bwd,
                geometry=tuple(geometry),
                length=length,
                cats=cats,
            )
        )

    nodes: list[Node] = []
    for index, node_id in enumerate(node_ids):
        cost = 0.0
        if node_values is not None:
            cat_list = node_cats[index].get(node_layer, ())
            value = node_values.get(cat_list[0]) if cat_list else None
            cost = float(value) if value is not None else 0.0
        nodes.append(Node(index=index, id=node_id, coord=node_coords[index], cats=node_cats[index], cost=cost))

    outgoing_mut: list[list[tuple[int, int]]] = [[] for _ in nodes]
    incident_mut: list[list[tuple[int, int]]] = [[] for _ in nodes]
    for arc in arcs:
        if arc.open(FORWARD):
            outgoing_mut[arc.from_node].append((arc.index, FORWARD))
        if arc.open(BACKWARD):
            outgoing_mut[arc.to_node].append((arc.index, BACKWARD))
        if arc.open(FORWARD) or arc.open(BACKWARD):
            incident_mut[arc.from_node].append((arc.index, FORWARD))
            incident_mut[arc.to_node].append((arc.index, BACKWARD))

    node_by_cat: dict[tuple[int, int], int] = {}
    for node in nodes:
        for layer, cats in node.cats.items():
            for cat in cats:
                node_by_cat.setdefault((layer, cat), node.index)
    arc_by_cat: dict[tuple[int, int], int] = {}
    for arc in arcs:
        for layer, cats in arc.cats.items():
            for cat in cats:
                arc_by_cat.setdefault((layer, cat), arc.index)

    component_by_node, component_count = _compute_component_index(len(nodes), arcs)
    graph = CostGraph(
        version=reader.version,
        source=reader.source,
        geodesic=bool(geodesic),
        has_z=has_z,
        nodes=tuple(nodes),
        arcs=tuple(arcs),
        outgoing=tuple(tuple(items) for items in outgoing_mut),
        incident=tuple(tuple(items) for items in incident_mut),
        node_by_id=node_by_id,
        arc_by_id={arc.id: arc.index for arc in arcs},
        node_by_cat=node_by_cat,
        arc_by_cat=arc_by_cat,
        component_by_node=component_by_node,
        component_count=component_count,
        turn_rows=turn_rows,
    )
    if graph.geodesic:
        _warn_if_not_lonlat(graph)
    log_event(
        "network_graph_ready",
        source=graph.source,
        graph_version=graph.version,
        nodes_seen=nodes_seen,
        arcs_seen=arcs_seen,
        arcs_dropped=arcs_dropped,
        missing_cost_values=missing_values,
        elapsed_ms=round((time.monotonic() - started) * 1000.0, 2),
        **{key: value for key, value in graph.summary().items() if key not in {"source", "version"}},
    )
    return graph


def build_graph_for_config(network: Path | str | Mapping[str, Any], config: PathConfig) -> CostGraph:
    return build_graph(
        network,
        arc_types=config.arc_types,
        arc_layer=config.arc_layer,
        node_layer=config.node_layer,
        forward_cost_column=config.forward_cost_column,
        backward_cost_column=config.backward_cost_column,
        node_cost_column=config.node_cost_column,
        geodesic=config.geodesic,
    )

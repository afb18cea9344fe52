from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .errors import LocatorNotFound
from .locator import GraphPosition, SpatialLocator
from .logging_utils import log_event
from .models import CategoryRef, Coordinate, Endpoint, QueryRecord
from .network import CostGraph, build_graph_for_config
from .settings import PathConfig
from .solver import PathResult, PathSolver
from .turntable import TurnGraph, build_turn_graph


class PathEngine:
    """Read-only query engine over one network and one run configuration.

    Everything shared between queries is built once; the turn graph is built
    on first use (or by ``prepare``) under a lock.
    """

    def __init__(self, graph: CostGraph, config: PathConfig) -> None:
        if config.geodesic != graph.geodesic:
            raise ValueError("config.geodesic must match the mode the graph was built with")
        self.graph = graph
        self.config = config
        self.locator = SpatialLocator(
            graph,
            arc_types=config.arc_types,
            cell_size=config.grid_cell_size,
        )
        self._lock = threading.Lock()
        self._turn_graph: TurnGraph | None = None
        self._solver: PathSolver | None = None

    @classmethod
    def from_network(cls, network: Path | str | Mapping[str, Any], config: PathConfig) -> "PathEngine":
        return cls(build_graph_for_config(network, config), config)

    @property
    def turn_graph(self) -> TurnGraph | None:
        if not self.config.turntable:
            return None
        if self._turn_graph is None:
            with self._lock:
                if self._turn_graph is None:
                    self._turn_graph = build_turn_graph(
                        self.graph,
                        self.config.turn_layer,
                        self.config.turn_cat_layer,
                        default_cost=self.config.turn_default_cost,
                        default_forbidden=self.config.turn_default_forbidden,
                    )
        return self._turn_graph

    @property
    def solver(self) -> PathSolver:
        if self._solver is None:
            turn_graph = self.turn_graph
            with self._lock:
                if self._solver is None:
                    self._solver = PathSolver(
                        self.graph,
                        turn_graph=turn_graph,
                        max_search_cost=self.config.max_search_cost,
                    )
        return self._solver

    def prepare(self) -> None:
        """Build the lazy parts now so that a broken turntable fails before any query."""
        _ = self.solver
        log_event(
            "path_engine_ready",
            turntable=self.config.turntable,
            output_mode=self.config.output_mode,
            max_distance=self.config.max_distance,
            locator_arcs=self.locator.arc_count,
            locator_cell_size=self.locator.cell_size,
        )

    def resolve(self, endpoint: Endpoint, *, max_distance: float | None = None) -> GraphPosition:
        if isinstance(endpoint, Coordinate):
            return self.locator.locate(
                (endpoint.x, endpoint.y),
                self.config.max_distance if max_distance is None else max_distance,
                self.config.arc_types,
            )
        if isinstance(endpoint, CategoryRef):
            node = self.graph.node_for_category(endpoint.layer, endpoint.cat)
            if node is not None:
                return GraphPosition.at_node(self.graph, node)
            arc = self.graph.arc_for_category(endpoint.layer, endpoint.cat)
            if arc is not None:
                return GraphPosition.on_arc(self.graph, arc, 0.5)
            raise LocatorNotFound(
                reason_code="category_not_found",
                message=f"no node or arc with category {endpoint.cat} in layer {endpoint.layer}",
                details={"layer": endpoint.layer, "cat": endpoint.cat},
            )
        raise TypeError(f"unsupported endpoint {endpoint!r}")

    def solve(self, record: QueryRecord, *, max_distance: float | None = None) -> PathResult:
        start = self.resolve(record.start, max_distance=max_distance)
        end = self.resolve(record.end, max_distance=max_distance)
        return self.solver.shortest_path(start, end)

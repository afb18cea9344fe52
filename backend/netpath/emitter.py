from __future__ import annotations

from typing import Any, Literal, Protocol

from .geometry import Coord, join_lines, substring
from .network import BACKWARD, CostGraph
from .solver import PathResult, PathStep

OutputMode = Literal["merged", "segments"]


class FeatureWriter(Protocol):
    def write_feature(self, coords: list[Coord], attributes: dict[str, Any]) -> int: ...

    def build_index(self) -> Any: ...


class ResultEmitter:
    """Turns solved paths into line features.

    ``merged`` writes one line per path, trimmed at mid-arc endpoints.
    ``segments`` writes every traversed arc with its original geometry and
    the path's ``cat`` as the grouping attribute.
    """

    def __init__(
        self,
        graph: CostGraph,
        writer: FeatureWriter,
        *,
        mode: OutputMode = "merged",
        arc_layer: int = 1,
    ) -> None:
        if mode not in ("merged", "segments"):
            raise ValueError(f"unknown output mode {mode!r}")
        self._graph = graph
        self._writer = writer
        self.mode: OutputMode = mode
        self._arc_layer = arc_layer

    def step_geometry(self, step: PathStep) -> list[Coord]:
        arc = self._graph.arcs[step.arc]
        return substring(arc.geometry, step.t_from, step.t_to, geodesic=self._graph.geodesic)

    def merged_geometry(self, result: PathResult) -> list[Coord]:
        if not result.steps:
            return [result.start.point, result.end.point]
        line = join_lines([self.step_geometry(step) for step in result.steps])
        if len(line) == 1:
            line.append(line[0])
        return line

    def segment_geometries(self, result: PathResult) -> list[tuple[PathStep, list[Coord]]]:
        return [(step, list(self._graph.arcs[step.arc].geometry)) for step in result.steps]

    def emit(
        self,
        result: PathResult,
        *,
        cat: int,
        request_id: str,
        fcat: int = 0,
        tcat: int = 0,
        mode: OutputMode | None = None,
    ) -> int:
        """Write the features of one path; returns how many were written."""
        mode = mode or self.mode
        fdist = round(result.start.distance, 9)
        tdist = round(result.end.distance, 9)
        if mode == "merged":
            self._writer.write_feature(
                self.merged_geometry(result),
                {
                    "cat": cat,
                    "id": request_id,
                    "fcat": fcat,
                    "tcat": tcat,
                    "sp": 0,
                    "cost": result.cost,
                    "fdist": fdist,
                    "tdist": tdist,
                },
            )
            return 1
        written = 0
        for order, (step, coords) in enumerate(self.segment_geometries(result), start=1):
            arc = self._graph.arcs[step.arc]
            self._writer.write_feature(
                coords,
                {
                    "cat": cat,
                    "id": request_id,
                    "seg": order,
                    "direction": -1 if step.direction == BACKWARD else 1,
                    "arc_id": arc.id,
                    "arc_cat": arc.first_cat(self._arc_layer) or 0,
                    "cost": step.cost,
                    "fdist": fdist,
                    "tdist": tdist,
                },
            )
            written += 1
        return written

    def close(self) -> Any:
        return self._writer.build_index()

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class Coordinate(BaseModel):
    x: float
    y: float
    z: float | None = None

    @field_validator("x", "y", "z")
    @classmethod
    def finite(cls, v: float | None) -> float | None:
        if v is not None and not math.isfinite(v):
            raise ValueError("coordinate must be finite")
        return v


class CategoryRef(BaseModel):
    layer: int = Field(..., ge=1)
    cat: int


Endpoint = Coordinate | CategoryRef


class QueryRecord(BaseModel):
    """One route request: two endpoints plus an optional identifier."""

    seq: int = Field(..., ge=1)
    line_no: int | None = None
    request_id: str
    start: Endpoint
    end: Endpoint

    @property
    def fcat(self) -> int:
        return self.start.cat if isinstance(self.start, CategoryRef) else 0

    @property
    def tcat(self) -> int:
        return self.end.cat if isinstance(self.end, CategoryRef) else 0


class GeoJSONLineString(BaseModel):
    type: Literal["LineString"]
    coordinates: list[tuple[float, float] | tuple[float, float, float]]


class PathStepOut(BaseModel):
    arc_id: int
    direction: Literal[1, -1]
    t_from: float
    t_to: float
    cost: float


class PathOut(BaseModel):
    request_id: str
    seq: int
    sp: int
    reason_code: str | None = None
    error: str | None = None
    cost: float | None = None
    fdist: float | None = None
    tdist: float | None = None
    steps: list[PathStepOut] = Field(default_factory=list)
    geometry: GeoJSONLineString | None = None


class PathRequest(BaseModel):
    start: Endpoint
    end: Endpoint
    request_id: str | None = None
    max_distance: float | None = Field(default=None, ge=0.0)


class BatchRequest(BaseModel):
    """Batch in the line-oriented record format, either as text or as lines."""

    text: str | None = None
    lines: list[str] | None = Field(default=None, max_length=10_000)

    @model_validator(mode="after")
    def _one_source(self) -> "BatchRequest":
        if (self.text is None) == (self.lines is None):
            raise ValueError("provide exactly one of 'text' or 'lines'")
        return self

    def records_text(self) -> list[str]:
        if self.lines is not None:
            return list(self.lines)
        return (self.text or "").splitlines()


class BatchResponse(BaseModel):
    run_id: str
    complete: bool
    ok_count: int
    error_count: int
    results: list[PathOut]

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ARC_TYPES: frozenset[str] = frozenset({"line", "boundary"})


def _default_out_dir() -> str:
    # Keep run output under backend/out by default to avoid polluting the source tree.
    return str(Path(__file__).resolve().parents[1] / "out")


def _parse_arc_types(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [part.strip().lower() for part in value.split(",")]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(part).strip().lower() for part in value]
    else:
        raise ValueError("arc types must be a comma separated string or a sequence")
    out = tuple(dict.fromkeys(item for item in items if item))
    if not out:
        raise ValueError("at least one arc type is required")
    unknown = [item for item in out if item not in ARC_TYPES]
    if unknown:
        raise ValueError(f"unsupported arc type(s): {', '.join(unknown)}")
    return out


class Settings(BaseSettings):
    """Validated settings (env-driven). CLI flags override these per run."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    network_asset_path: str = Field(default="", alias="NETPATH_NETWORK_ASSET_PATH")
    out_dir: str = Field(default_factory=_default_out_dir, alias="NETPATH_OUT_DIR")
    log_level: str = Field(default="INFO", alias="NETPATH_LOG_LEVEL")

    arc_types: str = Field(default="line,boundary", alias="NETPATH_ARC_TYPES")
    arc_layer: int = Field(default=1, ge=1, alias="NETPATH_ARC_LAYER")
    node_layer: int = Field(default=2, ge=1, alias="NETPATH_NODE_LAYER")
    turn_layer: int = Field(default=3, ge=1, alias="NETPATH_TURN_LAYER")
    turn_cat_layer: int = Field(default=4, ge=1, alias="NETPATH_TURN_CAT_LAYER")
    forward_cost_column: str = Field(default="", alias="NETPATH_AFCOLUMN")
    backward_cost_column: str = Field(default="", alias="NETPATH_ABCOLUMN")
    node_cost_column: str = Field(default="", alias="NETPATH_NCOLUMN")

    max_distance: float = Field(default=1000.0, ge=0.0, alias="NETPATH_MAX_DISTANCE")
    geodesic: bool = Field(default=False, alias="NETPATH_GEODESIC")
    segments: bool = Field(default=False, alias="NETPATH_SEGMENTS")
    turntable: bool = Field(default=False, alias="NETPATH_TURNTABLE")
    turn_default_cost: float = Field(default=0.0, ge=0.0, alias="NETPATH_TURN_DEFAULT_COST")
    turn_default_forbidden: bool = Field(default=False, alias="NETPATH_TURN_DEFAULT_FORBIDDEN")

    # Batch control
    workers: int = Field(default=1, ge=1, le=64, alias="NETPATH_WORKERS")
    batch_concurrency: int = Field(default=4, ge=1, le=64, alias="NETPATH_BATCH_CONCURRENCY")
    grid_cell_size: float = Field(default=0.0, ge=0.0, alias="NETPATH_GRID_CELL_SIZE")
    max_search_cost: float = Field(default=0.0, ge=0.0, alias="NETPATH_MAX_SEARCH_COST")

    @field_validator("arc_types")
    @classmethod
    def _valid_arc_types(cls, value: str) -> str:
        return ",".join(_parse_arc_types(value))


class PathConfig(BaseModel):
    """Immutable run configuration threaded into the locator, solver and emitter."""

    model_config = ConfigDict(frozen=True)

    arc_types: tuple[str, ...] = ("line", "boundary")
    arc_layer: int = Field(default=1, ge=1)
    node_layer: int = Field(default=2, ge=1)
    turn_layer: int = Field(default=3, ge=1)
    turn_cat_layer: int = Field(default=4, ge=1)
    forward_cost_column: str | None = None
    backward_cost_column: str | None = None
    node_cost_column: str | None = None
    max_distance: float = Field(default=1000.0, ge=0.0)
    geodesic: bool = False
    segments: bool = False
    turntable: bool = False
    turn_default_cost: float = Field(default=0.0, ge=0.0)
    turn_default_forbidden: bool = False
    workers: int = Field(default=1, ge=1)
    grid_cell_size: float | None = Field(default=None, gt=0.0)
    max_search_cost: float | None = Field(default=None, gt=0.0)

    @field_validator("arc_types", mode="before")
    @classmethod
    def _coerce_arc_types(cls, value: object) -> tuple[str, ...]:
        return _parse_arc_types(value)

    @field_validator("forward_cost_column", "backward_cost_column", "node_cost_column", mode="before")
    @classmethod
    def _blank_column_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _backward_needs_forward(self) -> "PathConfig":
        if self.backward_cost_column and not self.forward_cost_column:
            raise ValueError("backward cost column requires a forward cost column")
        return self

    @property
    def output_mode(self) -> str:
        return "segments" if self.segments else "merged"

    @classmethod
    def from_settings(cls, source: Settings, **overrides: Any) -> "PathConfig":
        values: dict[str, Any] = {
            "arc_types": source.arc_types,
            "arc_layer": source.arc_layer,
            "node_layer": source.node_layer,
            "turn_layer": source.turn_layer,
            "turn_cat_layer": source.turn_cat_layer,
            "forward_cost_column": source.forward_cost_column,
            "backward_cost_column": source.backward_cost_column,
            "node_cost_column": source.node_cost_column,
            "max_distance": source.max_distance,
            "geodesic": source.geodesic,
            "segments": source.segments,
            "turntable": source.turntable,
            "turn_default_cost": source.turn_default_cost,
            "turn_default_forbidden": source.turn_default_forbidden,
            "workers": source.workers,
            # 0 in the environment means "unset"
            "grid_cell_size": source.grid_cell_size or None,
            "max_search_cost": source.max_search_cost or None,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


settings = Settings()

from __future__ import annotations

import csv
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

from .errors import OutputWriteFailure
from .geometry import Coord

ARTIFACT_FILES: tuple[str, ...] = (
    "paths.geojson",
    "paths.csv",
    "manifest.json",
)

CSV_COLUMNS: tuple[str, ...] = (
    "cat",
    "id",
    "line_no",
    "fcat",
    "tcat",
    "sp",
    "cost",
    "fdist",
    "tdist",
    "arc_count",
    "reason_code",
    "error",
)


def _wrap_os_error(path: Path, exc: OSError) -> OutputWriteFailure:
    return OutputWriteFailure(
        message=f"unable to write {path}: {exc.strerror or exc}",
        details={"path": str(path)},
    )


def _geometry(coords: list[Coord], *, has_z: bool) -> dict[str, Any]:
    if has_z:
        points = [[c[0], c[1], c[2]] for c in coords]
    else:
        points = [[c[0], c[1]] for c in coords]
    return {"type": "LineString", "coordinates": points}


class GeoJSONFeatureWriter:
    """Streams line features into a GeoJSON FeatureCollection.

    Features go to ``<name>.part`` while the run is in progress; ``build_index``
    closes the collection and moves it into place. A run that dies early leaves
    the ``.part`` file behind as the incomplete output.
    """

    def __init__(self, path: Path, *, has_z: bool = False) -> None:
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + ".part")
        self._has_z = has_z
        self._fh: TextIO | None = None
        self._count = 0
        self._closed = False

    @property
    def feature_count(self) -> int:
        return self._count

    def _ensure_open(self) -> TextIO:
        if self._fh is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = self.partial_path.open("w", encoding="utf-8")
                self._fh.write('{"type": "FeatureCollection", "features": [\n')
            except OSError as exc:
                raise _wrap_os_error(self.partial_path, exc) from exc
        return self._fh

    def write_feature(self, coords: list[Coord], attributes: dict[str, Any]) -> int:
        if self._closed:
            raise OutputWriteFailure(message=f"{self.path} is already finalised")
        fh = self._ensure_open()
        self._count += 1
        feature = {
            "type": "Feature",
            "id": self._count,
            "geometry": _geometry(coords, has_z=self._has_z),
            "properties": attributes,
        }
        try:
            if self._count > 1:
                fh.write(",\n")
            fh.write(json.dumps(feature))
        except OSError as exc:
            raise _wrap_os_error(self.partial_path, exc) from exc
        return self._count

    def build_index(self) -> Path:
        fh = self._ensure_open()
        try:
            fh.write("\n]}\n")
            fh.close()
            self.partial_path.replace(self.path)
        except OSError as exc:
            raise _wrap_os_error(self.path, exc) from exc
        self._closed = True
        self._fh = None
        return self.path

    def abort(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


class PathReport:
    """One attribute row per query, successful or not."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.rows: list[dict[str, Any]] = []

    def add(self, row: dict[str, Any]) -> None:
        self.rows.append(row)

    def write(self) -> Path:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=list(CSV_COLUMNS))
                writer.writeheader()
                for row in self.rows:
                    writer.writerow({k: row.get(k, "") for k in CSV_COLUMNS})
        except OSError as exc:
            raise _wrap_os_error(self.path, exc) from exc
        return self.path


def artifact_paths(out_dir: Path) -> dict[str, Path]:
    return {name: Path(out_dir) / name for name in ARTIFACT_FILES}


def write_manifest(out_dir: Path, manifest: dict[str, Any]) -> Path:
    path = Path(out_dir) / "manifest.json"
    enriched = {
        "created_at": datetime.now(UTC).isoformat(),
        **manifest,
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(enriched, indent=2), encoding="utf-8")
    except OSError as exc:
        raise _wrap_os_error(path, exc) from exc
    return path


class MemoryFeatureWriter:
    """Collects ``(coords, attributes)`` pairs instead of writing a file."""

    def __init__(self) -> None:
        self.features: list[tuple[list[Coord], dict[str, Any]]] = []

    @property
    def feature_count(self) -> int:
        return len(self.features)

    def write_feature(self, coords: list[Coord], attributes: dict[str, Any]) -> int:
        self.features.append((list(coords), dict(attributes)))
        return len(self.features)

    def build_index(self) -> list[tuple[list[Coord], dict[str, Any]]]:
        return self.features

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .emitter import ResultEmitter
from .engine import PathEngine
from .errors import STATUS_OK, MalformedRecord, NetPathError, OutputWriteFailure
from .logging_utils import log_event
from .models import CategoryRef, Coordinate, Endpoint, QueryRecord
from .run_store import GeoJSONFeatureWriter, PathReport, artifact_paths, write_manifest
from .solver import PathResult

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3

COMMENT_PREFIX = "#"


def _malformed(line: str, line_no: int | None, problem: str) -> MalformedRecord:
    where = f"line {line_no}: " if line_no is not None else ""
    return MalformedRecord(
        message=f"{where}{problem}",
        details={"line_no": line_no, "record": line.strip()},
    )


def _parse_coordinate(token: str, *, line: str, line_no: int | None) -> Coordinate:
    parts = token.split(",")
    if len(parts) not in (2, 3):
        raise _malformed(line, line_no, f"coordinate {token!r} must be x,y or x,y,z")
    try:
        values = [float(part) for part in parts]
    except ValueError as exc:
        raise _malformed(line, line_no, f"coordinate {token!r} is not numeric") from exc
    if not all(math.isfinite(v) for v in values):
        raise _malformed(line, line_no, f"coordinate {token!r} is not finite")
    return Coordinate(x=values[0], y=values[1], z=values[2] if len(values) == 3 else None)


def _parse_int(token: str, *, what: str, line: str, line_no: int | None) -> int:
    try:
        return int(token)
    except ValueError as exc:
        raise _malformed(line, line_no, f"{what} {token!r} is not an integer") from exc


def _is_int(token: str) -> bool:
    try:
        int(token)
    except ValueError:
        return False
    return True


def _parse_plain_coordinates(
    tokens: list[str], *, line: str, line_no: int | None
) -> tuple[Coordinate, Coordinate, str | None]:
    values: list[float] = []
    for token in tokens:
        try:
            values.append(float(token))
        except ValueError:
            break
    rest = tokens[len(values):]
    request_id: str | None = None
    if len(rest) == 1:
        request_id = rest[0]
    elif not rest and len(values) in (5, 7):
        request_id = tokens[-1]
        values = values[:-1]
    if len(rest) > 1 or len(values) not in (4, 6):
        raise _malformed(line, line_no, "coordinate record needs x1 y1 [z1] x2 y2 [z2] and an optional id")
    if not all(math.isfinite(v) for v in values):
        raise _malformed(line, line_no, "coordinates are not finite")
    if len(values) == 6:
        start = Coordinate(x=values[0], y=values[1], z=values[2])
        end = Coordinate(x=values[3], y=values[4], z=values[5])
    else:
        start = Coordinate(x=values[0], y=values[1])
        end = Coordinate(x=values[2], y=values[3])
    return start, end, request_id


def parse_record(line: str, *, seq: int, line_no: int | None = None) -> QueryRecord:
    """Parse one query record.

    Three shapes are accepted::

        <layer> <cat_from> <cat_to> [<id>]
        <x1>,<y1>[,<z1>] <x2>,<y2>[,<z2>] [<id>]
        <x1> <y1> [<z1>] <x2> <y2> [<z2>] [<id>]

    Three integers, or four tokens led by three integers, make a category
    record. In the plain coordinate form either both points carry z or
    neither does. The request id defaults to the record's sequence number.
    """
    tokens = line.split()
    if not tokens:
        raise _malformed(line, line_no, "empty record")

    start: Endpoint
    end: Endpoint
    if "," in tokens[0]:
        if len(tokens) not in (2, 3):
            raise _malformed(line, line_no, "coordinate record needs two points and an optional id")
        start = _parse_coordinate(tokens[0], line=line, line_no=line_no)
        end = _parse_coordinate(tokens[1], line=line, line_no=line_no)
        request_id = tokens[2] if len(tokens) == 3 else str(seq)
    elif len(tokens) >= 4 and not (len(tokens) == 4 and all(_is_int(t) for t in tokens[:3])):
        start, end, plain_id = _parse_plain_coordinates(tokens, line=line, line_no=line_no)
        request_id = plain_id if plain_id is not None else str(seq)
    else:
        if len(tokens) not in (3, 4):
            raise _malformed(line, line_no, "category record needs a layer, two categories and an optional id")
        layer = _parse_int(tokens[0], what="layer", line=line, line_no=line_no)
        if layer < 1:
            raise _malformed(line, line_no, f"layer {layer} must be >= 1")
        from_cat = _parse_int(tokens[1], what="category", line=line, line_no=line_no)
        to_cat = _parse_int(tokens[2], what="category", line=line, line_no=line_no)
        start = CategoryRef(layer=layer, cat=from_cat)
        end = CategoryRef(layer=layer, cat=to_cat)
        request_id = tokens[3] if len(tokens) == 4 else str(seq)

    return QueryRecord(seq=seq, line_no=line_no, request_id=request_id, start=start, end=end)


def _decode(raw: str | bytes) -> tuple[str, UnicodeDecodeError | None]:
    if isinstance(raw, str):
        return raw, None
    try:
        return raw.decode("utf-8"), None
    except UnicodeDecodeError as exc:
        return raw.decode("utf-8", errors="replace"), exc


def iter_records(lines: Iterable[str | bytes]) -> Iterator[tuple[int, int, QueryRecord | MalformedRecord]]:
    """Yield ``(seq, line_no, record-or-error)``; blank lines and comments are skipped.

    Byte lines are decoded one at a time, so a line that is not valid UTF-8
    only spoils its own record.
    """
    seq = 0
    for line_no, raw in enumerate(lines, start=1):
        text, decode_error = _decode(raw)
        line = text.strip()
        if decode_error is not None:
            seq += 1
            yield seq, line_no, _malformed(line, line_no, f"not valid UTF-8 at byte {decode_error.start}")
            continue
        if not line or line.startswith(COMMENT_PREFIX):
            continue
        seq += 1
        try:
            yield seq, line_no, parse_record(line, seq=seq, line_no=line_no)
        except MalformedRecord as exc:
            yield seq, line_no, exc


@dataclass(frozen=True)
class QueryOutcome:
    seq: int
    line_no: int | None
    request_id: str
    record: QueryRecord | None = None
    result: PathResult | None = None
    error: NetPathError | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def sp(self) -> int:
        if self.error is not None:
            return self.error.status
        return STATUS_OK

    @property
    def fcat(self) -> int:
        return self.record.fcat if self.record is not None else 0

    @property
    def tcat(self) -> int:
        return self.record.tcat if self.record is not None else 0

    def report_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "cat": self.seq,
            "id": self.request_id,
            "line_no": self.line_no if self.line_no is not None else "",
            "fcat": self.fcat,
            "tcat": self.tcat,
            "sp": self.sp,
        }
        if self.result is not None:
            row.update(
                cost=self.result.cost,
                fdist=round(self.result.start.distance, 9),
                tdist=round(self.result.end.distance, 9),
                arc_count=len(self.result.steps),
            )
        if self.error is not None:
            row.update(reason_code=self.error.reason_code, error=self.error.message)
        return row


def _log_failure(outcome: QueryOutcome) -> None:
    assert outcome.error is not None
    log_event(
        "path_query_failed",
        level=logging.WARNING,
        seq=outcome.seq,
        line_no=outcome.line_no,
        request_id=outcome.request_id,
        reason_code=outcome.error.reason_code,
        error_message=outcome.error.message,
        sp=outcome.sp,
    )


def solve_record(engine: PathEngine, record: QueryRecord, *, max_distance: float | None = None) -> QueryOutcome:
    """Solve one record; per-query errors become the outcome, fatal ones propagate."""
    try:
        result = engine.solve(record, max_distance=max_distance)
    except NetPathError as exc:
        if exc.fatal:
            raise
        outcome = QueryOutcome(
            seq=record.seq,
            line_no=record.line_no,
            request_id=record.request_id,
            record=record,
            error=exc,
        )
        _log_failure(outcome)
        return outcome
    return QueryOutcome(
        seq=record.seq,
        line_no=record.line_no,
        request_id=record.request_id,
        record=record,
        result=result,
    )


def run_queries(
    engine: PathEngine,
    items: Iterable[tuple[int, int, QueryRecord | MalformedRecord]],
    *,
    workers: int = 1,
) -> list[QueryOutcome]:
    """Solve every parsed record and return the outcomes in input order."""
    outcomes: list[QueryOutcome] = []
    records: list[QueryRecord] = []
    for seq, line_no, item in items:
        if isinstance(item, MalformedRecord):
            outcome = QueryOutcome(seq=seq, line_no=line_no, request_id=str(seq), error=item)
            _log_failure(outcome)
            outcomes.append(outcome)
        else:
            records.append(item)

    if workers > 1 and len(records) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="netpath-query") as pool:
            outcomes.extend(pool.map(lambda record: solve_record(engine, record), records))
    else:
        outcomes.extend(solve_record(engine, record) for record in records)

    outcomes.sort(key=lambda outcome: outcome.seq)
    return outcomes


@dataclass
class BatchSummary:
    run_id: str
    out_dir: Path
    outcomes: list[QueryOutcome]
    feature_count: int = 0
    complete: bool = True
    artifacts: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def ok_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def error_count(self) -> int:
        return self.total - self.ok_count

    @property
    def malformed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if isinstance(outcome.error, MalformedRecord))

    @property
    def exit_code(self) -> int:
        if not self.complete:
            return EXIT_FATAL
        return EXIT_OK if self.error_count == 0 else EXIT_PARTIAL


def write_outcomes(
    engine: PathEngine,
    outcomes: list[QueryOutcome],
    out_dir: Path,
    *,
    run_id: str,
) -> BatchSummary:
    """Emit features and report rows in input order, then the manifest."""
    out_dir = Path(out_dir)
    paths = artifact_paths(out_dir)
    writer = GeoJSONFeatureWriter(paths["paths.geojson"], has_z=engine.graph.has_z)
    emitter = ResultEmitter(
        engine.graph,
        writer,
        mode=engine.config.output_mode,
        arc_layer=engine.config.arc_layer,
    )
    report = PathReport(paths["paths.csv"])
    summary = BatchSummary(run_id=run_id, out_dir=out_dir, outcomes=outcomes)
    manifest: dict[str, Any] = {
        "run_id": run_id,
        "type": "path_batch",
        "network": engine.graph.summary(),
        "config": engine.config.model_dump(mode="json"),
        "query_count": summary.total,
        "ok_count": summary.ok_count,
        "error_count": summary.error_count,
        "malformed_count": summary.malformed_count,
    }

    try:
        for outcome in outcomes:
            if outcome.result is not None:
                emitter.emit(
                    outcome.result,
                    cat=outcome.seq,
                    request_id=outcome.request_id,
                    fcat=outcome.fcat,
                    tcat=outcome.tcat,
                )
            report.add(outcome.report_row())
        emitter.close()
        report.write()
    except OutputWriteFailure as exc:
        writer.abort()
        summary.complete = False
        summary.feature_count = writer.feature_count
        try:
            write_manifest(
                out_dir,
                {
                    **manifest,
                    "complete": False,
                    "feature_count": writer.feature_count,
                    "partial_output": str(writer.partial_path),
                    "error": exc.message,
                },
            )
        except OutputWriteFailure as manifest_exc:
            log_event(
                "manifest_write_failed",
                level=logging.ERROR,
                run_id=run_id,
                error_message=manifest_exc.message,
            )
        raise

    summary.feature_count = writer.feature_count
    summary.artifacts = {name: str(path) for name, path in paths.items()}
    write_manifest(out_dir, {**manifest, "complete": True, "feature_count": summary.feature_count})
    return summary


def run_batch(
    engine: PathEngine,
    lines: Iterable[str | bytes],
    out_dir: Path,
    *,
    workers: int | None = None,
    run_id: str | None = None,
) -> BatchSummary:
    run_id = run_id or str(uuid.uuid4())
    t0 = time.perf_counter()
    engine.prepare()
    outcomes = run_queries(
        engine,
        iter_records(lines),
        workers=workers if workers is not None else engine.config.workers,
    )
    summary = write_outcomes(engine, outcomes, Path(out_dir), run_id=run_id)
    log_event(
        "path_batch_complete",
        run_id=run_id,
        query_count=summary.total,
        ok_count=summary.ok_count,
        error_count=summary.error_count,
        malformed_count=summary.malformed_count,
        feature_count=summary.feature_count,
        output_mode=engine.config.output_mode,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return summary

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse

from . import __version__
from .batch import QueryOutcome, iter_records, solve_record, write_outcomes
from .emitter import ResultEmitter
from .engine import PathEngine
from .errors import MalformedRecord, NetPathError, OutputWriteFailure
from .logging_utils import log_event
from .models import (
    BatchRequest,
    BatchResponse,
    GeoJSONLineString,
    PathOut,
    PathRequest,
    PathStepOut,
    QueryRecord,
)
from .run_store import MemoryFeatureWriter
from .settings import PathConfig, settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = None
    app.state.engine_error = None
    if settings.network_asset_path:
        try:
            engine = PathEngine.from_network(settings.network_asset_path, PathConfig.from_settings(settings))
            await asyncio.to_thread(engine.prepare)
            app.state.engine = engine
        except NetPathError as exc:
            app.state.engine_error = exc
            log_event(
                "path_engine_unavailable",
                level=logging.ERROR,
                reason_code=exc.reason_code,
                error_message=exc.message,
            )
    yield
    app.state.engine = None


app = FastAPI(title="netpath", version=__version__, lifespan=lifespan)


def path_engine(request: Request) -> PathEngine:
    engine: PathEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        error: NetPathError | None = getattr(request.app.state, "engine_error", None)
        detail = error.message if error is not None else "network not loaded"
        raise HTTPException(status_code=503, detail=detail)
    return engine


EngineDep = Annotated[PathEngine, Depends(path_engine)]


def _fatal_http(exc: NetPathError) -> HTTPException:
    status = 500 if isinstance(exc, OutputWriteFailure) else 503
    return HTTPException(status_code=status, detail={"reason_code": exc.reason_code, "message": exc.message})


def _path_out(engine: PathEngine, outcome: QueryOutcome) -> PathOut:
    if outcome.result is None:
        assert outcome.error is not None
        return PathOut(
            request_id=outcome.request_id,
            seq=outcome.seq,
            sp=outcome.sp,
            reason_code=outcome.error.reason_code,
            error=outcome.error.message,
        )

    result = outcome.result
    writer = MemoryFeatureWriter()
    ResultEmitter(engine.graph, writer, mode="merged", arc_layer=engine.config.arc_layer).emit(
        result,
        cat=outcome.seq,
        request_id=outcome.request_id,
        fcat=outcome.fcat,
        tcat=outcome.tcat,
    )
    coords, _attributes = writer.features[0]
    if engine.graph.has_z:
        points: list[Any] = [(c[0], c[1], c[2]) for c in coords]
    else:
        points = [(c[0], c[1]) for c in coords]
    return PathOut(
        request_id=outcome.request_id,
        seq=outcome.seq,
        sp=outcome.sp,
        cost=result.cost,
        fdist=round(result.start.distance, 9),
        tdist=round(result.end.distance, 9),
        steps=[
            PathStepOut(
                arc_id=engine.graph.arcs[step.arc].id,
                direction=step.direction,
                t_from=step.t_from,
                t_to=step.t_to,
                cost=step.cost,
            )
            for step in result.steps
        ],
        geometry=GeoJSONLineString(type="LineString", coordinates=points),
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "netpath is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    return {"status": "ok", "engine_ready": getattr(request.app.state, "engine", None) is not None}


@app.get("/network")
async def network(engine: EngineDep) -> dict[str, Any]:
    return {
        **engine.graph.summary(),
        "config": engine.config.model_dump(mode="json"),
        "locator_arcs": engine.locator.arc_count,
    }


@app.post("/path", response_model=PathOut)
async def path(req: PathRequest, engine: EngineDep) -> PathOut:
    t0 = time.perf_counter()
    record = QueryRecord(seq=1, request_id=req.request_id or "1", start=req.start, end=req.end)
    try:
        outcome = await asyncio.to_thread(solve_record, engine, record, max_distance=req.max_distance)
    except NetPathError as exc:
        raise _fatal_http(exc) from exc

    log_event(
        "path_request",
        request_id=outcome.request_id,
        sp=outcome.sp,
        cost=outcome.result.cost if outcome.result is not None else None,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return _path_out(engine, outcome)


@app.post("/batch", response_model=BatchResponse)
async def batch(req: BatchRequest, engine: EngineDep) -> BatchResponse:
    run_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    sem = asyncio.Semaphore(settings.batch_concurrency)

    async def one(record: QueryRecord) -> QueryOutcome:
        async with sem:
            return await asyncio.to_thread(solve_record, engine, record)

    outcomes: list[QueryOutcome] = []
    pending: list[QueryRecord] = []
    for seq, line_no, item in iter_records(req.records_text()):
        if isinstance(item, MalformedRecord):
            outcomes.append(QueryOutcome(seq=seq, line_no=line_no, request_id=str(seq), error=item))
        else:
            pending.append(item)

    try:
        outcomes.extend(await asyncio.gather(*[one(record) for record in pending]))
        outcomes.sort(key=lambda outcome: outcome.seq)
        summary = await asyncio.to_thread(
            write_outcomes,
            engine,
            outcomes,
            Path(settings.out_dir) / "runs" / run_id,
            run_id=run_id,
        )
    except NetPathError as exc:
        raise _fatal_http(exc) from exc

    log_event(
        "path_batch_request",
        run_id=run_id,
        query_count=summary.total,
        ok_count=summary.ok_count,
        error_count=summary.error_count,
        batch_concurrency=settings.batch_concurrency,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return BatchResponse(
        run_id=run_id,
        complete=summary.complete,
        ok_count=summary.ok_count,
        error_count=summary.error_count,
        results=[_path_out(engine, outcome) for outcome in outcomes],
    )


def _manifest_path_for_id(run_id: str) -> Path:
    try:
        uuid.UUID(run_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid run_id") from e

    base = (Path(settings.out_dir) / "runs").resolve()
    resolved = (base / run_id / "manifest.json").resolve()
    if not resolved.is_relative_to(base):
        raise HTTPException(status_code=400, detail="invalid run_id path")
    return resolved


@app.get("/runs/{run_id}/manifest")
async def get_manifest(run_id: str):
    path = _manifest_path_for_id(run_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail="manifest not found")
    return FileResponse(str(path), media_type="application/json")

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .batch import EXIT_FATAL, BatchSummary, run_batch
from .engine import PathEngine
from .errors import NetPathError
from .logging_utils import log_event
from .settings import PathConfig, settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netpath",
        description="Find shortest paths on a vector network for a batch of query records.",
    )
    parser.add_argument("-i", "--input", default=None, help="Network asset (JSON). Defaults to NETPATH_NETWORK_ASSET_PATH.")
    parser.add_argument("-o", "--output", default=None, help="Output directory. Defaults to NETPATH_OUT_DIR.")
    parser.add_argument("--file", default="-", help="Query records, one per line ('-' reads stdin).")
    parser.add_argument("--type", dest="arc_types", default=None, help="Arc types to use, e.g. line,boundary.")
    parser.add_argument("--alayer", dest="arc_layer", type=int, default=None, help="Arc layer.")
    parser.add_argument("--nlayer", dest="node_layer", type=int, default=None, help="Node layer.")
    parser.add_argument("--tlayer", dest="turn_layer", type=int, default=None, help="Turntable layer.")
    parser.add_argument("--tuclayer", dest="turn_cat_layer", type=int, default=None, help="Turntable category layer.")
    parser.add_argument("--afcolumn", dest="forward_cost_column", default=None, help="Arc forward/both direction cost column.")
    parser.add_argument("--abcolumn", dest="backward_cost_column", default=None, help="Arc backward cost column.")
    parser.add_argument("--ncolumn", dest="node_cost_column", default=None, help="Node cost column.")
    parser.add_argument("--dmax", dest="max_distance", type=float, default=None, help="Maximum snapping distance.")
    parser.add_argument("-g", dest="geodesic", action="store_true", default=None, help="Use geodesic distances.")
    parser.add_argument("-s", dest="segments", action="store_true", default=None, help="Write original arc segments.")
    parser.add_argument("-t", dest="turntable", action="store_true", default=None, help="Use the turntable.")
    parser.add_argument("--turn-default-cost", type=float, default=None)
    parser.add_argument("--turn-default-forbidden", action="store_true", default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--grid-cell-size", type=float, default=None)
    parser.add_argument("--max-search-cost", type=float, default=None)
    return parser


def _config_from_args(args: argparse.Namespace) -> PathConfig:
    overrides: dict[str, Any] = {
        name: getattr(args, name)
        for name in (
            "arc_types",
            "arc_layer",
            "node_layer",
            "turn_layer",
            "turn_cat_layer",
            "forward_cost_column",
            "backward_cost_column",
            "node_cost_column",
            "max_distance",
            "geodesic",
            "segments",
            "turntable",
            "turn_default_cost",
            "turn_default_forbidden",
            "workers",
        )
    }
    # 0 disables the ceiling / selects the automatic cell size
    overrides["grid_cell_size"] = args.grid_cell_size or None
    overrides["max_search_cost"] = args.max_search_cost or None
    return PathConfig.from_settings(settings, **overrides)


def _read_lines(source: str) -> list[str] | list[bytes]:
    # Raw bytes; each record is decoded on its own by iter_records.
    if source == "-":
        stream = getattr(sys.stdin, "buffer", None)
        if stream is None:
            return sys.stdin.read().splitlines()
        return stream.read().splitlines()
    return Path(source).read_bytes().splitlines()


def _summary_payload(summary: BatchSummary) -> dict[str, Any]:
    return {
        "run_id": summary.run_id,
        "out_dir": str(summary.out_dir),
        "complete": summary.complete,
        "query_count": summary.total,
        "ok_count": summary.ok_count,
        "error_count": summary.error_count,
        "malformed_count": summary.malformed_count,
        "feature_count": summary.feature_count,
        "artifacts": summary.artifacts,
        "exit_code": summary.exit_code,
    }


def _fatal(reason_code: str, message: str) -> int:
    print(f"netpath: error: {reason_code}: {message}", file=sys.stderr)
    log_event("path_run_failed", level=logging.ERROR, reason_code=reason_code, error_message=message)
    return EXIT_FATAL


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    network = args.input or settings.network_asset_path
    if not network:
        return _fatal("network_asset_unavailable", "no network asset given (use --input or NETPATH_NETWORK_ASSET_PATH)")
    out_dir = Path(args.output or settings.out_dir)

    try:
        config = _config_from_args(args)
    except ValidationError as exc:
        first = exc.errors()[0]
        return _fatal("invalid_configuration", str(first.get("msg", exc)))

    try:
        lines = _read_lines(args.file)
    except OSError as exc:
        return _fatal("query_input_unavailable", f"unable to read {args.file}: {exc.strerror or exc}")

    try:
        engine = PathEngine.from_network(network, config)
        summary = run_batch(engine, lines, out_dir, workers=config.workers)
    except NetPathError as exc:
        return _fatal(exc.reason_code, exc.message)

    print(json.dumps(_summary_payload(summary), indent=2))
    return summary.exit_code


if __name__ == "__main__":
    raise SystemExit(main())

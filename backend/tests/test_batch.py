from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

import netpath.run_store as run_store
from netpath.batch import (
    EXIT_OK,
    EXIT_PARTIAL,
    iter_records,
    parse_record,
    run_batch,
    run_queries,
)
from netpath.engine import PathEngine
from netpath.errors import GraphBuildFailure, MalformedRecord, OutputWriteFailure
from netpath.models import CategoryRef, Coordinate
from netpath.settings import PathConfig


def _engine(network, **overrides) -> PathEngine:
    config = PathConfig(forward_cost_column="fwd", backward_cost_column="bwd", **overrides)
    return PathEngine.from_network(network, config)


def _read_csv(path: Path) -> list[dict[str, str]]:
    with path.open(encoding="utf-8", newline="") as f:
        return list(csv.DictReader(f))


def test_parse_category_and_coordinate_records() -> None:
    cats = parse_record("2 1 3", seq=4, line_no=9)
    coords = parse_record("0.5,0.05 2,0,1.5 home", seq=5)

    assert cats.start == CategoryRef(layer=2, cat=1)
    assert cats.end == CategoryRef(layer=2, cat=3)
    assert cats.request_id == "4"
    assert (cats.fcat, cats.tcat) == (1, 3)
    assert coords.start == Coordinate(x=0.5, y=0.05)
    assert coords.end == Coordinate(x=2.0, y=0.0, z=1.5)
    assert coords.request_id == "home"
    assert (coords.fcat, coords.tcat) == (0, 0)


def test_parse_plain_coordinate_records() -> None:
    flat = parse_record("0.5 0.05 2 0", seq=7)
    tagged = parse_record("0.5 0.05 2 0 17", seq=8)
    with_z = parse_record("0 0 1 1.5 0 2 home", seq=9)
    named = parse_record("0.5 0.05 2 0 home", seq=10)

    assert flat.start == Coordinate(x=0.5, y=0.05)
    assert flat.end == Coordinate(x=2.0, y=0.0)
    assert flat.request_id == "7"
    assert tagged.request_id == "17"
    assert with_z.start == Coordinate(x=0.0, y=0.0, z=1.0)
    assert with_z.end == Coordinate(x=1.5, y=0.0, z=2.0)
    assert with_z.request_id == "home"
    assert named.end == Coordinate(x=2.0, y=0.0)
    assert named.request_id == "home"
    # Four integers stay a category record with an id.
    assert parse_record("2 1 3 4", seq=1).start == CategoryRef(layer=2, cat=1)


@pytest.mark.parametrize(
    "line",
    [
        "2 1",
        "a b c",
        "0 1 2",
        "2 1 3 x y",
        "1,2 3",
        "1,2,3,4 5,6",
        "1,nan 5,6",
        "1,2 5,6 id extra",
        "1.5 2 3 4 5 6 7 8",
        "1.5 2 3 nan",
        "1.5 2 3 4 a b",
    ],
)
def test_malformed_records(line: str) -> None:
    with pytest.raises(MalformedRecord) as exc:
        parse_record(line, seq=1, line_no=3)

    assert exc.value.reason_code == "malformed_record"
    assert exc.value.status == 3
    assert exc.value.message.startswith("line 3: ")


def test_iter_records_skips_blanks_and_comments() -> None:
    items = list(iter_records(["# header", "", "2 1 3", "   ", "bad", "2 3 1 back"]))

    assert [(seq, line_no) for seq, line_no, _ in items] == [(1, 3), (2, 5), (3, 6)]
    assert isinstance(items[1][2], MalformedRecord)
    assert items[2][2].request_id == "back"


def test_iter_records_decodes_byte_lines_one_at_a_time() -> None:
    items = list(iter_records([b"2 1 3 first", b"2 1 3 \xff\xfe", b"", b"2 1 3 third"]))

    assert [(seq, line_no) for seq, line_no, _ in items] == [(1, 1), (2, 2), (3, 4)]
    assert items[0][2].request_id == "first"
    bad = items[1][2]
    assert isinstance(bad, MalformedRecord)
    assert bad.message == "line 2: not valid UTF-8 at byte 6"
    assert items[2][2].request_id == "third"


def test_batch_isolates_malformed_record(line_network, tmp_path: Path) -> None:
    engine = _engine(line_network)

    summary = run_batch(engine, ["2 1 3 first", "this is not a record", "2 1 3 third"], tmp_path / "run")

    assert summary.exit_code == EXIT_PARTIAL
    assert [outcome.sp for outcome in summary.outcomes] == [0, 3, 0]
    assert summary.malformed_count == 1
    assert summary.feature_count == 2

    collection = json.loads((tmp_path / "run" / "paths.geojson").read_text(encoding="utf-8"))
    assert [f["properties"]["cat"] for f in collection["features"]] == [1, 3]
    assert [f["properties"]["id"] for f in collection["features"]] == ["first", "third"]
    assert collection["features"][0]["geometry"]["coordinates"] == [[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]]

    rows = _read_csv(tmp_path / "run" / "paths.csv")
    assert [row["sp"] for row in rows] == ["0", "3", "0"]
    assert rows[0]["cost"] == "2.0"
    assert rows[1]["reason_code"] == "malformed_record"

    manifest = json.loads((tmp_path / "run" / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["complete"] is True
    assert manifest["malformed_count"] == 1
    assert not (tmp_path / "run" / "paths.geojson.part").exists()


def test_batch_reports_per_query_failures(line_network, tmp_path: Path) -> None:
    engine = _engine(line_network, max_distance=0.01)

    summary = run_batch(
        engine,
        ["0.5,0.05 2,0 far", "2 1 99 missing", "2 3 1 backwards", "1 1 2 arcs"],
        tmp_path,
    )

    by_id = {outcome.request_id: outcome for outcome in summary.outcomes}
    assert by_id["far"].sp == 2
    assert by_id["far"].error.reason_code == "locator_not_found"
    assert by_id["missing"].sp == 2
    assert by_id["missing"].error.reason_code == "category_not_found"
    assert by_id["backwards"].sp == 1
    assert by_id["arcs"].ok
    assert by_id["arcs"].result.cost == pytest.approx(1.0)
    assert summary.exit_code == EXIT_PARTIAL


def test_all_successful_batch_exits_zero(line_network, tmp_path: Path) -> None:
    summary = run_batch(_engine(line_network), ["2 1 3", "0.5,0.01 1.5,-0.01"], tmp_path)

    assert summary.exit_code == EXIT_OK
    assert summary.error_count == 0
    rows = _read_csv(tmp_path / "paths.csv")
    assert float(rows[1]["fdist"]) == pytest.approx(0.01)
    assert float(rows[1]["cost"]) == pytest.approx(1.0)


def test_worker_pool_restores_input_order(grid_network) -> None:
    engine = PathEngine.from_network(grid_network, PathConfig(workers=4))
    lines = [f"2 1 {target}" for target in range(2, 10)] * 3

    outcomes = run_queries(engine, iter_records(lines), workers=4)

    assert [outcome.seq for outcome in outcomes] == list(range(1, len(lines) + 1))
    assert [outcome.record.tcat for outcome in outcomes] == [int(line.split()[2]) for line in lines]
    assert all(outcome.ok for outcome in outcomes)


def test_broken_turntable_fails_before_any_query(line_network, tmp_path: Path) -> None:
    engine = _engine(line_network, turntable=True, turn_layer=9)

    with pytest.raises(GraphBuildFailure) as exc:
        run_batch(engine, ["2 1 3"], tmp_path)

    assert exc.value.reason_code == "turn_graph_build_failure"
    assert not (tmp_path / "paths.csv").exists()


def test_turntable_batch_marks_forbidden_turn_unreachable(line_network, tmp_path: Path) -> None:
    engine = _engine(line_network, turntable=True)

    summary = run_batch(engine, ["2 1 3", "2 1 2"], tmp_path)

    assert [outcome.sp for outcome in summary.outcomes] == [1, 0]


def test_segments_mode_output(line_network, tmp_path: Path) -> None:
    summary = run_batch(_engine(line_network, segments=True), ["2 1 3"], tmp_path)

    collection = json.loads((tmp_path / "paths.geojson").read_text(encoding="utf-8"))
    assert summary.feature_count == 2
    assert [f["properties"]["seg"] for f in collection["features"]] == [1, 2]


def test_output_failure_marks_manifest_incomplete(line_network, tmp_path: Path, monkeypatch) -> None:
    original = run_store.GeoJSONFeatureWriter.write_feature
    calls = {"n": 0}

    def _failing_write(self, coords, attributes):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OutputWriteFailure(message="disk full")
        return original(self, coords, attributes)

    monkeypatch.setattr(run_store.GeoJSONFeatureWriter, "write_feature", _failing_write)

    with pytest.raises(OutputWriteFailure):
        run_batch(_engine(line_network), ["2 1 3", "2 1 2"], tmp_path)

    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["complete"] is False
    assert manifest["feature_count"] == 1
    assert (tmp_path / "paths.geojson.part").exists()
    assert not (tmp_path / "paths.geojson").exists()

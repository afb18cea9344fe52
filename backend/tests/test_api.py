from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from netpath.engine import PathEngine
from netpath.main import app
from netpath.settings import PathConfig, settings


def _use_engine(monkeypatch, engine: PathEngine | None) -> TestClient:
    monkeypatch.setattr(app.state, "engine", engine, raising=False)
    monkeypatch.setattr(app.state, "engine_error", None, raising=False)
    return TestClient(app)


def _line_engine(line_network, **overrides) -> PathEngine:
    config = PathConfig(forward_cost_column="fwd", backward_cost_column="bwd", **overrides)
    return PathEngine.from_network(line_network, config)


def test_path_between_categories(line_network, monkeypatch) -> None:
    client = _use_engine(monkeypatch, _line_engine(line_network))

    resp = client.post("/path", json={"start": {"layer": 2, "cat": 1}, "end": {"layer": 2, "cat": 3}, "request_id": "a"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["request_id"] == "a"
    assert body["sp"] == 0
    assert body["cost"] == 2.0
    assert [step["arc_id"] for step in body["steps"]] == [1, 2]
    assert body["geometry"]["coordinates"] == [[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]]


def test_path_failures_are_reported_in_body(line_network, monkeypatch) -> None:
    client = _use_engine(monkeypatch, _line_engine(line_network))

    far = client.post(
        "/path",
        json={"start": {"x": 0.5, "y": 0.05}, "end": {"x": 2.0, "y": 0.0}, "max_distance": 0.01},
    ).json()
    back = client.post("/path", json={"start": {"layer": 2, "cat": 3}, "end": {"layer": 2, "cat": 1}}).json()

    assert far["sp"] == 2
    assert far["reason_code"] == "locator_not_found"
    assert far["geometry"] is None
    assert back["sp"] == 1
    assert back["reason_code"] == "unreachable"


def test_broken_turntable_maps_to_503(line_network, monkeypatch) -> None:
    client = _use_engine(monkeypatch, _line_engine(line_network, turntable=True, turn_layer=9))

    resp = client.post("/path", json={"start": {"layer": 2, "cat": 1}, "end": {"layer": 2, "cat": 3}})

    assert resp.status_code == 503
    assert resp.json()["detail"]["reason_code"] == "turn_graph_build_failure"


def test_batch_endpoint_writes_run_artifacts(line_network, monkeypatch) -> None:
    client = _use_engine(monkeypatch, _line_engine(line_network))

    resp = client.post("/batch", json={"lines": ["2 1 3", "garbage", "# comment", "2 1 2"]})

    assert resp.status_code == 200
    body = resp.json()
    assert body["complete"] is True
    assert body["ok_count"] == 2
    assert body["error_count"] == 1
    assert [result["sp"] for result in body["results"]] == [0, 3, 0]
    assert [result["seq"] for result in body["results"]] == [1, 2, 3]

    run_dir = Path(settings.out_dir) / "runs" / body["run_id"]
    assert (run_dir / "paths.geojson").exists()
    manifest = client.get(f"/runs/{body['run_id']}/manifest")
    assert manifest.status_code == 200
    assert manifest.json()["query_count"] == 3


def test_batch_request_validation(line_network, monkeypatch) -> None:
    client = _use_engine(monkeypatch, _line_engine(line_network))

    assert client.post("/batch", json={"text": "2 1 3", "lines": ["2 1 3"]}).status_code == 422
    assert client.get("/runs/not-a-uuid/manifest").status_code == 400


def test_endpoints_need_a_loaded_network(monkeypatch) -> None:
    client = _use_engine(monkeypatch, None)

    assert client.get("/health").json() == {"status": "ok", "engine_ready": False}
    assert client.get("/network").status_code == 503


def test_lifespan_loads_network_from_settings(line_network, tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "network.json"
    path.write_text(json.dumps(line_network), encoding="utf-8")
    monkeypatch.setattr(settings, "network_asset_path", str(path))

    with TestClient(app) as client:
        assert client.get("/health").json()["engine_ready"] is True
        summary = client.get("/network").json()
        assert summary["node_count"] == 3
        assert summary["arc_count"] == 2


def test_lifespan_records_load_failure(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "network_asset_path", str(tmp_path / "missing.json"))

    with TestClient(app) as client:
        resp = client.get("/network")

    assert resp.status_code == 503
    assert "does not exist" in resp.json()["detail"]

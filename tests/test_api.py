import asyncio

import pytest
from fastapi.testclient import TestClient

from flowtrace import api
from flowtrace.config import FlowConfig
from flowtrace.errors import NetworkError
from flowtrace.layout import compute_layout

from tests.conftest import FakeFlowClient, graph_payload


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(FlowConfig, "HISTORY_PATH", str(tmp_path / "history.json"))
    with TestClient(api.app) as test_client:
        yield test_client


@pytest.fixture
def fake_service(client, make_coordinator):
    fake = FakeFlowClient(trace=[graph_payload("k1", cached=False)])
    api.app.state.coordinator = make_coordinator(fake)
    return fake


TRACE_BODY = {"query": {"start": "Wallet1", "rpcUrl": "https://rpc.example"}}


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["state"] == "idle"


def test_graph_endpoint_builds_and_lays_out(client):
    resp = client.post("/api/graph", json={
        "nodes": [{"id": "A"}, {"id": "B"}, {"id": "C"}],
        "links": [{"source": "A", "target": "B", "amount": 5}, {"source": "B", "target": "C", "amount": 2}],
        "startNode": "A",
        "layout": "sankey",
    })
    assert resp.status_code == 200
    body = resp.json()
    depths = {n["id"]: n["depth"] for n in body["graph"]["nodes"]}
    assert depths == {"A": 0, "B": 1, "C": 2}
    assert body["layout"]["mode"] == "sankey"
    assert set(body["layout"]["positions"]) == {"A", "B", "C"}


def test_trace_round_trip(client, fake_service):
    resp = client.post("/api/trace", json=TRACE_BODY)
    assert resp.status_code == 200
    body = resp.json()
    assert body["result"]["keyHash"] == "k1"
    assert body["stats"]["linkCount"] == 1
    assert body["layout"]["mode"] == "tree"
    assert fake_service.trace_calls[0].start == "Wallet1"

    history = client.get("/api/history").json()["entries"]
    assert [e["keyHash"] for e in history] == ["k1"]

    share = client.get("/api/share").json()["url"]
    assert "key=k1" in share

    assert client.delete("/api/history").json() == {"status": "cleared"}
    assert client.get("/api/history").json()["entries"] == []


def test_trace_validation_error(client, fake_service):
    resp = client.post("/api/trace", json={"query": {"start": ""}})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing start or rpcUrl"
    assert fake_service.trace_calls == []


def test_continue_requires_truncated_trace(client, fake_service):
    assert client.post("/api/trace", json=TRACE_BODY).status_code == 200
    resp = client.post("/api/trace/continue", json={})
    assert resp.status_code == 400


def test_cache_endpoint(client, make_coordinator):
    api.app.state.coordinator = make_coordinator(FakeFlowClient(cache=[graph_payload("k9")]))
    resp = client.get("/api/cache/k9", params={"layout": "column"})
    assert resp.status_code == 200
    assert resp.json()["result"]["keyHash"] == "k9"
    assert resp.json()["layout"]["mode"] == "column"

    assert client.get("/api/cache/missing").status_code == 404


def test_share_for_explicit_key(client):
    resp = client.get("/api/share", params={"key_hash": "abc", "base_url": "https://app.example/analysis"})
    assert resp.json()["url"] == "https://app.example/analysis?key=abc"


def test_cache_endpoint_reports_service_failure_as_bad_gateway(client, make_coordinator):
    api.app.state.coordinator = make_coordinator(FakeFlowClient(cache=[NetworkError()]))
    resp = client.get("/api/cache/k9")
    assert resp.status_code == 502
    assert resp.json()["detail"] == NetworkError.default_message


def test_graph_layout_runs_off_the_event_loop(client, monkeypatch):
    calls = []

    def recording_layout(*args):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            calls.append("worker")
        else:
            calls.append("loop")
        return compute_layout(*args)

    monkeypatch.setattr(api, "compute_layout", recording_layout)
    resp = client.post("/api/graph", json={
        "nodes": [{"id": "A"}, {"id": "B"}],
        "links": [{"source": "A", "target": "B", "amount": 5}],
        "startNode": "A",
        "layout": "force",
    })
    assert resp.status_code == 200
    assert resp.json()["layout"]["mode"] == "force"
    assert calls == ["worker"]

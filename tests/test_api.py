"""
Tests for the HTTP API.
"""

import json

import httpx
import pytest

from src.threat_engine.api import create_app
from src.threat_engine.config import ConfigStore
from src.threat_engine.intel import StaticIntelligenceProvider
from src.threat_engine.pipeline import ThreatPipeline
from src.threat_engine.schemas import Severity

from tests.conftest import RecordingSink, make_detection, no_sleep


def client_for(pipeline):
    transport = httpx.ASGITransport(app=create_app(pipeline))
    return httpx.AsyncClient(transport=transport, base_url="http://threatline.test")


@pytest.fixture
async def client(pipeline):
    async with client_for(pipeline) as c:
        yield c


async def critical_incident(pipeline):
    decision = await pipeline.ingest_detection(make_detection(severity=Severity.CRITICAL))
    return decision.incident_id


async def test_ingest_counts_accepted_and_dropped(client):
    response = await client.post("/events", json={
        "source": "identity",
        "events": [
            {"timestamp": "2026-01-05T10:00:00Z", "user": "alice", "outcome": "failure"},
            {"user": "bob"},
        ],
    })
    assert response.status_code == 202
    assert response.json() == {"accepted": 1, "dropped": 1}


async def test_ingest_rejects_unknown_source(client):
    response = await client.post("/events", json={"source": "mainframe", "events": [{}]})
    assert response.status_code == 422


async def test_full_queue_returns_429():
    engine = ThreatPipeline(
        config_store=ConfigStore(), provider=StaticIntelligenceProvider(), sinks=[RecordingSink()],
        queue_size=1, lanes=1, dispatch_sleep=no_sleep,
    )
    event = {"timestamp": "2026-01-05T10:00:00Z", "user": "alice"}
    async with client_for(engine) as c:
        response = await c.post("/events", json={"source": "identity", "events": [event, event]})
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "1"
    assert response.json()["detail"]["accepted"] == 1


async def test_incident_queries(client, pipeline):
    incident_id = await critical_incident(pipeline)

    listed = (await client.get("/incidents")).json()
    assert listed["count"] == 1

    by_entity = (await client.get("/incidents", params={"entity": "user:alice"})).json()
    assert by_entity["incidents"][0]["incident_id"] == incident_id

    detail = await client.get(f"/incidents/{incident_id}")
    assert detail.json()["severity"] == "critical"

    assert (await client.get("/incidents/inc-missing")).status_code == 404


async def test_acknowledge_and_status(client, pipeline):
    incident_id = await critical_incident(pipeline)

    ack = await client.post(f"/incidents/{incident_id}/acknowledge", json={"actor": "analyst-1"})
    assert ack.json()["status"] == "acknowledged"
    assert ack.json()["assignee"] == "analyst-1"

    resolved = await client.post(
        f"/incidents/{incident_id}/status", json={"status": "resolved", "actor": "analyst-1", "note": "reimaged"}
    )
    assert resolved.json()["status"] == "resolved"

    conflict = await client.post(f"/incidents/{incident_id}/status", json={"status": "open"})
    assert conflict.status_code == 409
    again = await client.post(f"/incidents/{incident_id}/acknowledge", json={"actor": "analyst-2"})
    assert again.status_code == 409

    closed = (await client.get("/incidents", params={"include_closed": True})).json()
    assert closed["count"] == 1
    assert (await client.get("/incidents")).json()["count"] == 0


async def test_lifecycle_on_unknown_incident(client):
    response = await client.post("/incidents/inc-missing/acknowledge", json={"actor": "analyst-1"})
    assert response.status_code == 404
    response = await client.post("/incidents/inc-missing/status", json={"status": "resolved"})
    assert response.status_code == 404


async def test_export_requires_storage(client):
    assert (await client.get("/export/detections")).status_code == 503
    assert (await client.get("/export/windows")).status_code == 404


async def test_export_jsonl(storage):
    engine = ThreatPipeline(
        config_store=ConfigStore(), provider=StaticIntelligenceProvider(), sinks=[RecordingSink()],
        storage=storage, queue_size=10, lanes=1, dispatch_sleep=no_sleep,
    )
    storage.insert_detection(make_detection())
    async with client_for(engine) as c:
        response = await c.get("/export/detections", params={"format": "jsonl"})
        listed = await c.get("/export/detections")

    (line,) = response.text.splitlines()
    assert json.loads(line)["record_type"] == "detection"
    assert listed.json()[0]["schema_version"] == "1.0"


async def test_config_reload(client, tmp_path):
    good = tmp_path / "engine.yaml"
    good.write_text("correlator:\n  max_gap_seconds: 120\n")
    response = await client.post("/config/reload", json={"path": str(good)})
    assert response.json() == {"status": "reloaded", "version": 1}

    bad = tmp_path / "bad.yaml"
    bad.write_text("correlator:\n  window_duration_seconds: 10\n")
    response = await client.post("/config/reload", json={"path": str(bad)})
    assert response.status_code == 400
    assert "window_duration_seconds" in response.json()["detail"]


async def test_telemetry_and_dead_letter_replay(client):
    status = (await client.get("/telemetry")).json()
    assert status["running"] is True
    assert status["config_version"] == 0

    replay = (await client.post("/dead-letters/replay")).json()
    assert replay == {"delivered": [], "failed": [], "skipped": []}

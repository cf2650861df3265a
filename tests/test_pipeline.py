"""
End-to-end tests: raw events in, incidents and notifications out.
"""

import pytest

from src.threat_engine.config import ConfigStore
from src.threat_engine.errors import QueueFullError
from src.threat_engine.intel import StaticIntelligenceProvider
from src.threat_engine.pipeline import ThreatPipeline
from src.threat_engine.schemas import DecisionKind, Severity
from src.threat_engine.server import read_events, replay

from tests.conftest import SAMPLES, RecordingSink, at, make_detection, make_event, no_sleep


def sample_events(prefixes=("base-", "fail-", "lateral-")):
    return [
        (source, payload) for source, payload in read_events(SAMPLES)
        if str(payload.get("event_id", "")).startswith(prefixes)
    ]


def build(sink=None, storage=None, **kwargs):
    return ThreatPipeline(
        config_store=kwargs.pop("config_store", None) or ConfigStore(),
        provider=StaticIntelligenceProvider(),
        sinks=[sink or RecordingSink()],
        storage=storage,
        queue_size=kwargs.pop("queue_size", 100),
        lanes=2,
        tick_interval=3600,
        dispatch_sleep=no_sleep,
        **kwargs,
    )


def test_read_events_skips_nothing_valid():
    events = list(read_events(SAMPLES))
    assert len(events) == 21
    assert events[0][0] == "identity"


def test_read_events_tolerates_bad_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        '# comment\n'
        '{not json\n'
        '{"event": {"event_id": "x"}}\n'
        '{"source": "network", "event_id": "n-1", "timestamp": "2026-01-05T10:00:00Z", "host": "fw-1"}\n'
    )
    ((source, payload),) = read_events(path)
    assert source == "network"
    assert payload["event_id"] == "n-1"


async def test_brute_force_then_lateral_becomes_one_incident(pipeline, sink):
    for source, payload in sample_events():
        pipeline.ingest_raw(payload, source)

    await pipeline.flush()

    (incident,) = pipeline.incidents.list_all()
    assert incident.severity == Severity.HIGH
    assert incident.title == "credential-access -> lateral-movement on user:alice"
    assert {"T1110", "T1021"} <= incident.techniques
    assert {"user:alice", "host:srv-db"} <= incident.entities

    (payload,) = sink.payloads
    assert payload["event"] == "created"
    assert payload["incident_id"] == incident.incident_id
    assert pipeline.telemetry.counters["incidents.created"] == 1


async def test_isolated_low_signal_is_discarded(pipeline, sink):
    for source, payload in sample_events(("noise-",)):
        pipeline.ingest_raw(payload, source)

    await pipeline.flush()

    assert pipeline.incidents.list_all() == []
    (discarded,) = pipeline.incidents.discarded
    assert discarded.chain.length == 1
    assert sink.payloads == []


async def test_malformed_event_is_dropped_and_counted(pipeline):
    ((source, payload),) = sample_events(("bad-",))
    assert pipeline.ingest_raw(payload, source) is None
    assert pipeline.telemetry.counters["events.malformed"] == 1
    assert pipeline.telemetry.counters["events.malformed.missing_required_field"] == 1


async def test_reingesting_the_same_events_is_idempotent(pipeline, sink):
    events = sample_events()
    for source, payload in events + events:
        pipeline.ingest_raw(payload, source)

    await pipeline.flush()

    assert len(pipeline.incidents.list_all()) == 1
    assert len(sink.payloads) == 1
    assert pipeline.telemetry.counters["events.duplicate"] == len(events)


async def test_critical_detection_fast_path(pipeline, sink):
    decision = await pipeline.ingest_detection(make_detection(severity=Severity.CRITICAL))
    await pipeline.drain()

    assert decision.kind == DecisionKind.CREATE_NEW
    assert sink.payloads[0]["severity"] == "critical"


async def test_full_ingest_queue_rejects():
    engine = build(queue_size=1)
    engine.ingest_event(make_event(0))
    with pytest.raises(QueueFullError):
        engine.ingest_event(make_event(1))
    assert engine.telemetry.counters["events.rejected"] == 1


async def test_events_for_one_user_share_a_lane():
    engine = build()
    on_workstation = make_event(0, entities={"user": "alice", "host": "ws-01"})
    on_server = make_event(1, entities={"user": "alice", "host": "srv-db"})
    assert engine.lane_for(on_workstation) == engine.lane_for(on_server)


async def test_audit_trail_is_persisted(storage):
    engine = build(storage=storage)
    await engine.start()
    try:
        for source, payload in sample_events():
            engine.ingest_raw(payload, source)
        await engine.flush()
        (incident,) = engine.incidents.list_all()
        engine.acknowledge(incident.incident_id, "analyst-1")
    finally:
        await engine.stop()

    assert len(storage.query("detections")) == 2
    (chain,) = storage.query("chains")
    assert chain["decision"] == "create_new"
    assert chain["incident_id"] == incident.incident_id
    (record,) = storage.query("incidents")
    assert record["status"] == "acknowledged"


async def test_lifecycle_through_pipeline(pipeline):
    decision = await pipeline.ingest_detection(make_detection(severity=Severity.CRITICAL))
    pipeline.annotate(decision.incident_id, "analyst-1", "isolating host")
    incident = pipeline.transition(decision.incident_id, "contained", "analyst-1")
    assert incident.status.value == "contained"
    assert pipeline.status()["open_incidents"] == 1


async def test_config_reload_reaches_components(pipeline, tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text("scorer:\n  confidence_floor: 0.9\nincidents:\n  min_severity: critical\n")

    config = pipeline.reload_config(str(path))

    assert config.version == 1
    assert pipeline.scorer.config.confidence_floor == 0.9
    assert pipeline.incidents.config.min_severity == Severity.CRITICAL
    assert pipeline.status()["config_version"] == 1


async def test_bad_rule_file_keeps_rules(pipeline, tmp_path):
    rules = pipeline.pool.get("rules").rules
    path = tmp_path / "engine.yaml"
    path.write_text(f"rule_files:\n  - {tmp_path / 'missing.yaml'}\n")

    pipeline.reload_config(str(path))

    assert pipeline.pool.get("rules").rules == rules
    assert any(e.kind == "rule_reload_failed" for e in pipeline.telemetry.events)


async def test_replay_sample_file():
    sink = RecordingSink()
    engine = await replay(SAMPLES, build(sink))

    assert len(engine.incidents.list_all()) == 1
    assert len(engine.incidents.discarded) == 1
    assert engine.telemetry.counters["events.malformed"] == 1
    assert not engine.running


async def test_tick_prunes_idle_detector_history(pipeline):
    for i in range(100):
        pipeline.pool.history.record(make_event(0, entities={"host": f"host-{i}"}))

    await pipeline.tick(at(86_400))

    assert len(pipeline.pool.history) == 0

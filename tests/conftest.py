"""
Shared fixtures for the threat engine tests.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from src.threat_engine.config import ConfigStore
from src.threat_engine.errors import DispatchFailure
from src.threat_engine.intel import StaticIntelligenceProvider
from src.threat_engine.pipeline import ThreatPipeline
from src.threat_engine.schemas import Detection, EventSource, SecurityEvent, Severity, Technique, new_id
from src.threat_engine.storage import EngineStorage

SAMPLES = Path(__file__).resolve().parent.parent / "samples" / "events.jsonl"

T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Event time ``seconds`` after T0."""
    return T0 + timedelta(seconds=seconds)


def make_event(
    seconds: float = 0,
    source: EventSource = EventSource.IDENTITY,
    entities: dict[str, str] | None = None,
    event_id: str | None = None,
    **attributes: Any,
) -> SecurityEvent:
    return SecurityEvent(
        event_id=event_id or new_id("evt"),
        timestamp=at(seconds),
        source=source,
        entities=entities if entities is not None else {"user": "alice", "host": "ws-01"},
        attributes=attributes,
    )


def make_detection(
    seconds: float = 0,
    entities: dict[str, str] | None = None,
    technique: str = "credential-access/T1110",
    severity: Severity = Severity.MEDIUM,
    confidence: float = 0.7,
    detector_id: str = "test",
    event_refs: list[str] | None = None,
) -> Detection:
    return Detection(
        detection_id=new_id("det"),
        detector_id=detector_id,
        event_refs=event_refs or [new_id("evt")],
        technique=Technique.parse(technique),
        confidence=confidence,
        severity=severity,
        entities=entities if entities is not None else {"user": "alice", "host": "ws-01"},
        event_time=at(seconds),
    )


class RecordingSink:
    """Notification sink that keeps every payload it receives."""

    def __init__(self, name: str = "log"):
        self.name = name
        self.payloads: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)


class FlakySink:
    """Fails the first ``failures`` calls, then records payloads."""

    def __init__(self, name: str = "webhook", failures: int = 1):
        self.name = name
        self.failures = failures
        self.calls = 0
        self.payloads: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise DispatchFailure(self.name, payload["incident_id"], "connection refused")
        self.payloads.append(payload)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def storage(tmp_path):
    return EngineStorage(tmp_path / "threatline.db")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def pipeline(sink):
    engine = ThreatPipeline(
        config_store=ConfigStore(),
        provider=StaticIntelligenceProvider(),
        sinks=[sink],
        queue_size=100,
        lanes=2,
        tick_interval=3600,
        dispatch_sleep=no_sleep,
    )
    await engine.start()
    yield engine
    await engine.stop()

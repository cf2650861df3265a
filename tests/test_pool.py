"""
Tests for the detector pool: isolation, deadlines, idempotence.
"""

import time

import pytest

from src.threat_engine.config import DetectorPoolConfig
from src.threat_engine.detectors.anomaly import FunctionModel, ModelDetector
from src.threat_engine.detectors.base import DetectorScope, build_detection
from src.threat_engine.detectors.pool import DetectorPool
from src.threat_engine.schemas import DetectorType, EventSource, Severity
from src.threat_engine.telemetry import EngineTelemetry

from tests.conftest import make_event


class StaticDetector:
    """Emits one detection per event."""

    version = "1.0"
    detector_type = DetectorType.RULE

    def __init__(self, detector_id="static", technique="execution", scope=None):
        self.detector_id = detector_id
        self.technique = technique
        self.scope = scope or DetectorScope()
        self.calls = 0

    def detect(self, event, context):
        self.calls += 1
        return [build_detection(self, event, self.technique, 0.8, Severity.MEDIUM)]


class BrokenDetector(StaticDetector):
    def detect(self, event, context):
        self.calls += 1
        raise RuntimeError("boom")


class SlowDetector(StaticDetector):
    def detect(self, event, context):
        self.calls += 1
        time.sleep(0.5)
        return super().detect(event, context)


class WrongTypeDetector(StaticDetector):
    def detect(self, event, context):
        return ["not a detection"]


@pytest.fixture
def telemetry():
    return EngineTelemetry()


async def test_union_of_detections(telemetry):
    pool = DetectorPool([StaticDetector("a"), StaticDetector("b", "persistence")], telemetry=telemetry)
    try:
        detections = await pool.evaluate(make_event(0))
    finally:
        await pool.stop()
    assert sorted(d.detector_id for d in detections) == ["a", "b"]
    assert telemetry.counters["detections.emitted"] == 2


async def test_faulting_detector_is_isolated(telemetry):
    broken = BrokenDetector("broken")
    pool = DetectorPool([broken, StaticDetector("ok")], telemetry=telemetry)
    try:
        detections = await pool.evaluate(make_event(0))
    finally:
        await pool.stop()
    assert [d.detector_id for d in detections] == ["ok"]
    assert telemetry.detectors["broken"].faults == 1
    assert any(e.kind == "detector_fault" for e in telemetry.events)


async def test_timeout_counts_as_fault(telemetry):
    config = DetectorPoolConfig(detector_timeout_seconds=0.05)
    pool = DetectorPool([SlowDetector("slow"), StaticDetector("fast")], config=config, telemetry=telemetry)
    try:
        detections = await pool.evaluate(make_event(0))
    finally:
        await pool.stop()
    assert [d.detector_id for d in detections] == ["fast"]
    assert telemetry.detectors["slow"].timeouts == 1


async def test_wrong_return_type_is_a_fault(telemetry):
    pool = DetectorPool([WrongTypeDetector("wrong")], telemetry=telemetry)
    try:
        assert await pool.evaluate(make_event(0)) == []
    finally:
        await pool.stop()
    assert telemetry.detectors["wrong"].faults == 1


async def test_reingesting_an_event_is_a_noop(telemetry):
    detector = StaticDetector()
    pool = DetectorPool([detector], telemetry=telemetry)
    event = make_event(0, event_id="evt-fixed")
    try:
        first = await pool.evaluate(event)
        second = await pool.evaluate(make_event(0, event_id="evt-fixed"))
    finally:
        await pool.stop()
    assert len(first) == 1
    assert second == []
    assert detector.calls == 1
    assert telemetry.counters["events.duplicate"] == 1


async def test_disabled_and_out_of_scope_detectors_are_skipped(telemetry):
    identity_only = StaticDetector("identity", scope=DetectorScope.of(sources=["identity"]))
    toggled = StaticDetector("toggled")
    pool = DetectorPool([identity_only, toggled], telemetry=telemetry)
    pool.set_enabled("toggled", False)
    try:
        detections = await pool.evaluate(make_event(0, EventSource.ENDPOINT, {"host": "ws-01"}))
    finally:
        await pool.stop()
    assert detections == []
    assert identity_only.calls == 0
    assert toggled.calls == 0


async def test_configure_disables_detectors(telemetry):
    pool = DetectorPool([StaticDetector("a"), StaticDetector("b")], telemetry=telemetry)
    pool.configure(DetectorPoolConfig(disabled_detectors=("a",)))
    assert not pool.is_enabled("a")
    assert pool.is_enabled("b")


async def test_model_detector_runs_in_pool(telemetry):
    detector = ModelDetector("anomaly.always", FunctionModel(lambda e, c: 0.99), technique="execution")
    pool = DetectorPool([detector], telemetry=telemetry)
    try:
        (detection,) = await pool.evaluate(make_event(0))
    finally:
        await pool.stop()
    assert detection.detector_id == "anomaly.always"


def test_register_rejects_non_detectors():
    pool = DetectorPool([])
    with pytest.raises(TypeError):
        pool.register(object())
    pool.register(StaticDetector("a"))
    with pytest.raises(ValueError):
        pool.register(StaticDetector("a"))


async def test_context_carries_prior_events(telemetry):
    seen = []

    class Recorder(StaticDetector):
        def detect(self, event, context):
            seen.append(len(context.events_for("user")))
            return []

    pool = DetectorPool([Recorder("recorder")], telemetry=telemetry)
    try:
        for i in range(3):
            await pool.evaluate(make_event(i))
    finally:
        await pool.stop()
    assert seen == [0, 1, 2]

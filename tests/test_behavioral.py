"""
Tests for behavioural baselines and model detectors.
"""

import pytest

from src.threat_engine.detectors.anomaly import FunctionModel, ModelDetector, RarityModel
from src.threat_engine.detectors.base import DetectorScope, EntityHistory
from src.threat_engine.detectors.behavioral import BehavioralDetector, BehaviorProfile, EwmaBaseline
from src.threat_engine.schemas import EventSource, Severity, Technique

from tests.conftest import at, make_event


def run(detector, events):
    history = EntityHistory(window_seconds=600)
    results = []
    for event in events:
        context = history.snapshot(event)
        history.record(event)
        results.append(detector.detect(event, context))
    return results


def logon(seconds, outcome, host="ws-01"):
    return make_event(
        seconds, EventSource.IDENTITY, {"user": "alice", "host": host, "src_ip": "10.0.0.5"}, outcome=outcome
    )


def baseline_then_failures(failures=6):
    events = [logon(-3600 + i * 300, "success") for i in range(12)]
    events.extend(logon(i * 5, "failure") for i in range(failures))
    return events


class TestEwmaBaseline:
    def test_first_sample_sets_mean(self):
        baseline = EwmaBaseline()
        baseline.update(4.0, alpha=0.1)
        assert baseline.mean == 4.0
        assert baseline.variance == 0.0

    def test_zscore_uses_minimum_std(self):
        baseline = EwmaBaseline(mean=0.0, variance=0.0, samples=20)
        assert baseline.zscore(3.0, min_std=1.0) == 3.0


class TestFailedLogonBurst:
    def test_fires_once_on_burst(self):
        detector = BehavioralDetector()
        events = baseline_then_failures()

        results = run(detector, events)

        fired = [(i, d) for i, r in enumerate(results) for d in r]
        assert len(fired) == 1
        index, detection = fired[0]
        # Fourth failure; the cooldown suppresses the rest
        assert index == 15
        assert detection.technique == Technique("credential-access", "T1110")
        assert detection.severity == Severity.MEDIUM
        assert detection.confidence == pytest.approx(0.77, abs=0.01)
        assert len(detection.event_refs) == 4

    def test_no_detection_before_min_samples(self):
        detector = BehavioralDetector()
        events = [logon(i * 5, "failure") for i in range(8)]
        assert all(r == [] for r in run(detector, events))

    def test_anomalies_do_not_poison_the_baseline(self):
        detector = BehavioralDetector()
        run(detector, baseline_then_failures())
        baseline = detector.baseline("failed_logon_burst", "user:alice")
        # Three sub-threshold failures were learned, the anomalous ones were not
        assert baseline.samples == 15
        assert baseline.mean < 1.0

    def test_profile_requires_exactly_one_metric(self):
        with pytest.raises(ValueError):
            BehaviorProfile(profile_id="bad", technique="execution", entity_role="host")

    def test_attribute_profile_direction_below(self):
        profile = BehaviorProfile(
            profile_id="quiet_host",
            technique="defense-evasion",
            entity_role="host",
            attribute="bytes_out",
            sources=["network"],
            direction="below",
            min_samples=3,
            min_std=1.0,
            alpha=0.5,
            severity=Severity.LOW,
        )
        detector = BehavioralDetector(profiles=[profile])
        events = [
            make_event(i, EventSource.NETWORK, {"host": "fw-1"}, bytes_out=100)
            for i in range(3)
        ]
        events.append(make_event(10, EventSource.NETWORK, {"host": "fw-1"}, bytes_out=0))
        results = run(detector, events)
        (detection,) = results[-1]
        assert detection.technique.tactic == "defense-evasion"
        # z of -100 is far past twice the threshold
        assert detection.severity == Severity.MEDIUM


class TestModelDetector:
    def test_threshold_and_escalation(self):
        scores = iter([0.5, 0.95, 0.995])
        detector = ModelDetector(
            "anomaly.test",
            FunctionModel(lambda event, context: next(scores)),
            technique="execution/T1204",
            threshold=0.9,
        )
        history = EntityHistory()
        results = []
        for i in range(3):
            event = make_event(i)
            results.append(detector.detect(event, history.snapshot(event)))
        assert results[0] == []
        assert results[1][0].severity == Severity.LOW
        assert results[1][0].confidence == pytest.approx(0.95)
        assert results[2][0].severity == Severity.MEDIUM

    def test_swap_model(self):
        detector = ModelDetector("anomaly.test", FunctionModel(lambda e, c: 0.0), technique="execution")
        event = make_event(0)
        context = EntityHistory().snapshot(event)
        assert detector.detect(event, context) == []
        detector.swap_model(FunctionModel(lambda e, c: 1.0), threshold=0.5)
        assert detector.threshold == 0.5
        assert len(detector.detect(event, context)) == 1

    def test_rarity_model(self):
        model = RarityModel(field="entities.process", role="host", min_history=5)
        detector = ModelDetector(
            "anomaly.rare_process", model, technique="execution/T1204", threshold=0.8,
            scope=DetectorScope.of(sources=["endpoint"]),
        )
        events = [
            make_event(i, EventSource.ENDPOINT, {"host": "ws-01", "process": "explorer.exe"})
            for i in range(10)
        ]
        events.append(make_event(20, EventSource.ENDPOINT, {"host": "ws-01", "process": "evil.exe"}))
        results = run(detector, events)
        assert all(r == [] for r in results[:-1])
        assert len(results[-1]) == 1

    def test_scope_filters_sources(self):
        detector = ModelDetector(
            "anomaly.test", FunctionModel(lambda e, c: 1.0), technique="execution",
            scope=DetectorScope.of(sources=["endpoint"]),
        )
        event = make_event(0, EventSource.IDENTITY)
        assert detector.detect(event, EntityHistory().snapshot(event)) == []


class TestEntityHistory:
    def test_prune_forgets_idle_entities(self):
        history = EntityHistory(window_seconds=60)
        for i in range(1000):
            history.record(make_event(0, entities={"host": f"host-{i}"}))
        history.record(make_event(86_400, entities={"host": "host-live"}))

        assert history.prune(at(86_400)) == 1000
        assert len(history) == 1

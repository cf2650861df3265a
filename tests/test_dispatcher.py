"""
Tests for the response dispatcher and notification sinks.
"""

import json

import httpx
import pytest

from src.threat_engine.config import DispatchConfig, IncidentConfig
from src.threat_engine.dispatcher import CallbackHook, ResponseDispatcher
from src.threat_engine.errors import DispatchFailure
from src.threat_engine.incidents import IncidentManager
from src.threat_engine.notifications import LogSink, WebhookSink
from src.threat_engine.schemas import Severity
from src.threat_engine.telemetry import EngineTelemetry

from tests.conftest import FlakySink, RecordingSink, make_detection, no_sleep


def incident(severity=Severity.CRITICAL):
    """A fresh incident promoted straight from one detection."""
    manager = IncidentManager(IncidentConfig(detection_fast_path_severity=Severity.LOW))
    decision = manager.ingest_detection(make_detection(severity=severity))
    return manager.get(decision.incident_id)


def dispatcher(sinks=(), hooks=(), **kwargs):
    return ResponseDispatcher(sinks=sinks, hooks=hooks, sleep=no_sleep, **kwargs)


class TestRouting:
    async def test_high_goes_to_log_and_webhook(self):
        log, webhook, email = RecordingSink("log"), RecordingSink("webhook"), RecordingSink("email")
        report = await dispatcher([log, webhook, email]).dispatch(incident(Severity.HIGH))

        assert sorted(report.delivered) == ["log", "webhook"]
        assert email.payloads == []
        payload = log.payloads[0]
        assert payload["event"] == "created"
        assert payload["timeline_version"] == 1

    async def test_low_is_not_routed(self):
        log = RecordingSink("log")
        report = await dispatcher([log]).dispatch(incident(Severity.LOW))
        assert report.delivered == []
        assert log.payloads == []

    async def test_unconfigured_sink_is_skipped(self):
        report = await dispatcher([RecordingSink("log")]).dispatch(incident(Severity.CRITICAL))
        assert report.delivered == ["log"]
        assert sorted(report.skipped) == ["email", "webhook"]

    async def test_hooks_only_for_critical(self):
        calls = []
        hook = CallbackHook("isolate_host", lambda payload: calls.append(payload["incident_id"]))
        engine = dispatcher([RecordingSink("log")], [hook])

        await engine.dispatch(incident(Severity.HIGH))
        assert calls == []

        critical = incident(Severity.CRITICAL)
        report = await engine.dispatch(critical)
        assert calls == [critical.incident_id]
        assert "isolate_host" in report.delivered

    async def test_async_callback_hook(self):
        calls = []

        async def disable_account(payload):
            calls.append(payload["severity"])

        report = await dispatcher(hooks=[CallbackHook("disable_account", disable_account)]).dispatch(incident())
        assert calls == ["critical"]
        assert "disable_account" in report.delivered

    async def test_routes_come_from_config(self):
        log = RecordingSink("log")
        config = DispatchConfig(routes={"low": ("log",)})
        report = await dispatcher([log], config=config).dispatch(incident(Severity.LOW))
        assert report.delivered == ["log"]


class TestDelivery:
    async def test_same_timeline_version_delivered_once(self):
        log = RecordingSink("log")
        engine = dispatcher([log])
        target = incident()

        await engine.dispatch(target)
        report = await engine.dispatch(target)

        assert len(log.payloads) == 1
        assert sorted(report.skipped) == ["email", "log", "webhook"]

    async def test_new_timeline_version_is_delivered_again(self):
        log = RecordingSink("log")
        engine = dispatcher([log])
        target = incident()
        await engine.dispatch(target)
        target.timeline.append(target.timeline[0])
        await engine.dispatch(target, event="escalated")
        assert [p["event"] for p in log.payloads] == ["created", "escalated"]

    async def test_transient_failure_is_retried_with_backoff(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        webhook = FlakySink("webhook", failures=2)
        engine = ResponseDispatcher(sinks=[webhook], sleep=record_sleep)
        report = await engine.dispatch(incident())

        assert report.delivered == ["webhook"]
        assert webhook.calls == 3
        assert delays == [0.5, 1.0]
        assert engine.dead_letters == []

    async def test_exhausted_retries_dead_letter(self):
        letters = []
        telemetry = EngineTelemetry()
        webhook = FlakySink("webhook", failures=10)
        engine = dispatcher([webhook], telemetry=telemetry, dead_letter_sink=letters.append)
        target = incident()

        report = await engine.dispatch(target)

        assert report.failed == ["webhook"]
        assert webhook.calls == 4
        (letter,) = engine.dead_letters
        assert letters == [letter]
        assert letter.attempts == 4
        assert letter.reason == "connection refused"
        assert letter.to_dict()["incident_id"] == target.incident_id
        assert telemetry.counters["dead_letters"] == 1
        assert any(e.kind == "dispatch_failure" for e in telemetry.events)

    async def test_one_failing_sink_does_not_block_others(self):
        log = RecordingSink("log")
        engine = dispatcher([log, FlakySink("webhook", failures=10)])
        report = await engine.dispatch(incident(Severity.HIGH))
        assert report.delivered == ["log"]
        assert report.failed == ["webhook"]
        assert len(log.payloads) == 1

    async def test_replay_dead_letters(self):
        webhook = FlakySink("webhook", failures=4)
        engine = dispatcher([webhook])
        await engine.dispatch(incident())
        assert len(engine.dead_letters) == 1

        report = await engine.replay_dead_letters("webhook")

        assert report.delivered == ["webhook"]
        assert engine.dead_letters == []
        assert len(webhook.payloads) == 1

    async def test_replay_without_target_keeps_letter(self):
        engine = dispatcher([FlakySink("webhook", failures=4)])
        await engine.dispatch(incident())
        del engine.sinks["webhook"]
        report = await engine.replay_dead_letters()
        assert report.skipped == ["webhook"]
        assert len(engine.dead_letters) == 1

    async def test_dead_letter_queue_is_bounded(self):
        engine = dispatcher([FlakySink("webhook", failures=100)], config=DispatchConfig(dead_letter_capacity=2))
        for _ in range(3):
            await engine.dispatch(incident())
        assert len(engine.dead_letters) == 2


class TestSinks:
    async def test_webhook_posts_json_with_idempotency_key(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        sink = WebhookSink("https://hooks.example/threatline", transport=httpx.MockTransport(handler))
        target = incident()
        await sink.send({**target.to_dict(), "event": "created"})

        (request,) = requests
        body = json.loads(request.content)
        assert body["incident_id"] == target.incident_id
        assert request.headers["Idempotency-Key"] == f"{target.incident_id}:1"

    async def test_webhook_error_status_raises(self):
        sink = WebhookSink("https://hooks.example/x", transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        with pytest.raises(DispatchFailure, match="HTTP 502"):
            await sink.send(incident().to_dict())

    def test_webhook_requires_url(self, monkeypatch):
        from src.shared.config import settings

        monkeypatch.setattr(settings, "webhook_url", None)
        with pytest.raises(ValueError):
            WebhookSink()

    async def test_log_sink_accepts_payload(self):
        await LogSink().send({**incident().to_dict(), "event": "created"})

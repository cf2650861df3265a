"""
Response Dispatcher - routes incidents to notification sinks and remediation hooks.

Every call carries a deadline. Failures are retried with exponential backoff;
after the last attempt the delivery lands in a bounded dead-letter queue that
can be replayed by hand.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol, runtime_checkable

from src.threat_engine.cache import BoundedLRU
from src.threat_engine.config import DispatchConfig
from src.threat_engine.errors import DispatchFailure
from src.threat_engine.notifications import NotificationSink
from src.threat_engine.schemas import Incident, Severity, new_id, utcnow
from src.threat_engine.telemetry import EngineTelemetry
from src.shared.logger import get_logger

logger = get_logger()


@runtime_checkable
class RemediationHook(Protocol):
    name: str

    async def execute(self, payload: dict[str, Any]) -> None:
        ...


class CallbackHook:
    """Adapts a plain (sync or async) callable to a remediation hook."""

    def __init__(self, name: str, fn: Callable[[dict[str, Any]], Any]):
        self.name = name
        self.fn = fn

    async def execute(self, payload: dict[str, Any]) -> None:
        result = self.fn(payload)
        if inspect.isawaitable(result):
            await result


@dataclass
class DeadLetter:
    """A delivery that exhausted its retries."""

    letter_id: str
    target: str
    kind: str  # sink | hook
    payload: dict[str, Any]
    reason: str
    attempts: int
    failed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "letter_id": self.letter_id,
            "target": self.target,
            "kind": self.kind,
            "incident_id": self.payload.get("incident_id"),
            "timeline_version": self.payload.get("timeline_version"),
            "reason": self.reason,
            "attempts": self.attempts,
            "failed_at": self.failed_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class DispatchReport:
    incident_id: str
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class ResponseDispatcher:
    """Delivers incident notifications and remediation calls with retry and dead-lettering."""

    def __init__(
        self,
        sinks: Iterable[NotificationSink] = (),
        hooks: Iterable[RemediationHook] = (),
        config: DispatchConfig | None = None,
        telemetry: EngineTelemetry | None = None,
        dead_letter_sink: Callable[[DeadLetter], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize dispatcher.

        Args:
            sinks: Notification sinks, addressed by ``name`` in the severity routes
            hooks: Remediation hooks, run for incidents at or above the remediation severity
            config: Retry, deadline and routing configuration
            telemetry: Shared telemetry sink
            dead_letter_sink: Called with every new dead letter (persistence)
            sleep: Backoff sleeper, replaceable in tests
        """
        self.config = config or DispatchConfig()
        self.telemetry = telemetry or EngineTelemetry()
        self.sinks: dict[str, NotificationSink] = {s.name: s for s in sinks}
        self.hooks: dict[str, RemediationHook] = {h.name: h for h in hooks}
        self.dead_letter_sink = dead_letter_sink
        self._sleep = sleep
        self._dead_letters: deque[DeadLetter] = deque()
        self._delivered: BoundedLRU[tuple[str, str, int], None] = BoundedLRU(50_000)
        logger.info(f"Response dispatcher initialized (sinks: {', '.join(self.sinks) or 'none'})")

    def configure(self, config: DispatchConfig) -> None:
        self.config = config

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks[sink.name] = sink

    def add_hook(self, hook: RemediationHook) -> None:
        self.hooks[hook.name] = hook

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    def build_payload(self, incident: Incident, event: str) -> dict[str, Any]:
        return {**incident.to_dict(), "event": event, "dispatched_at": utcnow().isoformat()}

    async def dispatch(self, incident: Incident, event: str = "created") -> DispatchReport:
        """Route one incident update by severity.

        Args:
            incident: The incident that was created or escalated
            event: ``created`` or ``escalated``

        Returns:
            Which targets were delivered, failed (dead-lettered) or skipped
        """
        config = self.config
        payload = self.build_payload(incident, event)
        report = DispatchReport(incident_id=incident.incident_id)

        calls: list[tuple[str, str, Callable[[dict[str, Any]], Awaitable[None]]]] = []
        for name in config.routes.get(incident.severity.value, ()):
            sink = self.sinks.get(name)
            if sink is None:
                report.skipped.append(name)
                continue
            calls.append(("sink", name, sink.send))
        if incident.severity.rank >= Severity(config.remediation_min_severity).rank:
            for name, hook in self.hooks.items():
                calls.append(("hook", name, hook.execute))

        version = payload["timeline_version"]
        pending = []
        for kind, name, fn in calls:
            if (name, incident.incident_id, version) in self._delivered:
                report.skipped.append(name)
                continue
            pending.append((kind, name, fn))

        outcomes = await asyncio.gather(*(self._deliver(kind, name, fn, payload) for kind, name, fn in pending))
        for (kind, name, _), ok in zip(pending, outcomes):
            (report.delivered if ok else report.failed).append(name)

        if report.skipped:
            logger.debug(f"Dispatch for {incident.incident_id} skipped: {', '.join(report.skipped)}")
        return report

    async def _deliver(
        self,
        kind: str,
        name: str,
        fn: Callable[[dict[str, Any]], Awaitable[None]],
        payload: dict[str, Any],
    ) -> bool:
        """Call one target with per-attempt deadline and exponential backoff."""
        config = self.config
        incident_id = payload["incident_id"]
        reason = ""
        for attempt in range(1, config.max_attempts + 1):
            try:
                await asyncio.wait_for(fn(payload), timeout=config.call_timeout_seconds)
            except asyncio.TimeoutError:
                reason = f"call exceeded {config.call_timeout_seconds:g}s deadline"
            except DispatchFailure as e:
                reason = e.reason
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            else:
                logger.dispatch(name, incident_id, attempt, True)
                self._delivered.add((name, incident_id, payload["timeline_version"]))
                self.telemetry.incr(f"dispatch.{kind}.delivered")
                return True

            logger.dispatch(name, incident_id, attempt, False)
            self.telemetry.incr("dispatch.failures")
            if attempt < config.max_attempts:
                delay = min(config.max_backoff_seconds, config.base_backoff_seconds * (2 ** (attempt - 1)))
                await self._sleep(delay)

        failure = DispatchFailure(name, incident_id, reason, attempts=config.max_attempts)
        self._dead_letter(kind, failure, payload)
        return False

    def _dead_letter(self, kind: str, failure: DispatchFailure, payload: dict[str, Any]) -> None:
        letter = DeadLetter(
            letter_id=new_id("dlq"),
            target=failure.target,
            kind=kind,
            payload=payload,
            reason=failure.reason,
            attempts=failure.attempts,
        )
        if len(self._dead_letters) >= self.config.dead_letter_capacity:
            dropped = self._dead_letters.popleft()
            logger.error(f"Dead-letter queue full, dropping oldest letter {dropped.letter_id}")
            self.telemetry.incr("dead_letters.dropped")
        self._dead_letters.append(letter)
        self.telemetry.incr("dead_letters")
        self.telemetry.emit("dispatch_failure", target=failure.target, incident_id=failure.incident_id,
                            reason=failure.reason)
        logger.error(str(failure))
        if self.dead_letter_sink is not None:
            self.dead_letter_sink(letter)

    async def replay_dead_letters(self, target: str | None = None) -> DispatchReport:
        """Retry dead-lettered deliveries (optionally for one target). Failures go back on the queue."""
        letters = [letter for letter in self._dead_letters if target is None or letter.target == target]
        for letter in letters:
            self._dead_letters.remove(letter)

        report = DispatchReport(incident_id="*")
        for letter in letters:
            registry = self.sinks if letter.kind == "sink" else self.hooks
            handler = registry.get(letter.target)
            if handler is None:
                report.skipped.append(letter.target)
                self._dead_letters.append(letter)
                continue
            fn = handler.send if letter.kind == "sink" else handler.execute
            ok = await self._deliver(letter.kind, letter.target, fn, letter.payload)
            (report.delivered if ok else report.failed).append(letter.target)

        if letters:
            logger.info(
                f"Dead-letter replay: {len(report.delivered)} delivered, {len(report.failed)} failed"
            )
        return report

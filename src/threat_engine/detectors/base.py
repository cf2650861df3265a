"""
Detector capability interface and the read-only per-entity context.

Every strategy (rule, signature, behavioral, anomaly, model) implements the
same ``detect(event, context)`` call; there is no base class to inherit from.
The rolling entity history behind ``DetectorContext`` is the only state the
pool shares with detectors.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from src.threat_engine.schemas import (
    Detection,
    DetectorType,
    EventSource,
    SecurityEvent,
    Severity,
    Technique,
    entity_key,
    new_id,
)


@dataclass(frozen=True)
class DetectorScope:
    """Which events a detector consumes. Empty sets mean 'any'."""

    sources: frozenset[EventSource] = frozenset()
    entity_roles: frozenset[str] = frozenset()

    @classmethod
    def of(cls, sources: Iterable[EventSource | str] = (), entity_roles: Iterable[str] = ()) -> "DetectorScope":
        return cls(
            sources=frozenset(EventSource(s) for s in sources),
            entity_roles=frozenset(entity_roles),
        )

    def accepts(self, event: SecurityEvent) -> bool:
        if self.sources and event.source not in self.sources:
            return False
        if self.entity_roles and not (self.entity_roles & set(event.entities)):
            return False
        return True


@runtime_checkable
class Detector(Protocol):
    """Capability every detection strategy provides."""

    detector_id: str
    version: str
    detector_type: DetectorType
    scope: DetectorScope

    def detect(self, event: SecurityEvent, context: "DetectorContext") -> list[Detection]:
        ...


class DetectorContext:
    """Read-only view of recent prior events sharing an entity with the current event."""

    def __init__(self, event: SecurityEvent, history: dict[str, tuple[SecurityEvent, ...]]):
        self.event = event
        self._history = history

    def events_for(self, role: str) -> tuple[SecurityEvent, ...]:
        """Prior events for the current event's entity in ``role``."""
        value = self.event.entities.get(role)
        if value is None:
            return ()
        return self._history.get(entity_key(role, value), ())

    def all_events(self) -> list[SecurityEvent]:
        """Prior events across every entity of the current event, deduplicated, oldest first."""
        seen: dict[str, SecurityEvent] = {}
        for events in self._history.values():
            for e in events:
                seen.setdefault(e.event_id, e)
        return sorted(seen.values(), key=lambda e: e.timestamp)

    def count(
        self,
        role: str,
        predicate: Callable[[SecurityEvent], bool] | None = None,
        within_seconds: float | None = None,
    ) -> int:
        """Count prior events for ``role`` matching ``predicate`` within a look-back span."""
        cutoff = self.event.timestamp - timedelta(seconds=within_seconds) if within_seconds else None
        total = 0
        for e in self.events_for(role):
            if cutoff is not None and e.timestamp < cutoff:
                continue
            if predicate is None or predicate(e):
                total += 1
        return total


class EntityHistory:
    """Bounded rolling window of events per entity key, keyed by event time."""

    def __init__(self, window_seconds: float = 600.0, max_events: int = 256):
        self.window = timedelta(seconds=window_seconds)
        self.max_events = max_events
        self._lock = threading.Lock()
        self._events: dict[str, deque[SecurityEvent]] = {}

    def configure(self, window_seconds: float, max_events: int) -> None:
        with self._lock:
            self.window = timedelta(seconds=window_seconds)
            if max_events != self.max_events:
                self.max_events = max_events
                self._events = {k: deque(v, maxlen=max_events) for k, v in self._events.items()}

    def snapshot(self, event: SecurityEvent) -> DetectorContext:
        """Context of prior events for ``event`` (the event itself is excluded)."""
        cutoff = event.timestamp - self.window
        with self._lock:
            history = {
                key: tuple(e for e in self._events.get(key, ()) if cutoff <= e.timestamp <= event.timestamp
                           and e.event_id != event.event_id)
                for key in event.entity_keys
            }
        return DetectorContext(event, history)

    def record(self, event: SecurityEvent) -> None:
        with self._lock:
            for key in event.entity_keys:
                events = self._events.get(key)
                if events is None:
                    events = self._events[key] = deque(maxlen=self.max_events)
                events.append(event)
                self._evict(events, event.timestamp)

    def prune(self, now: datetime) -> int:
        """Drop entities whose newest event is older than the window."""
        removed = 0
        with self._lock:
            for key in list(self._events):
                events = self._events[key]
                self._evict(events, now)
                if not events:
                    del self._events[key]
                    removed += 1
        return removed

    def _evict(self, events: deque, now: datetime) -> None:
        cutoff = now - self.window
        while events and events[0].timestamp < cutoff:
            events.popleft()

    def __len__(self) -> int:
        return len(self._events)


def build_detection(
    detector: Any,
    event: SecurityEvent,
    technique: Technique | str,
    confidence: float,
    severity: Severity | str,
    description: str = "",
    related_events: Iterable[SecurityEvent] = (),
) -> Detection:
    """Create a Detection for ``event`` (plus optional supporting prior events)."""
    related = sorted(
        (e for e in related_events if e.event_id != event.event_id),
        key=lambda e: e.timestamp,
    )
    entities: dict[str, str] = {}
    for e in related:
        for role, value in e.entities.items():
            entities.setdefault(role, value)
    # The triggering event's entities take precedence
    entities.update(event.entities)

    return Detection(
        detection_id=new_id("det"),
        detector_id=detector.detector_id,
        event_refs=[e.event_id for e in related] + [event.event_id],
        technique=Technique.parse(technique),
        confidence=max(0.0, min(1.0, float(confidence))),
        severity=Severity(severity),
        entities=entities,
        event_time=event.timestamp,
        description=description,
    )

"""
Engine telemetry: counters, per-detector health and a bounded event log.
"""

import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.threat_engine.schemas import utcnow
from src.shared.logger import get_logger

logger = get_logger()


@dataclass
class TelemetryEvent:
    """A notable runtime occurrence (detector_fault, enrichment_timeout, ...)."""

    kind: str
    at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "at": self.at.isoformat(), **self.data}


@dataclass
class DetectorHealth:
    invocations: int = 0
    faults: int = 0
    timeouts: int = 0
    backpressure_drops: int = 0
    recent: deque = field(default_factory=lambda: deque(maxlen=50))  # True = fault
    alerting: bool = False

    @property
    def recent_fault_rate(self) -> float:
        return sum(self.recent) / len(self.recent) if self.recent else 0.0


class EngineTelemetry:
    """Thread-safe counters shared by every pipeline stage."""

    def __init__(self, max_events: int = 1_000, fault_rate_window: int = 50):
        self._lock = threading.Lock()
        self.counters: Counter[str] = Counter()
        self.detectors: dict[str, DetectorHealth] = defaultdict(
            lambda: DetectorHealth(recent=deque(maxlen=fault_rate_window))
        )
        self.queue_depths: dict[str, int] = {}
        self.events: deque[TelemetryEvent] = deque(maxlen=max_events)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[name] += amount

    def emit(self, kind: str, **data: Any) -> TelemetryEvent:
        event = TelemetryEvent(kind=kind, at=utcnow(), data=data)
        with self._lock:
            self.events.append(event)
            self.counters[f"event.{kind}"] += 1
        return event

    def set_queue_depth(self, queue_name: str, depth: int) -> None:
        with self._lock:
            self.queue_depths[queue_name] = depth

    def record_invocation(self, detector_id: str) -> None:
        with self._lock:
            health = self.detectors[detector_id]
            health.invocations += 1
            health.recent.append(False)

    def record_fault(
        self,
        detector_id: str,
        event_id: str,
        reason: str,
        timeout: bool = False,
        threshold: float = 0.5,
        min_calls: int = 10,
    ) -> None:
        """Record a detector fault and raise an operator alert when the fault rate crosses ``threshold``."""
        with self._lock:
            health = self.detectors[detector_id]
            health.invocations += 1
            health.faults += 1
            if timeout:
                health.timeouts += 1
            health.recent.append(True)
            rate = health.recent_fault_rate
            should_alert = len(health.recent) >= min_calls and rate > threshold and not health.alerting
            if should_alert:
                health.alerting = True
            elif rate <= threshold:
                health.alerting = False

        self.emit("detector_fault", detector_id=detector_id, event_id=event_id, reason=reason)
        logger.detector_fault(detector_id, reason)
        if should_alert:
            self.emit("detector_fault_rate", detector_id=detector_id, rate=round(rate, 3))
            logger.critical(
                f"Detector {detector_id} fault rate {rate:.0%} exceeds {threshold:.0%} - operator attention required"
            )

    def record_backpressure(self, detector_id: str, event_id: str) -> None:
        with self._lock:
            self.detectors[detector_id].backpressure_drops += 1
        self.emit("detector_backpressure", detector_id=detector_id, event_id=event_id)

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time copy suitable for JSON responses."""
        with self._lock:
            return {
                "counters": dict(self.counters),
                "queue_depths": dict(self.queue_depths),
                "detectors": {
                    name: {
                        "invocations": h.invocations,
                        "faults": h.faults,
                        "timeouts": h.timeouts,
                        "backpressure_drops": h.backpressure_drops,
                        "recent_fault_rate": round(h.recent_fault_rate, 3),
                    }
                    for name, h in self.detectors.items()
                },
                "recent_events": [e.to_dict() for e in list(self.events)[-50:]],
            }

"""
Exception hierarchy for the threat engine.

Each pipeline stage raises its own error type at the component seam; the
pipeline decides at the stage boundary whether to drop, degrade, retry or
pause.
"""

from typing import Any


class ThreatlineError(Exception):
    """Base class for all engine errors."""


class ConfigError(ThreatlineError):
    """Invalid engine configuration (bad YAML, out-of-range thresholds)."""


class NormalizationError(ThreatlineError):
    """A raw payload could not be turned into a SecurityEvent."""

    SCHEMA_MISMATCH = "schema_mismatch"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    UNPARSEABLE_TIMESTAMP = "unparseable_timestamp"

    def __init__(self, reason: str, detail: str = "", payload: Any = None):
        self.reason = reason
        self.detail = detail
        self.payload = payload
        super().__init__(f"{reason}: {detail}" if detail else reason)


class DetectorFault(ThreatlineError):
    """A detector raised, timed out, or was refused by backpressure."""

    def __init__(self, detector_id: str, event_id: str, reason: str):
        self.detector_id = detector_id
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"detector {detector_id} failed on {event_id}: {reason}")


class EnrichmentTimeout(ThreatlineError):
    """An intelligence lookup exceeded its deadline."""

    def __init__(self, provider: str, entity_key: str, timeout: float):
        self.provider = provider
        self.entity_key = entity_key
        self.timeout = timeout
        super().__init__(f"{provider} lookup for {entity_key} exceeded {timeout:.2f}s")


class DispatchFailure(ThreatlineError):
    """A notification sink or remediation hook could not be reached."""

    def __init__(self, target: str, incident_id: str, reason: str, attempts: int = 1):
        self.target = target
        self.incident_id = incident_id
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"dispatch to {target} for {incident_id} failed after {attempts} attempt(s): {reason}")


class CorrelationStateCorruption(ThreatlineError):
    """A correlation window violated its invariants; only that window is affected."""

    def __init__(self, window_id: str, detail: str):
        self.window_id = window_id
        self.detail = detail
        super().__init__(f"window {window_id} corrupted: {detail}")


class StorageUnavailableError(ThreatlineError):
    """Persistent storage for window state or audit records is unreachable."""


class QueueFullError(ThreatlineError):
    """The bounded ingest queue is full; the producer must retry or drop."""

    def __init__(self, queue_name: str, capacity: int):
        self.queue_name = queue_name
        self.capacity = capacity
        super().__init__(f"{queue_name} queue full (capacity {capacity})")


class IncidentNotFound(ThreatlineError):
    """No incident with the requested id."""


class InvalidTransition(ThreatlineError):
    """The requested status change is not allowed by the incident lifecycle."""

    def __init__(self, incident_id: str, current: str, requested: str):
        self.incident_id = incident_id
        self.current = current
        self.requested = requested
        super().__init__(f"incident {incident_id}: cannot move from {current} to {requested}")

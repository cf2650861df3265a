"""
Event, Detection, AttackChain and Incident schemas for the threat engine.
"""

import itertools
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class EventSource(str, Enum):
    """Telemetry sources a SecurityEvent can come from."""

    NETWORK = "network"
    ENDPOINT = "endpoint"
    IDENTITY = "identity"
    APPLICATION = "application"
    EMAIL = "email"


class DetectorType(str, Enum):
    """Detection strategy families."""

    SIGNATURE = "signature"
    RULE = "rule"
    BEHAVIORAL = "behavioral"
    ANOMALY = "anomaly"
    ML = "ml"


class Severity(str, Enum):
    """Severity levels, ordered low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def escalate(self, steps: int = 1) -> "Severity":
        """Return the severity ``steps`` levels higher, capped at critical."""
        return _SEVERITY_ORDER[min(self.rank + steps, len(_SEVERITY_ORDER) - 1)]

    @classmethod
    def highest(cls, severities) -> "Severity":
        """Maximum of an iterable of severities (LOW when empty)."""
        ranked = [s.rank for s in severities]
        return _SEVERITY_ORDER[max(ranked)] if ranked else cls.LOW


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class WindowState(str, Enum):
    """Lifecycle of a correlation window."""

    OPEN = "open"
    EXTENDED = "extended"
    CLOSED = "closed"


class IncidentStatus(str, Enum):
    """Incident lifecycle states."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    CONTAINED = "contained"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"

    @property
    def is_active(self) -> bool:
        return self in (IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED)

    @property
    def is_terminal(self) -> bool:
        return self in (IncidentStatus.RESOLVED, IncidentStatus.FALSE_POSITIVE)


class DecisionKind(str, Enum):
    """Outcome of handing an attack chain to the incident manager."""

    CREATE_NEW = "create_new"
    MERGE_INTO = "merge_into"
    DISCARD = "discard"


class ReputationVerdict(str, Enum):
    """Intelligence provider verdicts. UNKNOWN (no data) is not ERROR."""

    MALICIOUS = "malicious"
    SUSPICIOUS = "suspicious"
    BENIGN = "benign"
    UNKNOWN = "unknown"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _IdGenerator:
    """Lexicographically sortable ids: millisecond clock plus a global sequence."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = itertools.count()
        self._last_ms = 0

    def next(self, prefix: str) -> str:
        with self._lock:
            # Never let the clock go backwards between two ids
            now_ms = max(int(time.time() * 1000), self._last_ms)
            self._last_ms = now_ms
            seq = next(self._counter)
        return f"{prefix}-{now_ms:013d}-{seq:08d}"


_ids = _IdGenerator()


def new_id(prefix: str) -> str:
    """Generate a unique, monotonic-sortable id such as ``evt-1718000000000-00000042``."""
    return _ids.next(prefix)


def entity_key(role: str, entity_id: str) -> str:
    """Canonical ``role:id`` form used for entity matching across components."""
    return f"{role}:{entity_id}"


def split_entity_key(key: str) -> tuple[str, str]:
    role, _, entity_id = key.partition(":")
    return role, entity_id


def _entity_keys(entities: Mapping[str, str]) -> frozenset[str]:
    return frozenset(entity_key(role, value) for role, value in entities.items())


@dataclass(frozen=True, eq=False)
class SecurityEvent:
    """Canonical, immutable unit of input produced by the normalizer."""

    event_id: str
    timestamp: datetime  # producer-asserted event time
    source: EventSource
    entities: Mapping[str, str]  # role -> id, e.g. {"host": "H1", "user": "alice"}
    attributes: Mapping[str, Any] = field(default_factory=dict)
    raw: Any = None
    ingested_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def entity_keys(self) -> frozenset[str]:
        return _entity_keys(self.entities)

    @property
    def clock_skew_seconds(self) -> float:
        return (self.ingested_at - self.timestamp).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "ingested_at": self.ingested_at.isoformat(),
            "source": self.source.value,
            "entities": dict(self.entities),
            "attributes": dict(self.attributes),
            "raw": self.raw,
        }


@dataclass(frozen=True)
class Technique:
    """ATT&CK-style taxonomy tag: a tactic plus an optional technique id."""

    tactic: str
    technique_id: str | None = None

    @property
    def key(self) -> str:
        """Identifier used when comparing techniques across chains and incidents."""
        return self.technique_id or self.tactic

    def __str__(self) -> str:
        return f"{self.tactic}/{self.technique_id}" if self.technique_id else self.tactic

    @classmethod
    def parse(cls, value: "str | Technique | Mapping[str, Any]") -> "Technique":
        """Accept ``"tactic"``, ``"tactic/T1234"`` or a mapping."""
        if isinstance(value, Technique):
            return value
        if isinstance(value, Mapping):
            return cls(tactic=str(value["tactic"]), technique_id=value.get("technique_id") or value.get("technique"))
        tactic, _, technique_id = str(value).partition("/")
        return cls(tactic=tactic, technique_id=technique_id or None)


@dataclass
class Detection:
    """Output of one detector on one event or event window."""

    detection_id: str
    detector_id: str
    event_refs: list[str]
    technique: Technique
    confidence: float
    severity: Severity
    entities: dict[str, str]
    event_time: datetime  # latest referenced event timestamp
    created_at: datetime = field(default_factory=utcnow)
    description: str = ""
    enrichment: dict[str, Any] = field(default_factory=dict)
    late_arrival: bool = False
    derived: bool = False

    def __post_init__(self):
        if not self.event_refs:
            raise ValueError("a detection must reference at least one event")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence {self.confidence} outside [0, 1]")

    @property
    def entity_keys(self) -> frozenset[str]:
        return _entity_keys(self.entities)

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        """Idempotence key: detector, triggering (last) event, technique."""
        return (self.detector_id, self.event_refs[-1], self.technique.key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "detection_id": self.detection_id,
            "detector_id": self.detector_id,
            "event_refs": list(self.event_refs),
            "tactic": self.technique.tactic,
            "technique_id": self.technique.technique_id,
            "confidence": round(self.confidence, 4),
            "severity": self.severity.value,
            "entities": dict(self.entities),
            "event_time": self.event_time.isoformat(),
            "created_at": self.created_at.isoformat(),
            "description": self.description,
            "enrichment": self.enrichment,
            "late_arrival": self.late_arrival,
            "derived": self.derived,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Detection":
        """Rebuild a Detection from ``to_dict`` output."""
        return cls(
            detection_id=data["detection_id"],
            detector_id=data["detector_id"],
            event_refs=list(data["event_refs"]),
            technique=Technique(tactic=data["tactic"], technique_id=data.get("technique_id")),
            confidence=float(data["confidence"]),
            severity=Severity(data["severity"]),
            entities=dict(data["entities"]),
            event_time=datetime.fromisoformat(data["event_time"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            description=data.get("description", ""),
            enrichment=dict(data.get("enrichment") or {}),
            late_arrival=bool(data.get("late_arrival", False)),
            derived=bool(data.get("derived", False)),
        )


@dataclass
class AttackChain:
    """Correlator-produced aggregate of entity-linked detections."""

    chain_id: str
    detection_refs: list[str]  # ordered by event time
    entities: set[str]  # union of member entity keys
    pivot: str  # entity key shared by every member
    tactic_sequence: list[str]
    techniques: set[str]
    window_start: datetime
    window_end: datetime
    correlation_confidence: float
    severity: Severity

    # Best-matching multi-stage pattern, if any
    pattern: str | None = None
    revision: int = 0
    degraded: bool = False
    late_arrival: bool = False
    detections: list[Detection] = field(default_factory=list, repr=False)

    @property
    def length(self) -> int:
        return len(self.detection_refs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "chain_id": self.chain_id,
            "detection_refs": list(self.detection_refs),
            "entities": sorted(self.entities),
            "pivot": self.pivot,
            "tactic_sequence": list(self.tactic_sequence),
            "techniques": sorted(self.techniques),
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "correlation_confidence": round(self.correlation_confidence, 4),
            "severity": self.severity.value,
            "pattern": self.pattern,
            "revision": self.revision,
            "degraded": self.degraded,
            "late_arrival": self.late_arrival,
        }


@dataclass
class TimelineEntry:
    """One append-only entry in an incident timeline."""

    at: datetime
    kind: str  # created, merged, status, acknowledged, note, escalated, recurrence
    message: str
    actor: str = "system"
    status: IncidentStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "kind": self.kind,
            "message": self.message,
            "actor": self.actor,
            "status": self.status.value if self.status else None,
        }


@dataclass
class Incident:
    """Actionable record handed to humans and automation."""

    incident_id: str
    title: str
    status: IncidentStatus
    severity: Severity
    created_at: datetime
    last_updated_at: datetime
    source_chain_refs: list[str] = field(default_factory=list)
    source_detection_refs: list[str] = field(default_factory=list)
    entities: set[str] = field(default_factory=set)
    techniques: set[str] = field(default_factory=set)
    correlation_confidence: float = 0.0
    assignee: str | None = None
    timeline: list[TimelineEntry] = field(default_factory=list)
    related_incidents: list[str] = field(default_factory=list)

    # Event-time span of the evidence, used for the merge recency window
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    @property
    def timeline_version(self) -> int:
        """Sinks dedupe deliveries on (incident_id, timeline_version)."""
        return len(self.timeline)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "incident_id": self.incident_id,
            "title": self.title,
            "status": self.status.value,
            "severity": self.severity.value,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "source_chain_refs": list(self.source_chain_refs),
            "source_detection_refs": list(self.source_detection_refs),
            "entities": sorted(self.entities),
            "techniques": sorted(self.techniques),
            "correlation_confidence": round(self.correlation_confidence, 4),
            "assignee": self.assignee,
            "timeline": [entry.to_dict() for entry in self.timeline],
            "timeline_version": self.timeline_version,
            "related_incidents": list(self.related_incidents),
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }


@dataclass(frozen=True)
class IncidentDecision:
    """Result of ``IncidentManager.ingest``."""

    kind: DecisionKind
    incident_id: str | None = None
    reason: str | None = None
    escalated: bool = False

    @classmethod
    def create_new(cls, incident_id: str) -> "IncidentDecision":
        return cls(DecisionKind.CREATE_NEW, incident_id=incident_id)

    @classmethod
    def merge_into(cls, incident_id: str, escalated: bool = False) -> "IncidentDecision":
        return cls(DecisionKind.MERGE_INTO, incident_id=incident_id, escalated=escalated)

    @classmethod
    def discard(cls, reason: str) -> "IncidentDecision":
        return cls(DecisionKind.DISCARD, reason=reason)


@dataclass
class ReputationResult:
    """Answer from an intelligence provider for one entity."""

    entity_type: str
    entity_id: str
    verdict: ReputationVerdict = ReputationVerdict.UNKNOWN
    score: float = 0.0  # 0 = clean, 1 = certainly malicious
    allowlisted: bool = False
    criticality: float | None = None  # asset criticality 0..1
    provider: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        return self.verdict not in (ReputationVerdict.UNKNOWN, ReputationVerdict.ERROR) or (
            self.allowlisted or self.criticality is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": entity_key(self.entity_type, self.entity_id),
            "verdict": self.verdict.value,
            "score": round(self.score, 4),
            "allowlisted": self.allowlisted,
            "criticality": self.criticality,
            "provider": self.provider,
        }

"""
Incident Manager - promotes attack chains to incidents and owns their lifecycle.

Every mutation happens under one lock, so status and timeline changes for an
incident are single-writer. Incidents are never deleted; terminal incidents
stay indexed by entity so recurrences can be linked to them.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterator

from src.threat_engine.config import IncidentConfig
from src.threat_engine.errors import IncidentNotFound, InvalidTransition
from src.threat_engine.schemas import (
    AttackChain,
    Detection,
    Incident,
    IncidentDecision,
    IncidentStatus,
    Severity,
    TimelineEntry,
    new_id,
    utcnow,
)
from src.threat_engine.telemetry import EngineTelemetry
from src.shared.logger import get_logger

logger = get_logger()

# Allowed status transitions
TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.OPEN: frozenset({
        IncidentStatus.ACKNOWLEDGED,
        IncidentStatus.CONTAINED,
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
    }),
    IncidentStatus.ACKNOWLEDGED: frozenset({
        IncidentStatus.CONTAINED,
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
    }),
    IncidentStatus.CONTAINED: frozenset({
        IncidentStatus.ACKNOWLEDGED,
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
    }),
    IncidentStatus.RESOLVED: frozenset(),
    IncidentStatus.FALSE_POSITIVE: frozenset(),
}


@dataclass
class DiscardedChain:
    """A chain that did not qualify, kept for audit."""

    chain: AttackChain
    reason: str
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {**self.chain.to_dict(), "discard_reason": self.reason, "discarded_at": self.at.isoformat()}


def chain_from_detection(detection: Detection) -> AttackChain:
    """A single-detection chain, used by the detection fast path."""
    return AttackChain(
        chain_id=f"chain-{detection.detection_id}",
        detection_refs=[detection.detection_id],
        entities=set(detection.entity_keys),
        pivot=min(detection.entity_keys) if detection.entity_keys else "",
        tactic_sequence=[detection.technique.tactic],
        techniques={detection.technique.key},
        window_start=detection.event_time,
        window_end=detection.event_time,
        correlation_confidence=detection.confidence,
        severity=detection.severity,
        detections=[detection],
    )


class IncidentManager:
    """Decides create / merge / discard for chains and tracks incident state."""

    def __init__(
        self,
        config: IncidentConfig | None = None,
        telemetry: EngineTelemetry | None = None,
        audit_size: int = 10_000,
    ):
        """Initialize incident manager.

        Args:
            config: Promotion and merge thresholds
            telemetry: Shared telemetry sink
            audit_size: How many discarded chains to keep in memory
        """
        self.config = config or IncidentConfig()
        self.telemetry = telemetry or EngineTelemetry()
        self._lock = threading.RLock()
        self._incidents: dict[str, Incident] = {}
        self._by_chain: dict[str, str] = {}
        self._by_entity: dict[str, set[str]] = defaultdict(set)
        self.discarded: deque[DiscardedChain] = deque(maxlen=audit_size)
        logger.info("Incident Manager initialized")

    def configure(self, config: IncidentConfig) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, chain: AttackChain) -> IncidentDecision:
        """Create, merge or discard an incident for a closed chain.

        Args:
            chain: Closed (or revised) attack chain from the correlator

        Returns:
            The decision taken
        """
        config = self.config
        with self._lock:
            known = self._by_chain.get(chain.chain_id)
            # Terminal incidents are final; a late revision becomes a recurrence
            if known is not None and self._incidents[known].status.is_active:
                return self._merge(self._incidents[known], chain, revised=True)

            target = self._find_merge_target(chain, config)
            if target is not None:
                return self._merge(target, chain)

            if not self._qualifies(chain, config):
                reason = (
                    f"severity {chain.severity.value} < {config.min_severity.value} and "
                    f"confidence {chain.correlation_confidence:.2f} < {config.min_confidence:.2f}"
                )
                self.discarded.append(DiscardedChain(chain, reason, utcnow()))
                self.telemetry.incr("chains.discarded")
                logger.debug(f"Discarded chain {chain.chain_id}: {reason}")
                return IncidentDecision.discard(reason)

            return self._create(chain)

    def ingest_detection(self, detection: Detection) -> IncidentDecision:
        """Promote a single detection directly when its severity is high enough."""
        config = self.config
        if detection.severity.rank < config.detection_fast_path_severity.rank:
            return IncidentDecision.discard(
                f"detection severity {detection.severity.value} below fast path "
                f"{config.detection_fast_path_severity.value}"
            )
        chain = chain_from_detection(detection)
        with self._lock:
            known = self._by_chain.get(chain.chain_id)
            if known is not None:
                return IncidentDecision.merge_into(known)
            target = self._find_merge_target(chain, config)
            if target is not None:
                return self._merge(target, chain)
            return self._create(chain)

    def _qualifies(self, chain: AttackChain, config: IncidentConfig) -> bool:
        return (
            chain.severity.rank >= config.min_severity.rank
            or chain.correlation_confidence >= config.min_confidence
        )

    def _find_merge_target(self, chain: AttackChain, config: IncidentConfig) -> Incident | None:
        """Most recently updated open/acknowledged incident sharing an entity and a technique."""
        recency = timedelta(seconds=config.recency_window_seconds)
        candidates: set[str] = set()
        for key in chain.entities:
            candidates |= self._by_entity.get(key, set())

        best: Incident | None = None
        for incident_id in candidates:
            incident = self._incidents[incident_id]
            if not incident.status.is_active:
                continue
            if not incident.techniques & chain.techniques:
                continue
            anchor = incident.first_seen or chain.window_start
            if abs(chain.window_end - anchor) > recency:
                continue
            if best is None or (incident.last_updated_at, incident.incident_id) > (best.last_updated_at, best.incident_id):
                best = incident
        return best

    def _create(self, chain: AttackChain) -> IncidentDecision:
        now = utcnow()
        incident = Incident(
            incident_id=new_id("inc"),
            title=self._title(chain),
            status=IncidentStatus.OPEN,
            severity=chain.severity,
            created_at=now,
            last_updated_at=now,
            source_chain_refs=[chain.chain_id],
            source_detection_refs=list(chain.detection_refs),
            entities=set(chain.entities),
            techniques=set(chain.techniques),
            correlation_confidence=chain.correlation_confidence,
            first_seen=chain.window_start,
            last_seen=chain.window_end,
        )
        incident.timeline.append(TimelineEntry(
            at=now,
            kind="created",
            message=f"Created from {chain.chain_id} ({chain.length} detections, pivot {chain.pivot})",
            status=IncidentStatus.OPEN,
        ))

        for related in self._recurrences(chain):
            incident.related_incidents.append(related.incident_id)
            incident.timeline.append(TimelineEntry(
                at=now,
                kind="recurrence",
                message=f"Recurrence of {related.incident_id} ({related.status.value})",
            ))

        self._incidents[incident.incident_id] = incident
        self._by_chain[chain.chain_id] = incident.incident_id
        for key in incident.entities:
            self._by_entity[key].add(incident.incident_id)

        self.telemetry.incr("incidents.created")
        logger.incident(incident.incident_id, incident.severity.value, incident.title)
        return IncidentDecision.create_new(incident.incident_id)

    def _recurrences(self, chain: AttackChain) -> list[Incident]:
        candidates: set[str] = set()
        for key in chain.entities:
            candidates |= self._by_entity.get(key, set())
        related = [
            self._incidents[i] for i in sorted(candidates)
            if self._incidents[i].status.is_terminal and self._incidents[i].techniques & chain.techniques
        ]
        return related

    def _merge(self, incident: Incident, chain: AttackChain, revised: bool = False) -> IncidentDecision:
        now = utcnow()
        previous = incident.severity

        if chain.chain_id not in incident.source_chain_refs:
            incident.source_chain_refs.append(chain.chain_id)
        for ref in chain.detection_refs:
            if ref not in incident.source_detection_refs:
                incident.source_detection_refs.append(ref)
        new_entities = chain.entities - incident.entities
        incident.entities |= chain.entities
        incident.techniques |= chain.techniques
        incident.correlation_confidence = max(incident.correlation_confidence, chain.correlation_confidence)
        incident.severity = Severity.highest([incident.severity, chain.severity])
        incident.first_seen = min(filter(None, [incident.first_seen, chain.window_start]))
        incident.last_seen = max(filter(None, [incident.last_seen, chain.window_end]))
        incident.last_updated_at = now

        self._by_chain[chain.chain_id] = incident.incident_id
        for key in new_entities:
            self._by_entity[key].add(incident.incident_id)

        label = f"revision {chain.revision} of {chain.chain_id}" if revised else chain.chain_id
        incident.timeline.append(TimelineEntry(
            at=now, kind="merged", message=f"Merged {label} ({chain.length} detections)",
        ))
        escalated = incident.severity.rank > previous.rank
        if escalated:
            incident.timeline.append(TimelineEntry(
                at=now, kind="escalated", message=f"Severity {previous.value} -> {incident.severity.value}",
            ))
            logger.incident(incident.incident_id, incident.severity.value, f"escalated from {previous.value}")

        self.telemetry.incr("incidents.merged")
        return IncidentDecision.merge_into(incident.incident_id, escalated=escalated)

    def _title(self, chain: AttackChain) -> str:
        stages = " -> ".join(chain.tactic_sequence) or "activity"
        return f"{stages} on {chain.pivot}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    def acknowledge(self, incident_id: str, actor: str) -> Incident:
        """Record an acknowledgment. Moves OPEN to ACKNOWLEDGED; never overwrites other state."""
        with self._lock:
            incident = self._require(incident_id)
            if incident.status.is_terminal:
                raise InvalidTransition(incident_id, incident.status.value, IncidentStatus.ACKNOWLEDGED.value)
            now = utcnow()
            status = None
            if incident.status == IncidentStatus.OPEN:
                incident.status = IncidentStatus.ACKNOWLEDGED
                status = IncidentStatus.ACKNOWLEDGED
            if incident.assignee is None:
                incident.assignee = actor
            incident.timeline.append(TimelineEntry(
                at=now, kind="acknowledged", message=f"Acknowledged by {actor}", actor=actor, status=status,
            ))
            incident.last_updated_at = now
            return incident

    def transition(self, incident_id: str, status: IncidentStatus | str, actor: str = "system", note: str = "") -> Incident:
        """Move an incident along the lifecycle graph.

        Raises:
            IncidentNotFound: unknown incident id
            InvalidTransition: the move is not allowed from the current status
        """
        status = IncidentStatus(status)
        with self._lock:
            incident = self._require(incident_id)
            if status not in TRANSITIONS[incident.status]:
                raise InvalidTransition(incident_id, incident.status.value, status.value)
            now = utcnow()
            previous = incident.status
            incident.status = status
            message = f"{previous.value} -> {status.value}"
            if note:
                message = f"{message}: {note}"
            incident.timeline.append(TimelineEntry(at=now, kind="status", message=message, actor=actor, status=status))
            incident.last_updated_at = now
            logger.info(f"Incident {incident_id} {message} ({actor})")
            return incident

    def annotate(self, incident_id: str, actor: str, note: str) -> Incident:
        with self._lock:
            incident = self._require(incident_id)
            now = utcnow()
            incident.timeline.append(TimelineEntry(at=now, kind="note", message=note, actor=actor))
            incident.last_updated_at = now
            return incident

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, incident_id: str) -> Incident:
        with self._lock:
            return self._require(incident_id)

    def list_open(self) -> list[Incident]:
        """Non-terminal incidents, newest first."""
        with self._lock:
            incidents = [i for i in self._incidents.values() if not i.status.is_terminal]
        return sorted(incidents, key=lambda i: i.created_at, reverse=True)

    def list_all(self) -> list[Incident]:
        with self._lock:
            return sorted(self._incidents.values(), key=lambda i: i.created_at, reverse=True)

    def find_by_entity(self, key: str) -> list[Incident]:
        """Every incident (terminal ones included) that involved entity ``key``."""
        with self._lock:
            return [self._incidents[i] for i in sorted(self._by_entity.get(key, ()))]

    def incident_for_chain(self, chain_id: str) -> Incident | None:
        with self._lock:
            incident_id = self._by_chain.get(chain_id)
            return self._incidents.get(incident_id) if incident_id else None

    def __len__(self) -> int:
        return len(self._incidents)

    def __iter__(self) -> Iterator[Incident]:
        return iter(self.list_all())

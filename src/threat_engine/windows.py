"""
Correlation windows: the per-pivot state machine behind the correlator.

OPEN -> EXTENDED -> CLOSED. A window only ever holds detections that share at
least one entity with every other member; ``common`` is that intersection and
the pivot is picked from it.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence

from src.threat_engine.config import CorrelatorConfig
from src.threat_engine.errors import CorrelationStateCorruption
from src.threat_engine.patterns import PatternMatch, TacticLibrary
from src.threat_engine.schemas import (
    AttackChain,
    Detection,
    Severity,
    WindowState,
    new_id,
    split_entity_key,
)


def choose_pivot(keys: set[str] | frozenset[str], priority: Sequence[str]) -> str:
    """Most preferred entity key by role priority, then lexical order."""
    def rank(key: str) -> tuple[int, str]:
        role, _ = split_entity_key(key)
        return (priority.index(role) if role in priority else len(priority), key)
    return min(keys, key=rank)


def tactic_sequence(members: Sequence[Detection]) -> list[str]:
    """Member tactics in time order with consecutive repeats collapsed."""
    sequence: list[str] = []
    for detection in members:
        tactic = detection.technique.tactic
        if not sequence or sequence[-1] != tactic:
            sequence.append(tactic)
    return sequence


def score_members(
    members: Sequence[Detection],
    match: PatternMatch | None,
    config: CorrelatorConfig,
) -> float:
    """Weighted pattern fraction, temporal density and entity overlap, normalised to [0, 1]."""
    if len(members) < 2:
        return 0.0

    pattern = match.fraction if match is not None else 0.0

    times = [d.event_time for d in members]
    gaps = [(b - a).total_seconds() for a, b in zip(times, times[1:])]
    mean_gap = sum(gaps) / len(gaps)
    temporal = max(0.0, 1.0 - mean_gap / config.max_gap_seconds)

    counts: dict[str, int] = {}
    for detection in members:
        for key in detection.entity_keys:
            counts[key] = counts.get(key, 0) + 1
    overlap = sum(1 for c in counts.values() if c >= 2) / len(counts) if counts else 0.0

    weights = config.pattern_weight + config.temporal_weight + config.entity_weight
    score = (
        config.pattern_weight * pattern
        + config.temporal_weight * temporal
        + config.entity_weight * overlap
    ) / weights
    return round(max(0.0, min(1.0, score)), 6)


@dataclass
class CorrelationWindow:
    """Detections linked through a shared entity inside a bounded time span."""

    window_id: str
    chain_id: str
    start: datetime
    deadline: datetime
    max_end: datetime
    last_activity: datetime
    members: list[Detection] = field(default_factory=list)
    common: set[str] = field(default_factory=set)
    entities: set[str] = field(default_factory=set)
    state: WindowState = WindowState.OPEN
    revision: int = 0
    closed_at: datetime | None = None
    degraded: bool = False
    late_arrival: bool = False
    extended: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @classmethod
    def open(cls, detection: Detection, config: CorrelatorConfig) -> "CorrelationWindow":
        start = detection.event_time
        return cls(
            window_id=new_id("win"),
            chain_id=new_id("chain"),
            start=start,
            deadline=start + timedelta(seconds=config.window_duration_seconds),
            max_end=start + timedelta(seconds=config.max_window_duration_seconds),
            last_activity=start,
            members=[detection],
            common=set(detection.entity_keys),
            entities=set(detection.entity_keys),
            late_arrival=detection.late_arrival,
        )

    @property
    def member_ids(self) -> set[str]:
        return {d.detection_id for d in self.members}

    @property
    def is_active(self) -> bool:
        return self.state != WindowState.CLOSED

    def shares_entity(self, detection: Detection) -> bool:
        return bool(self.common & detection.entity_keys)

    def accepts(self, detection: Detection, config: CorrelatorConfig, allow_closed: bool = False) -> bool:
        """Spatial and temporal admission test."""
        if not allow_closed and not self.is_active:
            return False
        if not self.shares_entity(detection):
            return False
        t = detection.event_time
        if t < self.start or t > self.deadline:
            return False
        max_gap = timedelta(seconds=config.max_gap_seconds)
        return min(abs(t - d.event_time) for d in self.members) <= max_gap

    def absorb(self, detection: Detection, config: CorrelatorConfig) -> bool:
        """Add ``detection``; returns True when the deadline was extended."""
        if detection.detection_id in self.member_ids:
            return False
        self.members.append(detection)
        self.members.sort(key=lambda d: (d.event_time, d.detection_id))
        self.common &= detection.entity_keys
        self.entities |= detection.entity_keys
        self.last_activity = max(self.last_activity, detection.event_time)
        self.late_arrival = self.late_arrival or detection.late_arrival

        remaining = (self.deadline - detection.event_time).total_seconds()
        if remaining <= config.extend_threshold_seconds:
            extended = min(self.deadline + timedelta(seconds=config.extend_by_seconds), self.max_end)
            if extended > self.deadline:
                self.deadline = extended
                self.extended = True
                self.state = WindowState.EXTENDED
                return True
        return False

    def should_close(self, now: datetime, config: CorrelatorConfig) -> bool:
        if not self.is_active:
            return False
        idle = (now - self.last_activity).total_seconds()
        return idle > config.max_gap_seconds or now >= self.deadline

    def close(self, now: datetime) -> None:
        self.state = WindowState.CLOSED
        self.closed_at = now

    def reopen(self) -> None:
        self.state = WindowState.EXTENDED if self.extended else WindowState.OPEN
        self.closed_at = None
        self.revision += 1

    def validate(self) -> None:
        """Raise CorrelationStateCorruption when an invariant no longer holds."""
        if not self.members:
            raise CorrelationStateCorruption(self.window_id, "window has no members")
        if not self.common:
            raise CorrelationStateCorruption(self.window_id, "members share no common entity")
        for detection in self.members:
            if not self.common <= detection.entity_keys:
                raise CorrelationStateCorruption(
                    self.window_id, f"{detection.detection_id} does not carry the common entities"
                )
            if not self.start <= detection.event_time <= self.max_end:
                raise CorrelationStateCorruption(
                    self.window_id, f"{detection.detection_id} falls outside the window span"
                )
        if self.deadline > self.max_end:
            raise CorrelationStateCorruption(self.window_id, "deadline beyond maximum window duration")

    def to_chain(self, library: TacticLibrary, config: CorrelatorConfig) -> AttackChain:
        members = list(self.members)
        sequence = tactic_sequence(members)
        match = library.match(sequence) if len(members) >= 2 else None
        severity = Severity.highest(d.severity for d in members)
        if match is not None and match.multi_step:
            severity = severity.escalate()

        pivot_keys = self.common or {k for d in members[:1] for k in d.entity_keys}
        return AttackChain(
            chain_id=self.chain_id,
            detection_refs=[d.detection_id for d in members],
            entities=set(self.entities),
            pivot=choose_pivot(pivot_keys, config.pivot_priority),
            tactic_sequence=sequence,
            techniques={d.technique.key for d in members},
            window_start=members[0].event_time,
            window_end=members[-1].event_time,
            correlation_confidence=score_members(members, match, config),
            severity=severity,
            pattern=match.pattern.pattern_id if match is not None else None,
            revision=self.revision,
            degraded=self.degraded,
            late_arrival=self.late_arrival,
            detections=members,
        )

    def snapshot(self) -> dict[str, Any]:
        """Serializable state for persistence."""
        return {
            "window_id": self.window_id,
            "chain_id": self.chain_id,
            "state": self.state.value,
            "start": self.start.isoformat(),
            "deadline": self.deadline.isoformat(),
            "max_end": self.max_end.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "common": sorted(self.common),
            "entities": sorted(self.entities),
            "revision": self.revision,
            "degraded": self.degraded,
            "late_arrival": self.late_arrival,
            "extended": self.extended,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "members": [d.to_dict() for d in self.members],
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "CorrelationWindow":
        closed_at = data.get("closed_at")
        return cls(
            window_id=data["window_id"],
            chain_id=data["chain_id"],
            start=datetime.fromisoformat(data["start"]),
            deadline=datetime.fromisoformat(data["deadline"]),
            max_end=datetime.fromisoformat(data["max_end"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            members=[Detection.from_dict(d) for d in data["members"]],
            common=set(data["common"]),
            entities=set(data["entities"]),
            state=WindowState(data["state"]),
            revision=int(data.get("revision", 0)),
            degraded=bool(data.get("degraded", False)),
            late_arrival=bool(data.get("late_arrival", False)),
            extended=bool(data.get("extended", False)),
            closed_at=datetime.fromisoformat(closed_at) if closed_at else None,
        )

"""
Behavioral detector - per-entity rolling baselines.

Each profile tracks an exponentially weighted mean and variance of one metric
per entity and flags values more than ``threshold_sigma`` standard deviations
away. Evaluate-then-update runs under the entity's shard lock so concurrent
events for the same entity cannot interleave.
"""

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from src.threat_engine.detectors.base import DetectorContext, DetectorScope, build_detection
from src.threat_engine.detectors.rules import compile_condition, resolve_field
from src.threat_engine.locks import ShardedLocks
from src.threat_engine.schemas import (
    Detection,
    DetectorType,
    EventSource,
    SecurityEvent,
    Severity,
    Technique,
    entity_key,
)
from src.shared.logger import get_logger

logger = get_logger()


@dataclass
class EwmaBaseline:
    """Exponentially weighted moving mean and variance."""

    mean: float = 0.0
    variance: float = 0.0
    samples: int = 0
    last_alert: datetime | None = None

    def update(self, value: float, alpha: float) -> None:
        if self.samples == 0:
            self.mean = value
            self.variance = 0.0
        else:
            diff = value - self.mean
            increment = alpha * diff
            self.mean += increment
            self.variance = (1 - alpha) * (self.variance + diff * increment)
        self.samples += 1

    def zscore(self, value: float, min_std: float) -> float:
        std = max(math.sqrt(max(self.variance, 0.0)), min_std)
        return (value - self.mean) / std


@dataclass
class BehaviorProfile:
    """One behavioural metric tracked per entity."""

    profile_id: str
    technique: Technique
    entity_role: str

    # Either attribute="<name>" or count_within_seconds (+ optional count_where)
    attribute: str | None = None
    count_within_seconds: float | None = None
    count_where: dict[str, Any] | None = None

    sources: list[str] = field(default_factory=list)
    applies_when: dict[str, Any] | None = None

    threshold_sigma: float = 3.0
    min_samples: int = 10
    alpha: float = 0.1
    min_std: float = 1.0
    direction: str = "above"  # above | below | both
    learn_from_anomalies: bool = False
    cooldown_seconds: float = 300.0

    severity: Severity = Severity.MEDIUM
    base_confidence: float = 0.7
    max_confidence: float = 0.95

    def __post_init__(self):
        self.technique = Technique.parse(self.technique)
        self.severity = Severity(self.severity)
        if (self.attribute is None) == (self.count_within_seconds is None):
            raise ValueError(f"profile {self.profile_id}: set exactly one of attribute / count_within_seconds")
        self._sources = frozenset(EventSource(s) for s in self.sources)
        self._applies = compile_condition(self.applies_when) if self.applies_when else None
        self._count_where = compile_condition(self.count_where) if self.count_where else None

    def applies_to(self, event: SecurityEvent) -> bool:
        if self._sources and event.source not in self._sources:
            return False
        if self.entity_role not in event.entities:
            return False
        return self._applies is None or self._applies(event, event, None)

    def measure(self, event: SecurityEvent, context: DetectorContext) -> tuple[float | None, list[SecurityEvent]]:
        """Metric value for this event plus the prior events that contributed to it."""
        if self.attribute is not None:
            value = resolve_field(event, self.attribute)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None, []
            return float(value), []

        cutoff = event.timestamp - timedelta(seconds=self.count_within_seconds)
        matching = [
            e for e in context.events_for(self.entity_role)
            if e.timestamp >= cutoff and (self._count_where is None or self._count_where(event, e, context))
        ]
        current = 1 if self._count_where is None or self._count_where(event, event, context) else 0
        return float(len(matching) + current), matching

    def is_deviation(self, z: float) -> bool:
        if self.direction == "below":
            return z <= -self.threshold_sigma
        if self.direction == "both":
            return abs(z) >= self.threshold_sigma
        return z >= self.threshold_sigma


def get_default_profiles() -> list[BehaviorProfile]:
    return [
        BehaviorProfile(
            profile_id="failed_logon_burst",
            technique=Technique("credential-access", "T1110"),
            entity_role="user",
            sources=["identity"],
            count_within_seconds=60,
            count_where={"field": "outcome", "op": "eq", "value": "failure"},
            threshold_sigma=3.0,
            min_samples=10,
            severity=Severity.MEDIUM,
            base_confidence=0.75,
        ),
        BehaviorProfile(
            profile_id="egress_volume",
            technique=Technique("exfiltration", "T1048"),
            entity_role="host",
            sources=["network"],
            attribute="bytes_out",
            threshold_sigma=4.0,
            min_samples=20,
            min_std=1024.0,
            severity=Severity.MEDIUM,
            base_confidence=0.6,
        ),
        BehaviorProfile(
            profile_id="process_spawn_rate",
            technique=Technique("execution", "T1059"),
            entity_role="host",
            sources=["endpoint"],
            count_within_seconds=60,
            count_where={"field": "action", "op": "eq", "value": "process_start"},
            applies_when={"field": "action", "op": "eq", "value": "process_start"},
            threshold_sigma=4.0,
            min_samples=20,
            min_std=2.0,
            severity=Severity.LOW,
            base_confidence=0.5,
        ),
    ]


class BehavioralDetector:
    """Flags events whose metric deviates from the entity's own baseline."""

    def __init__(
        self,
        detector_id: str = "behavioral",
        profiles: Iterable[BehaviorProfile] | None = None,
        max_entities: int = 50_000,
        shard_count: int = 32,
        version: str = "1.0",
    ):
        self.detector_id = detector_id
        self.version = version
        self.detector_type = DetectorType.BEHAVIORAL
        self.profiles = tuple(profiles if profiles is not None else get_default_profiles())
        self.max_entities = max_entities
        self._locks = ShardedLocks(shard_count)
        self._baselines: OrderedDict[tuple[str, str], EwmaBaseline] = OrderedDict()
        self._registry_lock = threading.Lock()
        self.scope = DetectorScope(
            sources=frozenset(s for p in self.profiles for s in p._sources)
            if all(p._sources for p in self.profiles) else frozenset(),
            entity_roles=frozenset(p.entity_role for p in self.profiles),
        )
        logger.info(f"Behavioral detector '{detector_id}' initialized with {len(self.profiles)} profiles")

    def baseline(self, profile_id: str, key: str) -> EwmaBaseline | None:
        with self._locks.for_key(key):
            return self._baselines.get((profile_id, key))

    def detect(self, event: SecurityEvent, context: DetectorContext) -> list[Detection]:
        detections = []
        for profile in self.profiles:
            if not profile.applies_to(event):
                continue
            key = entity_key(profile.entity_role, event.entities[profile.entity_role])
            value, support = profile.measure(event, context)
            if value is None:
                continue

            # Evaluate and update atomically for this entity
            with self._locks.for_key(key):
                baseline = self._get_baseline(profile.profile_id, key)
                anomalous = False
                z = 0.0
                if baseline.samples >= profile.min_samples:
                    z = baseline.zscore(value, profile.min_std)
                    anomalous = profile.is_deviation(z)

                cooling = (
                    baseline.last_alert is not None
                    and event.timestamp - baseline.last_alert < timedelta(seconds=profile.cooldown_seconds)
                )
                if anomalous and not cooling:
                    baseline.last_alert = event.timestamp
                    detections.append(self._build(profile, event, value, baseline, z, support))

                if not anomalous or profile.learn_from_anomalies:
                    baseline.update(value, profile.alpha)

        return detections

    def _get_baseline(self, profile_id: str, key: str) -> EwmaBaseline:
        slot = (profile_id, key)
        with self._registry_lock:
            baseline = self._baselines.get(slot)
            if baseline is None:
                baseline = EwmaBaseline()
                self._baselines[slot] = baseline
                if len(self._baselines) > self.max_entities:
                    # Evict the least recently created baseline
                    self._baselines.popitem(last=False)
        return baseline

    def _build(
        self,
        profile: BehaviorProfile,
        event: SecurityEvent,
        value: float,
        baseline: EwmaBaseline,
        z: float,
        support: list[SecurityEvent],
    ) -> Detection:
        excess = abs(z) - profile.threshold_sigma
        confidence = min(profile.max_confidence, profile.base_confidence + 0.05 * excess)
        severity = profile.severity
        if abs(z) >= 2 * profile.threshold_sigma:
            severity = severity.escalate()
        return build_detection(
            self,
            event,
            technique=profile.technique,
            confidence=confidence,
            severity=severity,
            description=(
                f"{profile.profile_id}: value {value:g} vs baseline {baseline.mean:.2f} "
                f"(z={z:.2f}, sigma={profile.threshold_sigma})"
            ),
            related_events=support[-20:],
        )

"""
Pattern Detection - multi-stage tactic patterns and statistical rate bursts.
"""

import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from src.threat_engine.schemas import Detection, Severity, Technique, new_id, split_entity_key
from src.shared.logger import get_logger

logger = get_logger()


@dataclass(frozen=True)
class TacticPattern:
    """An ordered sequence of tactics describing one attack progression."""

    pattern_id: str
    name: str
    tactics: tuple[str, ...]

    def matched_steps(self, sequence: Sequence[str]) -> int:
        """Length of the longest in-order subsequence shared with ``sequence``."""
        pattern = self.tactics
        # Classic LCS table; both sides are short
        previous = [0] * (len(pattern) + 1)
        for tactic in sequence:
            current = [0] * (len(pattern) + 1)
            for j, step in enumerate(pattern, start=1):
                if tactic == step:
                    current[j] = previous[j - 1] + 1
                else:
                    current[j] = max(previous[j], current[j - 1])
            previous = current
        return previous[-1]


@dataclass(frozen=True)
class PatternMatch:
    pattern: TacticPattern
    steps: int

    @property
    def fraction(self) -> float:
        return self.steps / len(self.pattern.tactics)

    @property
    def multi_step(self) -> bool:
        return self.steps >= 2


class TacticLibrary:
    """Known multi-stage progressions used to score and break ties between windows."""

    def __init__(self, patterns: Iterable[TacticPattern] | None = None):
        self.patterns = tuple(patterns if patterns is not None else get_default_patterns())
        logger.info(f"Tactic library initialized with {len(self.patterns)} patterns")

    def match(self, sequence: Sequence[str]) -> PatternMatch | None:
        """Best multi-step match for a tactic sequence, or None.

        Ties go to the larger covered fraction, then to the longer pattern.
        """
        best: PatternMatch | None = None
        for pattern in self.patterns:
            steps = pattern.matched_steps(sequence)
            if steps < 2:
                continue
            candidate = PatternMatch(pattern, steps)
            if best is None or (candidate.fraction, candidate.steps) > (best.fraction, best.steps):
                best = candidate
        return best

    def fit(self, sequence: Sequence[str], tactic: str) -> float:
        """How much appending ``tactic`` advances the best pattern match (0 when it does not)."""
        before = self.match(sequence)
        after = self.match([*sequence, tactic])
        before_score = before.steps if before else (1 if sequence else 0)
        after_score = after.steps if after else 1
        if after_score <= before_score:
            return 0.0
        return after.fraction if after else 0.0


def get_default_patterns() -> list[TacticPattern]:
    return [
        TacticPattern(
            pattern_id="brute_force_lateral",
            name="Credential brute force followed by lateral movement",
            tactics=("credential-access", "lateral-movement"),
        ),
        TacticPattern(
            pattern_id="intrusion_escalation",
            name="Initial access, persistence, privilege escalation",
            tactics=("initial-access", "persistence", "privilege-escalation"),
        ),
        TacticPattern(
            pattern_id="phishing_execution",
            name="Phishing payload executed and calling out",
            tactics=("initial-access", "execution", "command-and-control"),
        ),
        TacticPattern(
            pattern_id="execution_persistence",
            name="Execution followed by persistence",
            tactics=("execution", "persistence", "privilege-escalation"),
        ),
        TacticPattern(
            pattern_id="credential_theft_exfiltration",
            name="Credential theft, lateral movement, exfiltration",
            tactics=("credential-access", "lateral-movement", "collection", "exfiltration"),
        ),
        TacticPattern(
            pattern_id="c2_exfiltration",
            name="Command and control then exfiltration",
            tactics=("command-and-control", "exfiltration"),
        ),
        TacticPattern(
            pattern_id="ransomware",
            name="Execution, defense evasion, impact",
            tactics=("execution", "defense-evasion", "impact"),
        ),
    ]


class DetectionRateMonitor:
    """Synthesises a derived detection when one entity accrues many low-severity detections.

    Individually weak signals (below ``max_severity``) are counted per entity
    over ``span_seconds``; reaching ``threshold`` emits one derived detection
    referencing every contributing event and resets that entity's count.
    """

    DETECTOR_ID = "correlator.rate"

    def __init__(
        self,
        threshold: int = 5,
        span_seconds: float = 120.0,
        max_severity: Severity = Severity.LOW,
        pivot_priority: Sequence[str] = (),
    ):
        self.threshold = threshold
        self.span = timedelta(seconds=span_seconds)
        self.max_severity = Severity(max_severity)
        self.pivot_priority = tuple(pivot_priority)
        self._lock = threading.Lock()
        self._recent: dict[str, deque[Detection]] = defaultdict(deque)

    def configure(self, threshold: int, span_seconds: float, max_severity: Severity, pivot_priority: Sequence[str]) -> None:
        with self._lock:
            self.threshold = threshold
            self.span = timedelta(seconds=span_seconds)
            self.max_severity = Severity(max_severity)
            self.pivot_priority = tuple(pivot_priority)

    def _priority(self, key: str) -> tuple[int, str]:
        role, _ = split_entity_key(key)
        try:
            return (self.pivot_priority.index(role), key)
        except ValueError:
            return (len(self.pivot_priority), key)

    def observe(self, detection: Detection) -> Detection | None:
        """Count ``detection``; return a derived detection when a burst completes."""
        if detection.derived or detection.severity.rank > self.max_severity.rank:
            return None

        with self._lock:
            burst_key = None
            for key in sorted(detection.entity_keys, key=self._priority):
                window = self._recent[key]
                window.append(detection)
                cutoff = detection.event_time - self.span
                while window and window[0].event_time < cutoff:
                    window.popleft()
                if burst_key is None and len(window) >= self.threshold:
                    burst_key = key
            if burst_key is None:
                return None

            burst = list(self._recent[burst_key])
            members = {d.detection_id for d in burst}
            for key, window in list(self._recent.items()):
                remaining = deque(d for d in window if d.detection_id not in members)
                if remaining:
                    self._recent[key] = remaining
                else:
                    del self._recent[key]

        derived = self._build(burst_key, burst)
        logger.info(
            f"Rate burst on {burst_key}: {len(burst)} low-severity detections -> {derived.detection_id}"
        )
        return derived

    def _build(self, key: str, burst: list[Detection]) -> Detection:
        burst.sort(key=lambda d: d.event_time)
        refs: list[str] = []
        for d in burst:
            for ref in d.event_refs:
                if ref not in refs:
                    refs.append(ref)

        role, value = split_entity_key(key)
        entities: dict[str, str] = {role: value}
        shared: Counter[tuple[str, str]] = Counter(
            (r, v) for d in burst for r, v in d.entities.items() if r != role
        )
        for (other_role, other_value), count in shared.most_common():
            # Carry entities every burst member agrees on
            if count == len(burst) and other_role not in entities:
                entities[other_role] = other_value

        technique: Technique = Counter(d.technique for d in burst).most_common(1)[0][0]
        return Detection(
            detection_id=new_id("det"),
            detector_id=self.DETECTOR_ID,
            event_refs=refs,
            technique=technique,
            confidence=min(0.9, 0.4 + 0.05 * len(burst)),
            severity=Severity.highest(d.severity for d in burst).escalate(),
            entities=entities,
            event_time=burst[-1].event_time,
            description=f"{len(burst)} low-severity detections for {key} within {int(self.span.total_seconds())}s",
            derived=True,
            enrichment={"source_detections": [d.detection_id for d in burst]},
        )

    def prune(self, now: datetime) -> int:
        """Drop counts older than the span and forget entities with none left."""
        cutoff = now - self.span
        removed = 0
        with self._lock:
            for key in list(self._recent):
                window = self._recent[key]
                while window and window[0].event_time < cutoff:
                    window.popleft()
                if not window:
                    del self._recent[key]
                    removed += 1
        return removed

    def pending(self) -> dict[str, Any]:
        with self._lock:
            return {key: len(window) for key, window in self._recent.items()}

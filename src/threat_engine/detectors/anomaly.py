"""
Anomaly / model detectors - a black-box scoring function behind one contract.

The pipeline only ever calls ``score(event, context) -> float``; models can be
retrained and swapped at runtime without touching anything else.
"""

import threading
from collections import Counter
from typing import Callable, Iterable, Protocol, runtime_checkable

from src.threat_engine.detectors.base import DetectorContext, DetectorScope, build_detection
from src.threat_engine.detectors.rules import resolve_field
from src.threat_engine.schemas import (
    Detection,
    DetectorType,
    SecurityEvent,
    Severity,
    Technique,
)
from src.shared.logger import get_logger

logger = get_logger()


@runtime_checkable
class ScoringModel(Protocol):
    """Anything that maps an event (and its context) to an anomaly score in [0, 1]."""

    def score(self, event: SecurityEvent, context: DetectorContext) -> float:
        ...


class FunctionModel:
    """Adapts a plain callable to the ScoringModel contract."""

    def __init__(self, fn: Callable[[SecurityEvent, DetectorContext], float], name: str = "function"):
        self.fn = fn
        self.name = name

    def score(self, event: SecurityEvent, context: DetectorContext) -> float:
        return self.fn(event, context)


class RarityModel:
    """Scores how unusual a field value is for an entity, from its recent history.

    The score is ``1 - share`` where ``share`` is the fraction of the entity's
    prior events carrying the same value. Entities with too little history
    score 0 so new assets do not flood the pipeline.
    """

    def __init__(self, field: str, role: str, min_history: int = 20):
        self.field = field
        self.role = role
        self.min_history = min_history
        self.name = f"rarity:{role}:{field}"

    def score(self, event: SecurityEvent, context: DetectorContext) -> float:
        value = resolve_field(event, self.field)
        history = context.events_for(self.role)
        if len(history) < self.min_history:
            return 0.0
        counts = Counter(resolve_field(e, self.field) for e in history)
        share = counts.get(value, 0) / len(history)
        return 1.0 - share


class ModelDetector:
    """Emits a Detection when the wrapped model's score exceeds the threshold."""

    def __init__(
        self,
        detector_id: str,
        model: ScoringModel,
        technique: Technique | str,
        threshold: float = 0.9,
        severity: Severity = Severity.LOW,
        escalate_above: float | None = 0.99,
        scope: DetectorScope | None = None,
        detector_type: DetectorType = DetectorType.ANOMALY,
        version: str = "1.0",
    ):
        self.detector_id = detector_id
        self.version = version
        self.detector_type = detector_type
        self.scope = scope or DetectorScope()
        self.technique = Technique.parse(technique)
        self.severity = Severity(severity)
        self.escalate_above = escalate_above
        self._swap_lock = threading.Lock()
        self._model_state: tuple[ScoringModel, float] = (model, threshold)

    @property
    def model(self) -> ScoringModel:
        return self._model_state[0]

    @property
    def threshold(self) -> float:
        return self._model_state[1]

    def swap_model(self, model: ScoringModel, threshold: float | None = None) -> None:
        """Hot-swap the model (and optionally its threshold) atomically."""
        with self._swap_lock:
            current_threshold = self._model_state[1]
            self._model_state = (model, current_threshold if threshold is None else threshold)
        logger.info(f"Model detector '{self.detector_id}' swapped to {getattr(model, 'name', type(model).__name__)}")

    def detect(self, event: SecurityEvent, context: DetectorContext) -> list[Detection]:
        if not self.scope.accepts(event):
            return []
        model, threshold = self._model_state
        score = float(model.score(event, context))
        if score <= threshold:
            return []

        severity = self.severity
        if self.escalate_above is not None and score >= self.escalate_above:
            severity = severity.escalate()
        return [build_detection(
            self,
            event,
            technique=self.technique,
            confidence=min(1.0, max(0.0, score)),
            severity=severity,
            description=f"{getattr(model, 'name', 'model')} score {score:.3f} > {threshold:.3f}",
        )]


def get_default_model_detectors() -> list[ModelDetector]:
    return [
        ModelDetector(
            detector_id="anomaly.rare_process",
            model=RarityModel(field="entities.process", role="host", min_history=30),
            technique=Technique("execution", "T1204"),
            threshold=0.97,
            scope=DetectorScope.of(sources=["endpoint"], entity_roles=["host", "process"]),
        ),
        ModelDetector(
            detector_id="anomaly.rare_destination_port",
            model=RarityModel(field="dst_port", role="host", min_history=50),
            technique=Technique("command-and-control", "T1571"),
            threshold=0.98,
            scope=DetectorScope.of(sources=["network"], entity_roles=["host"]),
        ),
    ]


def models_named(detectors: Iterable[ModelDetector]) -> dict[str, ModelDetector]:
    return {d.detector_id: d for d in detectors}

"""
Threat Scorer & Enricher - reputation context, confidence rescoring, dedupe.
"""

import asyncio
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Callable, Iterable

from src.threat_engine.cache import BoundedLRU
from src.threat_engine.config import ScorerConfig
from src.threat_engine.errors import EnrichmentTimeout
from src.threat_engine.intel import IntelligenceProvider, StaticIntelligenceProvider
from src.threat_engine.schemas import Detection, ReputationResult, ReputationVerdict, entity_key
from src.threat_engine.telemetry import EngineTelemetry
from src.shared.logger import get_logger

logger = get_logger()

SuppressionSink = Callable[[Detection, str], None]


def _merge_refs(first: list[str], second: Iterable[str]) -> list[str]:
    merged = list(first)
    seen = set(merged)
    for ref in second:
        if ref not in seen:
            merged.append(ref)
            seen.add(ref)
    return merged


def _near_identical(a: Detection, b: Detection, window: timedelta) -> bool:
    """Same detector and technique, at least one shared entity, close in event time."""
    return (
        a.detector_id == b.detector_id
        and a.technique.key == b.technique.key
        and bool(a.entity_keys & b.entity_keys)
        and abs(a.event_time - b.event_time) <= window
    )


class ThreatScorer:
    """Enriches detections with intelligence context and recomputes their confidence."""

    def __init__(
        self,
        provider: IntelligenceProvider | None = None,
        config: ScorerConfig | None = None,
        telemetry: EngineTelemetry | None = None,
        suppression_sink: SuppressionSink | None = None,
    ):
        """Initialize scorer.

        Args:
            provider: Intelligence provider (an empty static table if omitted)
            config: Scorer configuration
            telemetry: Shared telemetry sink
            suppression_sink: Called with (detection, reason) for every dropped detection
        """
        self.provider = provider or StaticIntelligenceProvider()
        self.config = config or ScorerConfig()
        self.telemetry = telemetry or EngineTelemetry()
        self.suppression_sink = suppression_sink
        self._recent: BoundedLRU[tuple[str, str, str], Detection] = BoundedLRU(self.config.dedupe_cache_size)
        self._recent_lock = threading.Lock()
        logger.info(f"Threat scorer initialized (provider: {getattr(self.provider, 'name', 'custom')})")

    def configure(self, config: ScorerConfig) -> None:
        self.config = config
        self._recent.resize(config.dedupe_cache_size)

    async def enrich(self, detections: list[Detection]) -> list[Detection]:
        """Enrich, rescore, dedupe and floor-filter a batch of detections.

        Args:
            detections: Raw detections from the detector pool

        Returns:
            Detections to forward to the correlator, with recomputed confidence
        """
        config = self.config
        if not detections:
            return []

        batch = self._dedupe_batch(detections, config)
        lookups = await self._lookup_all(batch, config)

        forwarded: list[Detection] = []
        for detection in batch:
            scored = self._score(detection, lookups, config)
            if scored.confidence < config.confidence_floor:
                self._suppress(scored, "below_confidence_floor")
                continue
            if self._covered_by_recent(scored, config):
                continue
            forwarded.append(scored)

        self.telemetry.incr("detections.enriched", len(forwarded))
        return forwarded

    def _dedupe_batch(self, detections: list[Detection], config: ScorerConfig) -> list[Detection]:
        window = timedelta(seconds=config.dedupe_window_seconds)
        kept: list[Detection] = []
        for detection in sorted(detections, key=lambda d: d.confidence, reverse=True):
            for index, existing in enumerate(kept):
                if _near_identical(existing, detection, window):
                    kept[index] = replace(existing, event_refs=_merge_refs(existing.event_refs, detection.event_refs))
                    self._suppress(detection, f"duplicate_of:{existing.detection_id}")
                    break
            else:
                kept.append(detection)
        return sorted(kept, key=lambda d: d.event_time)

    def _covered_by_recent(self, detection: Detection, config: ScorerConfig) -> bool:
        """True when an already-forwarded near-identical detection carries all of its evidence.

        Forwarded detections belong to the correlator and are never modified here.
        A near-identical detection with new events or higher confidence is
        forwarded itself and becomes the one remembered.
        """
        window = timedelta(seconds=config.dedupe_window_seconds)
        keys = [(detection.detector_id, detection.technique.key, key) for key in sorted(detection.entity_keys)]
        with self._recent_lock:
            for key in keys:
                existing = self._recent.get(key)
                if (
                    existing is not None
                    and _near_identical(existing, detection, window)
                    and set(detection.event_refs) <= set(existing.event_refs)
                    and detection.confidence <= existing.confidence
                ):
                    self._suppress(detection, f"duplicate_of:{existing.detection_id}")
                    return True
            for key in keys:
                self._recent.put(key, detection)
        return False

    def _suppress(self, detection: Detection, reason: str) -> None:
        self.telemetry.incr("detections.suppressed")
        logger.debug(f"Suppressed {detection.detection_id} ({detection.detector_id}): {reason}")
        if self.suppression_sink is not None:
            self.suppression_sink(detection, reason)

    async def _lookup_all(
        self, detections: list[Detection], config: ScorerConfig
    ) -> dict[str, ReputationResult | None]:
        """Look up each distinct enrichable entity once. None marks a timed-out lookup."""
        wanted = sorted({
            entity_key(role, value)
            for d in detections
            for role, value in d.entities.items()
            if role in config.enrich_roles
        })
        if not wanted:
            return {}

        timeout = min(config.lookup_timeout_seconds, getattr(self.provider, "timeout", config.lookup_timeout_seconds))
        answers = await asyncio.gather(
            *(self._lookup(key, timeout) for key in wanted),
            return_exceptions=True,
        )

        results: dict[str, ReputationResult | None] = {}
        for key, answer in zip(wanted, answers):
            if isinstance(answer, EnrichmentTimeout):
                self.telemetry.emit(
                    "enrichment_timeout", provider=answer.provider, entity=key, timeout=answer.timeout
                )
                logger.warning(f"Enrichment timeout: {answer}")
                results[key] = None
            elif isinstance(answer, Exception):
                logger.error(f"Intelligence lookup for {key} failed: {type(answer).__name__}: {answer}")
                role, _, value = key.partition(":")
                results[key] = ReputationResult(
                    entity_type=role, entity_id=value, verdict=ReputationVerdict.ERROR,
                    provider=getattr(self.provider, "name", ""), details={"error": str(answer)},
                )
            else:
                results[key] = answer
        return results

    async def _lookup(self, key: str, timeout: float) -> ReputationResult:
        role, _, value = key.partition(":")
        try:
            return await asyncio.wait_for(self.provider.lookup(role, value), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EnrichmentTimeout(getattr(self.provider, "name", "provider"), key, timeout) from e

    def _score(
        self,
        detection: Detection,
        lookups: dict[str, ReputationResult | None],
        config: ScorerConfig,
    ) -> Detection:
        partial = False
        reputation: dict[str, dict] = {}
        modifiers: list[str] = []
        malicious = suspicious = allowlisted = False
        criticality = 0.0

        for key in sorted(detection.entity_keys):
            if key not in lookups:
                continue
            result = lookups[key]
            if result is None:
                partial = True
                continue
            if result.details.get("partial"):
                partial = True
            if not result.has_data:
                continue
            reputation[key] = result.to_dict()
            malicious = malicious or result.verdict == ReputationVerdict.MALICIOUS
            suspicious = suspicious or result.verdict == ReputationVerdict.SUSPICIOUS
            allowlisted = allowlisted or result.allowlisted
            if result.criticality is not None:
                criticality = max(criticality, result.criticality)

        context = detection.confidence
        if malicious:
            context += config.malicious_boost
            modifiers.append("malicious_reputation")
        elif suspicious:
            context += config.suspicious_boost
            modifiers.append("suspicious_reputation")
        if allowlisted and not malicious:
            context -= config.allowlist_penalty
            modifiers.append("allowlisted")
        if criticality > 0:
            context += config.criticality_boost * criticality
            modifiers.append("asset_criticality")
        context = max(0.0, min(1.0, context))

        total_weight = config.detector_weight + config.context_weight
        if total_weight > 0:
            confidence = (config.detector_weight * detection.confidence + config.context_weight * context) / total_weight
        else:
            confidence = detection.confidence

        enrichment = dict(detection.enrichment)
        enrichment.update({
            "detector_confidence": detection.confidence,
            "reputation": reputation,
            "modifiers": modifiers,
            "partial": partial,
        })
        return replace(detection, confidence=max(0.0, min(1.0, confidence)), enrichment=enrichment)

"""
Threat pipeline - wires the stages together behind bounded queues.

    ingest queue -> router -> detection lanes -> correlator -> incidents -> dispatch queue

Producers get ``QueueFullError`` when the ingest queue is full. The router
hashes each event's primary entity onto a lane, so events for one entity are
detected in arrival order. Every stage boundary handles the errors of the
stage it calls: malformed events are dropped, storage outages pause
correlation until the store comes back, sink failures end in dead letters.
"""

import asyncio
import time
import zlib
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from src.shared.config import settings
from src.threat_engine.config import ConfigStore, EngineConfig
from src.threat_engine.correlator import EventCorrelator
from src.threat_engine.detectors import Detector, DetectorPool, RuleDetector, build_default_detectors
from src.threat_engine.detectors.rules import get_default_rules, load_rules
from src.threat_engine.dispatcher import DeadLetter, RemediationHook, ResponseDispatcher
from src.threat_engine.errors import ConfigError, NormalizationError, QueueFullError, StorageUnavailableError
from src.threat_engine.incidents import IncidentManager
from src.threat_engine.intel import IntelligenceProvider, build_default_provider
from src.threat_engine.normalizer import EventNormalizer
from src.threat_engine.notifications import NotificationSink, build_default_sinks
from src.threat_engine.patterns import TacticLibrary
from src.threat_engine.schemas import (
    AttackChain,
    DecisionKind,
    Detection,
    EventSource,
    Incident,
    IncidentDecision,
    IncidentStatus,
    SecurityEvent,
)
from src.threat_engine.scorer import ThreatScorer
from src.threat_engine.storage import EngineStorage
from src.threat_engine.telemetry import EngineTelemetry
from src.threat_engine.windows import choose_pivot
from src.shared.logger import get_logger

logger = get_logger()

# Entity role that decides an event's detection lane, most preferred first.
# Accounts move between hosts, so user-scoped history stays on one lane.
ROUTING_PRIORITY = ("user", "host", "src_ip", "sender", "service", "session", "process", "dst_ip")


class ThreatPipeline:
    """End-to-end engine: normalize, detect, score, correlate, promote, dispatch."""

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        detectors: Iterable[Detector] | None = None,
        provider: IntelligenceProvider | None = None,
        sinks: Iterable[NotificationSink] | None = None,
        hooks: Iterable[RemediationHook] = (),
        storage: EngineStorage | None = None,
        telemetry: EngineTelemetry | None = None,
        queue_size: int | None = None,
        lanes: int | None = None,
        tick_interval: float = 1.0,
        storage_retry_seconds: float = 1.0,
        dispatch_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the pipeline.

        Args:
            config_store: Live engine configuration (defaults when omitted)
            detectors: Detector set (the stock set when omitted)
            provider: Intelligence provider for the scorer
            sinks: Notification sinks (log, plus webhook/email when configured)
            hooks: Remediation hooks
            storage: Window and audit storage; without it nothing is persisted
            telemetry: Shared telemetry sink
            queue_size: Ingest queue capacity
            lanes: Number of detection lanes
            tick_interval: Seconds between correlator clock ticks
            storage_retry_seconds: Pause between persistence retries while storage is down
            dispatch_sleep: Backoff sleeper handed to the dispatcher
        """
        self.config_store = config_store or ConfigStore()
        config = self.config_store.current()

        self.telemetry = telemetry or EngineTelemetry(fault_rate_window=config.detectors.fault_rate_window)
        self.storage = storage
        self.tick_interval = tick_interval
        self.storage_retry_seconds = storage_retry_seconds
        self.suppressions: deque[dict[str, Any]] = deque(maxlen=10_000)

        self.normalizer = EventNormalizer(config.normalizer)
        self.pool = DetectorPool(
            detectors if detectors is not None else build_default_detectors(config.rule_files),
            config.detectors,
            self.telemetry,
        )
        self.scorer = ThreatScorer(
            provider or build_default_provider(settings.intel_file),
            config.scorer,
            self.telemetry,
            suppression_sink=self._record_suppression,
        )
        self.correlator = EventCorrelator(config.correlator, TacticLibrary(), self.telemetry, store=storage)
        self.incidents = IncidentManager(config.incidents, self.telemetry)
        self.dispatcher = ResponseDispatcher(
            sinks if sinks is not None else build_default_sinks(),
            hooks,
            config.dispatch,
            self.telemetry,
            dead_letter_sink=self._record_dead_letter,
            sleep=dispatch_sleep,
        )
        self.config_store.subscribe(self._apply_config)

        self._ingest: asyncio.Queue[SecurityEvent] = asyncio.Queue(maxsize=queue_size or settings.ingest_queue_size)
        lane_count = max(1, lanes or settings.detection_workers)
        self._lanes: list[asyncio.Queue[SecurityEvent]] = [
            asyncio.Queue(maxsize=config.detectors.queue_size) for _ in range(lane_count)
        ]
        self._dispatch: asyncio.Queue[tuple[Incident, str]] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._paused = False
        self._clock_anchor: datetime | None = None
        self._clock_mono = 0.0
        self._last_cleanup = time.monotonic()
        self.running = False

        logger.info(
            f"Threat pipeline initialized ({lane_count} lanes, ingest queue {self._ingest.maxsize}, "
            f"storage {'on' if storage else 'off'})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Restore persisted windows and start every stage."""
        if self.running:
            return
        if self.storage is not None:
            self.correlator.restore()
        await self.pool.start()
        self.running = True
        self._tasks = [
            asyncio.create_task(self._router(), name="pipeline-router"),
            *(
                asyncio.create_task(self._lane_worker(lane), name=f"pipeline-lane-{index}")
                for index, lane in enumerate(self._lanes)
            ),
            asyncio.create_task(self._dispatch_worker(), name="pipeline-dispatch"),
            asyncio.create_task(self._ticker(), name="pipeline-ticker"),
        ]
        logger.success("Threat pipeline started")

    async def stop(self):
        """Stop every stage. Queued work that has not been drained is dropped."""
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.pool.stop()
        logger.info("Threat pipeline stopped")

    async def drain(self):
        """Wait until every queued event has been detected, correlated and dispatched."""
        await self._ingest.join()
        for lane in self._lanes:
            await lane.join()
        await self._dispatch.join()

    async def flush(self) -> list[AttackChain]:
        """Drain, then close every correlation window and promote the resulting chains."""
        await self.drain()
        chains = await self._with_storage_retry(self.correlator.flush)
        await self._handle_chains(chains)
        await self._dispatch.join()
        return chains

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_raw(self, payload: Any, source_type: EventSource | str) -> SecurityEvent | None:
        """Normalize and enqueue a raw payload. Malformed payloads are logged and dropped.

        Raises:
            QueueFullError: the ingest queue is full
        """
        try:
            event = self.normalizer.normalize(payload, source_type)
        except NormalizationError as e:
            self.telemetry.incr("events.malformed")
            self.telemetry.incr(f"events.malformed.{e.reason}")
            logger.warning(f"Dropping malformed {source_type} event ({e.reason}): {e.detail}")
            return None
        self.ingest_event(event)
        return event

    def ingest_event(self, event: SecurityEvent) -> None:
        """Enqueue a normalized event.

        Raises:
            QueueFullError: the ingest queue is full
        """
        try:
            self._ingest.put_nowait(event)
        except asyncio.QueueFull:
            self.telemetry.incr("events.rejected")
            raise QueueFullError("ingest", self._ingest.maxsize) from None
        self.telemetry.incr("events.ingested")
        self.telemetry.set_queue_depth("ingest", self._ingest.qsize())

    async def ingest_detection(self, detection: Detection) -> IncidentDecision:
        """Promote an externally produced detection straight to the incident manager."""
        decision = self.incidents.ingest_detection(detection)
        await self._after_decision(decision)
        return decision

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def lane_for(self, event: SecurityEvent) -> int:
        """Lane index for ``event``: a stable hash of its primary entity."""
        keys = event.entity_keys
        primary = choose_pivot(keys, ROUTING_PRIORITY) if keys else event.event_id
        return zlib.crc32(primary.encode("utf-8")) % len(self._lanes)

    async def _router(self):
        while True:
            event = await self._ingest.get()
            try:
                lane = self._lanes[self.lane_for(event)]
                await lane.put(event)
                self.telemetry.set_queue_depth("ingest", self._ingest.qsize())
            finally:
                self._ingest.task_done()

    async def _lane_worker(self, lane: asyncio.Queue):
        while True:
            event = await lane.get()
            try:
                await self._process(event)
            except Exception as e:
                self.telemetry.incr("pipeline.errors")
                logger.error(f"Error processing event {event.event_id}: {e}", exc_info=True)
            finally:
                lane.task_done()

    async def _process(self, event: SecurityEvent):
        detections = await self.pool.evaluate(event)
        self.telemetry.incr("events.processed")
        if not detections:
            return

        scored = await self.scorer.enrich(detections)
        fast_path = self.config_store.current().incidents.detection_fast_path_severity
        for detection in scored:
            self._audit("insert_detection", detection)
            if detection.severity.rank >= fast_path.rank:
                await self.ingest_detection(detection)
            chains = await self._with_storage_retry(self.correlator.submit, detection)
            await self._handle_chains(chains)

    async def _with_storage_retry(self, fn: Callable[..., list[AttackChain]], *args) -> list[AttackChain]:
        """Run a correlator call in a worker thread, pausing while window storage is down."""
        while True:
            try:
                result = await asyncio.to_thread(fn, *args)
            except StorageUnavailableError as e:
                if not self._paused:
                    self._paused = True
                    self.telemetry.emit("correlation_paused", error=str(e))
                    logger.error(f"Correlation paused, window storage unavailable: {e}")
                await asyncio.sleep(self.storage_retry_seconds)
                continue
            if self._paused:
                self._paused = False
                self.telemetry.emit("correlation_resumed")
                logger.success("Correlation resumed")
            return result

    async def _handle_chains(self, chains: list[AttackChain]):
        for chain in chains:
            decision = self.incidents.ingest(chain)
            self._audit("save_chain", chain, decision)
            await self._after_decision(decision)

    async def _after_decision(self, decision: IncidentDecision):
        if decision.kind == DecisionKind.DISCARD:
            return
        incident = self.incidents.get(decision.incident_id)
        self._audit("save_incident", incident)
        if decision.kind == DecisionKind.CREATE_NEW:
            await self._dispatch.put((incident, "created"))
        elif decision.escalated:
            await self._dispatch.put((incident, "escalated"))
        self.telemetry.set_queue_depth("dispatch", self._dispatch.qsize())

    async def _dispatch_worker(self):
        while True:
            incident, event = await self._dispatch.get()
            try:
                await self.dispatcher.dispatch(incident, event)
            except Exception as e:
                self.telemetry.incr("pipeline.errors")
                logger.error(f"Error dispatching {incident.incident_id}: {e}", exc_info=True)
            finally:
                self._dispatch.task_done()

    async def _ticker(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                await self.tick()
            except Exception as e:
                self.telemetry.incr("pipeline.errors")
                logger.error(f"Error in correlator tick: {e}", exc_info=True)

    async def tick(self, now: datetime | None = None) -> list[AttackChain]:
        """Advance the correlator clock and promote any chains that closed."""
        now = now or self.event_clock()
        for index, lane in enumerate(self._lanes):
            self.telemetry.set_queue_depth(f"lane.{index}", lane.qsize())
        self.telemetry.set_queue_depth("reorder_buffer", self.correlator.buffered())
        if now is None:
            return []
        chains = await self._with_storage_retry(self.correlator.tick, now)
        await self._handle_chains(chains)
        self.pool.history.prune(now)

        if self.storage is not None and time.monotonic() - self._last_cleanup > 3600:
            self._last_cleanup = time.monotonic()
            self._audit("cleanup_old_data")
        return chains

    def event_clock(self) -> datetime | None:
        """Event time now: the newest event time seen plus wall time elapsed since it arrived."""
        watermark = self.correlator.watermark
        if watermark is None:
            return None
        if watermark != self._clock_anchor:
            self._clock_anchor = watermark
            self._clock_mono = time.monotonic()
        return watermark + timedelta(seconds=time.monotonic() - self._clock_mono)

    # ------------------------------------------------------------------
    # Incident lifecycle (persisted)
    # ------------------------------------------------------------------

    def acknowledge(self, incident_id: str, actor: str) -> Incident:
        incident = self.incidents.acknowledge(incident_id, actor)
        self._audit("save_incident", incident)
        return incident

    def transition(self, incident_id: str, status: IncidentStatus | str, actor: str = "system", note: str = "") -> Incident:
        incident = self.incidents.transition(incident_id, status, actor, note)
        self._audit("save_incident", incident)
        return incident

    def annotate(self, incident_id: str, actor: str, note: str) -> Incident:
        incident = self.incidents.annotate(incident_id, actor, note)
        self._audit("save_incident", incident)
        return incident

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def reload_config(self, path: str | None = None) -> EngineConfig:
        """Reload the YAML configuration; the previous one stays live on error."""
        return self.config_store.reload(path)

    def _apply_config(self, config: EngineConfig):
        self.normalizer.config = config.normalizer
        self.pool.configure(config.detectors)
        self.scorer.configure(config.scorer)
        self.correlator.configure(config.correlator)
        self.incidents.configure(config.incidents)
        self.dispatcher.configure(config.dispatch)
        self._reload_rules(config.rule_files)

    def _reload_rules(self, rule_files: tuple[str, ...]):
        if "rules" not in self.pool.detector_ids:
            return
        detector = self.pool.get("rules")
        if not isinstance(detector, RuleDetector):
            return
        try:
            rules = list(get_default_rules())
            for path in rule_files:
                rules.extend(load_rules(path))
            detector.replace_rules(rules)
        except ConfigError as e:
            logger.error(f"Rule reload failed, keeping the previous rule database: {e}")
            self.telemetry.emit("rule_reload_failed", error=str(e))
            return
        logger.info(f"Rule database reloaded ({len(rules)} rules)")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit(self, method: str, *args):
        """Best-effort audit write. Failures are counted and logged; they never stop the pipeline."""
        if self.storage is None:
            return
        try:
            getattr(self.storage, method)(*args)
        except StorageUnavailableError as e:
            self.telemetry.incr("audit.write_failures")
            self.telemetry.emit("audit_write_failed", error=str(e))
            logger.error(f"Audit write failed: {e}")

    def _record_suppression(self, detection: Detection, reason: str):
        self.suppressions.append({"detection_id": detection.detection_id, "reason": reason})
        self._audit("insert_suppression", detection, reason)

    def _record_dead_letter(self, letter: DeadLetter):
        self._audit("insert_dead_letter", letter.to_dict())

    def status(self) -> dict[str, Any]:
        """Telemetry plus pipeline-level state, for the API."""
        return {
            **self.telemetry.snapshot(),
            "running": self.running,
            "paused": self._paused,
            "config_version": self.config_store.current().version,
            "active_windows": len(self.correlator.active_windows()),
            "open_incidents": len(self.incidents.list_open()),
            "dead_letters": len(self.dispatcher.dead_letters),
        }

"""
Detector Pool - fans each event out to every enabled detector.

Every detector owns a bounded queue and its own worker tasks, so a slow or
broken detector only ever delays (or drops) its own work. Each invocation runs
in a worker thread under a deadline; exceptions and timeouts become
``DetectorFault`` telemetry instead of propagating.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable

from src.threat_engine.cache import BoundedLRU
from src.threat_engine.config import DetectorPoolConfig
from src.threat_engine.detectors.base import Detector, DetectorContext, EntityHistory
from src.threat_engine.errors import DetectorFault
from src.threat_engine.schemas import Detection, SecurityEvent
from src.threat_engine.telemetry import EngineTelemetry
from src.shared.logger import get_logger

logger = get_logger()


@dataclass
class _Job:
    event: SecurityEvent
    context: DetectorContext
    future: asyncio.Future


@dataclass
class _WorkerGroup:
    detector: Detector
    queue: asyncio.Queue
    enabled: bool = True
    tasks: list[asyncio.Task] = field(default_factory=list)


class DetectorPool:
    """Runs registered detectors in isolated, bounded worker groups."""

    def __init__(
        self,
        detectors: Iterable[Detector],
        config: DetectorPoolConfig | None = None,
        telemetry: EngineTelemetry | None = None,
        history: EntityHistory | None = None,
    ):
        """Initialize detector pool.

        Args:
            detectors: Detector instances (anything implementing ``detect``)
            config: Pool configuration (defaults if omitted)
            telemetry: Shared telemetry sink
            history: Rolling per-entity history backing DetectorContext
        """
        self.config = config or DetectorPoolConfig()
        self.telemetry = telemetry or EngineTelemetry(fault_rate_window=self.config.fault_rate_window)
        self.history = history or EntityHistory(
            window_seconds=self.config.context_window_seconds,
            max_events=self.config.context_max_events,
        )
        self._groups: dict[str, _WorkerGroup] = {}
        self._emitted: BoundedLRU[tuple[str, str, str], None] = BoundedLRU(self.config.idempotence_cache_size)
        self._seen_events: BoundedLRU[str, None] = BoundedLRU(self.config.idempotence_cache_size)
        self._running = False

        for detector in detectors:
            self.register(detector)
        logger.info(f"Detector pool initialized with {len(self._groups)} detectors")

    @property
    def detector_ids(self) -> list[str]:
        return list(self._groups)

    def get(self, detector_id: str) -> Detector:
        return self._groups[detector_id].detector

    def is_enabled(self, detector_id: str) -> bool:
        return self._groups[detector_id].enabled

    def register(self, detector: Detector) -> None:
        """Add a detector. Its workers start immediately if the pool is running."""
        if not isinstance(detector, Detector):
            raise TypeError(f"{detector!r} does not implement the detector interface")
        if detector.detector_id in self._groups:
            raise ValueError(f"detector '{detector.detector_id}' already registered")

        group = _WorkerGroup(
            detector=detector,
            queue=asyncio.Queue(maxsize=self.config.queue_size),
            enabled=detector.detector_id not in self.config.disabled_detectors,
        )
        self._groups[detector.detector_id] = group
        if self._running:
            self._spawn(group)

    def set_enabled(self, detector_id: str, enabled: bool) -> None:
        """Enable or disable a detector at runtime."""
        if detector_id not in self._groups:
            raise KeyError(detector_id)
        self._groups[detector_id].enabled = enabled
        logger.info(f"Detector '{detector_id}' {'enabled' if enabled else 'disabled'}")

    def configure(self, config: DetectorPoolConfig) -> None:
        """Apply a new configuration snapshot.

        Timeouts, toggles and history bounds apply immediately; queue sizes and
        worker counts apply to detectors registered afterwards.
        """
        self.config = config
        self.history.configure(config.context_window_seconds, config.context_max_events)
        self._emitted.resize(config.idempotence_cache_size)
        self._seen_events.resize(config.idempotence_cache_size)
        for detector_id, group in self._groups.items():
            group.enabled = detector_id not in config.disabled_detectors

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for group in self._groups.values():
            self._spawn(group)

    async def stop(self) -> None:
        self._running = False
        tasks = [t for g in self._groups.values() for t in g.tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for group in self._groups.values():
            group.tasks.clear()
            # Unblock anyone still waiting on queued jobs
            while not group.queue.empty():
                job = group.queue.get_nowait()
                if not job.future.done():
                    job.future.cancel()

    def _spawn(self, group: _WorkerGroup) -> None:
        for index in range(self.config.workers_per_detector):
            task = asyncio.create_task(
                self._worker(group),
                name=f"detector-{group.detector.detector_id}-{index}",
            )
            group.tasks.append(task)

    async def evaluate(self, event: SecurityEvent) -> list[Detection]:
        """Run every enabled, in-scope detector on ``event``.

        Returns the union of their detections, minus any already emitted for
        the same (detector, event, technique). Re-ingesting an event id that was
        already evaluated returns nothing and leaves detector state untouched.
        """
        if not self._running:
            await self.start()

        if not self._seen_events.add(event.event_id):
            logger.debug(f"Event {event.event_id} already evaluated, skipping")
            self.telemetry.incr("events.duplicate")
            return []

        context = self.history.snapshot(event)
        self.history.record(event)

        loop = asyncio.get_running_loop()
        pending: list[tuple[str, asyncio.Future]] = []
        backlog = 0
        for detector_id, group in self._groups.items():
            if not group.enabled or not group.detector.scope.accepts(event):
                continue
            future = loop.create_future()
            try:
                group.queue.put_nowait(_Job(event=event, context=context, future=future))
            except asyncio.QueueFull:
                self.telemetry.record_backpressure(detector_id, event.event_id)
                logger.warning(f"Detector '{detector_id}' queue full, dropping {event.event_id}")
                continue
            backlog = max(backlog, group.queue.qsize())
            self.telemetry.set_queue_depth(f"detector.{detector_id}", group.queue.qsize())
            pending.append((detector_id, future))

        if not pending:
            return []

        # A job may wait behind the rest of its own queue before it starts
        workers = max(1, self.config.workers_per_detector)
        outer_timeout = self.config.detector_timeout_seconds * (1 + backlog / workers) + 1.0
        done, not_done = await asyncio.wait([f for _, f in pending], timeout=outer_timeout)

        detections: list[Detection] = []
        for detector_id, future in pending:
            if future in not_done:
                future.cancel()
                self.telemetry.record_fault(
                    detector_id, event.event_id, "queued past deadline", timeout=True,
                    threshold=self.config.fault_rate_threshold, min_calls=self.config.fault_rate_min_calls,
                )
                continue
            if future.cancelled():
                continue
            for detection in future.result():
                if self._emitted.add(detection.dedupe_key):
                    detections.append(detection)
                else:
                    self.telemetry.incr("detections.duplicate")

        if detections:
            self.telemetry.incr("detections.emitted", len(detections))
        return detections

    async def _worker(self, group: _WorkerGroup) -> None:
        detector_id = group.detector.detector_id
        while True:
            job: _Job = await group.queue.get()
            try:
                if job.future.done():
                    continue
                try:
                    detections = await self._invoke(group.detector, job)
                except DetectorFault as fault:
                    self.telemetry.record_fault(
                        fault.detector_id,
                        fault.event_id,
                        fault.reason,
                        timeout=isinstance(fault.__cause__, asyncio.TimeoutError),
                        threshold=self.config.fault_rate_threshold,
                        min_calls=self.config.fault_rate_min_calls,
                    )
                    detections = []
                else:
                    self.telemetry.record_invocation(detector_id)
                if not job.future.done():
                    job.future.set_result(detections)
            finally:
                group.queue.task_done()
                self.telemetry.set_queue_depth(f"detector.{detector_id}", group.queue.qsize())

    async def _invoke(self, detector: Detector, job: _Job) -> list[Detection]:
        """Call ``detector.detect`` in a thread, bounded by the configured timeout."""
        timeout = self.config.detector_timeout_seconds
        event_id = job.event.event_id
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(detector.detect, job.event, job.context),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise DetectorFault(detector.detector_id, event_id, f"timed out after {timeout:.2f}s") from e
        except Exception as e:
            raise DetectorFault(detector.detector_id, event_id, f"{type(e).__name__}: {e}") from e

        if not isinstance(result, list) or not all(isinstance(d, Detection) for d in result):
            raise DetectorFault(detector.detector_id, event_id, "returned something other than list[Detection]")
        return result

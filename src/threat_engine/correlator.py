"""
Event Correlator - groups entity-linked detections into attack chains.

Detections enter through a small reordering buffer and are admitted in event
time order. Each admitted detection either joins the best matching active
window or seeds a new one; windows close on inactivity or deadline and become
AttackChains. All time here is event time: ``tick(now)`` advances the clock.
"""

import heapq
import itertools
import threading
from collections import OrderedDict, defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol

from src.threat_engine.config import CorrelatorConfig
from src.threat_engine.errors import CorrelationStateCorruption, StorageUnavailableError
from src.threat_engine.locks import ShardedLocks
from src.threat_engine.patterns import DetectionRateMonitor, TacticLibrary
from src.threat_engine.schemas import AttackChain, Detection
from src.threat_engine.telemetry import EngineTelemetry
from src.threat_engine.windows import CorrelationWindow, tactic_sequence
from src.shared.logger import get_logger

logger = get_logger()


class WindowStore(Protocol):
    """Persistence for window state."""

    def save_window(self, snapshot: dict[str, Any]) -> None:
        ...

    def load_windows(self, active_only: bool = True) -> list[dict[str, Any]]:
        ...


class EventCorrelator:
    """Sliding, entity-pivoted correlation windows."""

    def __init__(
        self,
        config: CorrelatorConfig | None = None,
        library: TacticLibrary | None = None,
        telemetry: EngineTelemetry | None = None,
        store: WindowStore | None = None,
    ):
        """Initialize correlator.

        Args:
            config: Correlator configuration
            library: Tactic pattern library used for scoring and tie-breaks
            telemetry: Shared telemetry sink
            store: Optional window-state persistence
        """
        self.config = config or CorrelatorConfig()
        self.library = library or TacticLibrary()
        self.telemetry = telemetry or EngineTelemetry()
        self.store = store
        self.rate_monitor = DetectionRateMonitor(
            threshold=self.config.rate_threshold,
            span_seconds=self.config.rate_span_seconds,
            max_severity=self.config.rate_max_severity,
            pivot_priority=self.config.pivot_priority,
        )

        self._locks = ShardedLocks(self.config.shard_count)
        self._registry_lock = threading.Lock()
        self._windows: dict[str, CorrelationWindow] = {}
        self._by_entity: dict[str, set[str]] = defaultdict(set)
        self._closed: OrderedDict[str, CorrelationWindow] = OrderedDict()
        self._dirty: set[str] = set()
        self._dirty_lock = threading.Lock()

        self._buffer_lock = threading.Lock()
        self._buffer: list[tuple[datetime, int, Detection]] = []
        self._seq = itertools.count()
        self.watermark: datetime | None = None  # newest event time submitted
        self.released: datetime | None = None  # newest event time admitted from the buffer
        self.clock: datetime | None = None

        logger.info(
            f"Event correlator initialized (max_gap={self.config.max_gap_seconds:g}s, "
            f"window={self.config.window_duration_seconds:g}s, shards={self._locks.shard_count})"
        )

    def configure(self, config: CorrelatorConfig) -> None:
        """Apply a new configuration snapshot. The shard count is fixed for the process lifetime."""
        if config.shard_count != self._locks.shard_count:
            logger.warning("correlator.shard_count changes take effect after restart")
        self.config = config
        self.rate_monitor.configure(
            config.rate_threshold, config.rate_span_seconds, config.rate_max_severity, config.pivot_priority
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, detection: Detection) -> list[AttackChain]:
        """Offer a detection; returns any chains closed or revised as a result.

        Raises StorageUnavailableError (before touching any state) while window
        persistence is failing; the caller should hold the detection and retry.
        """
        self.retry_persistence()
        config = self.config

        with self._buffer_lock:
            t = detection.event_time
            if self.released is not None and t < self.released:
                detection.late_arrival = True
                ready = [detection]
            else:
                heapq.heappush(self._buffer, (t, next(self._seq), detection))
                if self.watermark is None or t > self.watermark:
                    self.watermark = t
                ready = self._release(self.watermark - timedelta(seconds=config.reorder_delay_seconds))
            self._advance_clock(self.watermark)

        if detection.late_arrival:
            self.telemetry.incr("detections.late")
            logger.debug(f"Late arrival {detection.detection_id} (event time {detection.event_time.isoformat()})")
        return self._admit_all(ready)

    def tick(self, now: datetime) -> list[AttackChain]:
        """Advance event time to ``now``: release buffered detections and close expired windows."""
        self.retry_persistence()
        with self._buffer_lock:
            self._advance_clock(now)
            ready = self._release(now - timedelta(seconds=self.config.reorder_delay_seconds))
        chains = self._admit_all(ready)
        chains.extend(self._sweep(now))
        self._prune_closed(now)
        self.rate_monitor.prune(now)
        return chains

    def flush(self) -> list[AttackChain]:
        """Admit everything buffered and close every active window."""
        self.retry_persistence()
        with self._buffer_lock:
            ready = self._release(None)
            now = self.clock or self.watermark
        chains = self._admit_all(ready)
        if now is None:
            return chains
        with self._registry_lock:
            windows = list(self._windows.values())
        for window in windows:
            chain = self._close_locked(window, max(now, window.last_activity), force=True)
            if chain is not None:
                chains.append(chain)
        return chains

    def active_windows(self) -> list[CorrelationWindow]:
        with self._registry_lock:
            return list(self._windows.values())

    def buffered(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def restore(self) -> int:
        """Reload active windows from the store after a restart."""
        if self.store is None:
            return 0
        snapshots = self.store.load_windows(active_only=True)
        for snapshot in snapshots:
            window = CorrelationWindow.from_snapshot(snapshot)
            self._register(window)
            if self.clock is None or window.last_activity > self.clock:
                self.clock = window.last_activity
        if snapshots:
            logger.info(f"Restored {len(snapshots)} correlation windows")
        return len(snapshots)

    def retry_persistence(self) -> None:
        """Persist windows whose last save failed. Raises StorageUnavailableError while storage is down."""
        with self._dirty_lock:
            pending = sorted(self._dirty)
        if not pending or self.store is None:
            return
        for window_id in pending:
            with self._registry_lock:
                window = self._windows.get(window_id) or self._closed.get(window_id)
            if window is not None:
                with window.lock:
                    self.store.save_window(window.snapshot())
            with self._dirty_lock:
                self._dirty.discard(window_id)
        logger.success("Correlation window persistence recovered")

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    def _advance_clock(self, now: datetime | None) -> None:
        if now is not None and (self.clock is None or now > self.clock):
            self.clock = now

    def _release(self, limit: datetime | None) -> list[Detection]:
        """Pop buffered detections with event time <= limit (all when limit is None)."""
        ready = []
        while self._buffer and (limit is None or self._buffer[0][0] <= limit):
            t, _, detection = heapq.heappop(self._buffer)
            ready.append(detection)
            if self.released is None or t > self.released:
                self.released = t
        return ready

    def _admit_all(self, ready: Iterable[Detection]) -> list[AttackChain]:
        chains: list[AttackChain] = []
        for detection in ready:
            chains.extend(self._admit(detection))
        return chains

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def _windows_for(self, keys: Iterable[str]) -> list[CorrelationWindow]:
        with self._registry_lock:
            ids = set().union(*(self._by_entity.get(k, ()) for k in keys))
            return [self._windows[i] for i in sorted(ids) if i in self._windows]

    def _register(self, window: CorrelationWindow) -> None:
        with self._registry_lock:
            self._windows[window.window_id] = window
            for key in window.entities:
                self._by_entity[key].add(window.window_id)

    def _index(self, window: CorrelationWindow, keys: Iterable[str]) -> None:
        with self._registry_lock:
            for key in keys:
                self._by_entity[key].add(window.window_id)

    def _unregister(self, window: CorrelationWindow) -> None:
        with self._registry_lock:
            self._windows.pop(window.window_id, None)
            for key in window.entities:
                ids = self._by_entity.get(key)
                if ids is not None:
                    ids.discard(window.window_id)
                    if not ids:
                        del self._by_entity[key]
            self._closed[window.window_id] = window

    def _best_window(self, detection: Detection, candidates: list[CorrelationWindow]) -> CorrelationWindow | None:
        """Pattern fit first, then most shared entities, then most recent activity."""
        config = self.config
        best = None
        best_rank = None
        for window in candidates:
            with window.lock:
                if not window.accepts(detection, config):
                    continue
                fit = self.library.fit(tactic_sequence(window.members), detection.technique.tactic)
                rank = (fit, len(window.common & detection.entity_keys), window.last_activity, window.window_id)
            if best_rank is None or rank > best_rank:
                best, best_rank = window, rank
        return best

    def _reopen_for(self, detection: Detection) -> CorrelationWindow | None:
        """A recently closed window that would have absorbed this late detection."""
        config = self.config
        grace = timedelta(seconds=config.late_grace_seconds)
        now = self.clock or detection.event_time
        with self._registry_lock:
            recent = [
                w for w in reversed(self._closed.values())
                if not w.degraded and w.closed_at is not None and now - w.closed_at <= grace
            ]
        for window in recent:
            with window.lock:
                if window.accepts(detection, config, allow_closed=True):
                    with self._registry_lock:
                        self._closed.pop(window.window_id, None)
                    window.reopen()
                    self._register(window)
                    logger.info(f"Reopened window {window.window_id} for late {detection.detection_id} "
                                f"(revision {window.revision})")
                    return window
        return None

    def _admit(self, detection: Detection) -> list[AttackChain]:
        config = self.config
        chains: list[AttackChain] = []
        keys = detection.entity_keys
        reopened = False

        with self._locks.hold(keys):
            candidates = self._windows_for(keys)
            if not detection.late_arrival:
                # Windows this detection proves have gone quiet
                for window in candidates:
                    with window.lock:
                        if window.should_close(detection.event_time, config):
                            chain = self._close(window, detection.event_time)
                            if chain is not None:
                                chains.append(chain)

            window = self._best_window(detection, [w for w in candidates if w.is_active])
            if window is None and detection.late_arrival:
                window = self._reopen_for(detection)
                reopened = window is not None

            if window is None:
                window = CorrelationWindow.open(detection, config)
                self._register(window)
                self.telemetry.incr("windows.opened")
            else:
                with window.lock:
                    new_keys = keys - window.entities
                    if window.absorb(detection, config):
                        self.telemetry.incr("windows.extended")
                    self._index(window, new_keys)
                    try:
                        window.validate()
                    except CorrelationStateCorruption as e:
                        chain = self._close_degraded(window, e)
                        if chain is not None:
                            chains.append(chain)
                        window = None

            if window is not None:
                with window.lock:
                    self._persist(window)
                    if reopened and self.clock is not None and window.should_close(self.clock, config):
                        chain = self._close(window, self.clock)
                        if chain is not None:
                            chains.append(chain)

        derived = self.rate_monitor.observe(detection)
        if derived is not None:
            self.telemetry.incr("detections.derived")
            chains.extend(self._admit(derived))
        return chains

    def _sweep(self, now: datetime) -> list[AttackChain]:
        chains = []
        for window in self.active_windows():
            chain = self._close_locked(window, now)
            if chain is not None:
                chains.append(chain)
        return chains

    def _close_locked(self, window: CorrelationWindow, now: datetime, force: bool = False) -> AttackChain | None:
        """Take the window's entity shards, then its lock, and close it if due."""
        while True:
            keys = set(window.entities)
            with self._locks.hold(keys):
                with window.lock:
                    if window.entities != keys:
                        # Grew while we were acquiring; retry with the new key set
                        continue
                    if not window.is_active:
                        return None
                    if force or window.should_close(now, self.config):
                        return self._close(window, now)
                    return None

    def _close(self, window: CorrelationWindow, now: datetime) -> AttackChain | None:
        """Close ``window`` (caller holds its lock) and build its chain."""
        try:
            window.validate()
        except CorrelationStateCorruption as e:
            return self._close_degraded(window, e)

        window.close(now)
        self._unregister(window)
        chain = window.to_chain(self.library, self.config)
        self._persist(window)
        self.telemetry.incr("chains.emitted")
        logger.debug(
            f"Window {window.window_id} closed -> {chain.chain_id} r{chain.revision} "
            f"({chain.length} detections, pivot {chain.pivot}, confidence {chain.correlation_confidence:.2f})"
        )
        return chain

    def _close_degraded(self, window: CorrelationWindow, error: CorrelationStateCorruption) -> AttackChain | None:
        logger.error(f"Correlation state corruption: {error}")
        self.telemetry.emit("correlation_corruption", window_id=window.window_id, detail=error.detail)
        window.degraded = True
        window.close(self.clock or window.last_activity)
        self._unregister(window)
        self._persist(window)
        if not window.members:
            return None
        self.telemetry.incr("chains.degraded")
        return window.to_chain(self.library, self.config)

    def _prune_closed(self, now: datetime) -> None:
        grace = timedelta(seconds=self.config.late_grace_seconds)
        with self._registry_lock:
            for window_id in list(self._closed):
                window = self._closed[window_id]
                if window.closed_at is None or now - window.closed_at > grace:
                    with self._dirty_lock:
                        if window_id in self._dirty:
                            continue
                    del self._closed[window_id]

    def _persist(self, window: CorrelationWindow) -> None:
        if self.store is None:
            return
        try:
            self.store.save_window(window.snapshot())
        except StorageUnavailableError as e:
            with self._dirty_lock:
                first = window.window_id not in self._dirty
                self._dirty.add(window.window_id)
            if first:
                logger.error(f"Window persistence failed, correlation will pause: {e}")
                self.telemetry.emit("storage_unavailable", window_id=window.window_id, error=str(e))

"""
Configuration for the threat engine.

Process-level values (paths, credentials) come from ``src.shared.config``.
Detection and correlation thresholds live in flat, per-component frozen
dataclasses composed into ``EngineConfig``. A ``ConfigStore`` holds the live
``EngineConfig`` and swaps it atomically on reload; components read one
snapshot per operation and never mutate it.
"""

import threading
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable

import yaml

from src.shared.config import settings
from src.threat_engine.errors import ConfigError
from src.threat_engine.schemas import Severity
from src.shared.logger import get_logger

logger = get_logger()


# Database path
ENGINE_DB_PATH = Path(settings.engine_db_path)

# Retention policy (in days)
RETENTION_POLICY = {
    "detections": 30,
    "chains": 90,
    "suppressions": 30,
    "dead_letters": 90,
    "window_snapshots": 7,
}

# Export schema version, bumped on any breaking change to exported records
EXPORT_SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class NormalizerConfig:
    max_clock_skew_seconds: float = 300.0


@dataclass(frozen=True)
class DetectorPoolConfig:
    detector_timeout_seconds: float = 2.0
    queue_size: int = 1_000
    workers_per_detector: int = 2

    # Rolling per-entity history exposed through DetectorContext
    context_window_seconds: float = 600.0
    context_max_events: int = 256

    idempotence_cache_size: int = 100_000

    # Operator alert when a detector's fault ratio over the last N calls exceeds this
    fault_rate_threshold: float = 0.5
    fault_rate_window: int = 50
    fault_rate_min_calls: int = 10

    disabled_detectors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScorerConfig:
    confidence_floor: float = 0.2
    detector_weight: float = 0.7
    context_weight: float = 0.3

    malicious_boost: float = 0.3
    suspicious_boost: float = 0.15
    allowlist_penalty: float = 0.5
    criticality_boost: float = 0.2

    lookup_timeout_seconds: float = settings.intel_timeout_seconds
    dedupe_window_seconds: float = 300.0
    dedupe_cache_size: int = 10_000

    # Entity roles worth an intelligence lookup
    enrich_roles: tuple[str, ...] = ("src_ip", "dst_ip", "ip", "domain", "host", "user", "sender", "url")


@dataclass(frozen=True)
class CorrelatorConfig:
    max_gap_seconds: float = 300.0
    window_duration_seconds: float = 600.0
    extend_threshold_seconds: float = 60.0
    extend_by_seconds: float = 300.0
    max_window_duration_seconds: float = 3_600.0

    reorder_delay_seconds: float = 5.0
    late_grace_seconds: float = 120.0

    shard_count: int = 16

    # Statistical correlation: many low-severity detections for one entity
    rate_threshold: int = 5
    rate_span_seconds: float = 120.0
    rate_max_severity: Severity = Severity.LOW

    # correlation_confidence weights
    pattern_weight: float = 0.5
    temporal_weight: float = 0.25
    entity_weight: float = 0.25

    # Preferred pivot roles, most preferred first
    pivot_priority: tuple[str, ...] = (
        "host", "user", "session", "process", "src_ip", "ip", "dst_ip", "service", "sender", "recipient",
    )


@dataclass(frozen=True)
class IncidentConfig:
    min_severity: Severity = Severity.HIGH
    min_confidence: float = 0.6
    recency_window_seconds: float = 3_600.0

    # Single detections at or above this severity become incidents directly
    detection_fast_path_severity: Severity = Severity.CRITICAL


@dataclass(frozen=True)
class DispatchConfig:
    max_attempts: int = 4
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    call_timeout_seconds: float = 5.0
    dead_letter_capacity: int = 1_000

    # Severity -> sink names
    routes: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        "low": (),
        "medium": ("log",),
        "high": ("log", "webhook"),
        "critical": ("log", "webhook", "email"),
    })
    remediation_min_severity: Severity = Severity.CRITICAL


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration, composed at startup."""

    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    detectors: DetectorPoolConfig = field(default_factory=DetectorPoolConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    correlator: CorrelatorConfig = field(default_factory=CorrelatorConfig)
    incidents: IncidentConfig = field(default_factory=IncidentConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)

    # YAML rule databases loaded by the rule detector
    rule_files: tuple[str, ...] = ()
    version: int = 0

    def validate(self) -> "EngineConfig":
        """Raise ConfigError if thresholds are inconsistent."""
        c = self.correlator
        if c.max_gap_seconds <= 0:
            raise ConfigError("correlator.max_gap_seconds must be positive")
        if c.window_duration_seconds < c.max_gap_seconds:
            raise ConfigError("correlator.window_duration_seconds must be >= max_gap_seconds")
        if c.max_window_duration_seconds < c.window_duration_seconds:
            raise ConfigError("correlator.max_window_duration_seconds must be >= window_duration_seconds")
        if c.extend_threshold_seconds < 0 or c.extend_by_seconds < 0:
            raise ConfigError("correlator extension values must not be negative")
        if c.pattern_weight + c.temporal_weight + c.entity_weight <= 0:
            raise ConfigError("correlator confidence weights must not all be zero")
        if c.shard_count < 1:
            raise ConfigError("correlator.shard_count must be >= 1")
        if not 0.0 <= self.scorer.confidence_floor <= 1.0:
            raise ConfigError("scorer.confidence_floor must be within [0, 1]")
        if not 0.0 <= self.incidents.min_confidence <= 1.0:
            raise ConfigError("incidents.min_confidence must be within [0, 1]")
        if self.dispatch.max_attempts < 1:
            raise ConfigError("dispatch.max_attempts must be >= 1")
        for severity in self.dispatch.routes:
            if severity not in {s.value for s in Severity}:
                raise ConfigError(f"dispatch.routes has unknown severity '{severity}'")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_SECTIONS = {
    "normalizer": NormalizerConfig,
    "detectors": DetectorPoolConfig,
    "scorer": ScorerConfig,
    "correlator": CorrelatorConfig,
    "incidents": IncidentConfig,
    "dispatch": DispatchConfig,
}


def _build_section(cls: type, values: dict[str, Any], section: str):
    known = {f.name: f for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in (values or {}).items():
        if key not in known:
            raise ConfigError(f"unknown setting '{section}.{key}'")
        default = getattr(cls(), key)
        if isinstance(default, Severity):
            try:
                value = Severity(value)
            except ValueError as e:
                raise ConfigError(f"{section}.{key}: {e}") from e
        elif isinstance(default, tuple):
            value = tuple(value)
        elif key == "routes":
            value = {str(sev): tuple(names or ()) for sev, names in value.items()}
        kwargs[key] = value
    return cls(**kwargs)


def engine_config_from_dict(data: dict[str, Any], version: int = 0) -> EngineConfig:
    """Build and validate an EngineConfig from a plain mapping."""
    if not isinstance(data, dict):
        raise ConfigError("engine configuration must be a mapping")

    unknown = set(data) - set(_SECTIONS) - {"rule_files"}
    if unknown:
        raise ConfigError(f"unknown configuration sections: {sorted(unknown)}")

    sections = {
        name: _build_section(cls, data.get(name) or {}, name)
        for name, cls in _SECTIONS.items()
    }
    config = EngineConfig(
        **sections,
        rule_files=tuple(data.get("rule_files") or ()),
        version=version,
    )
    return config.validate()


def load_engine_config(path: str | Path, version: int = 0) -> EngineConfig:
    """Load an EngineConfig from a YAML file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot load engine config {path}: {e}") from e
    return engine_config_from_dict(data, version=version)


class ConfigStore:
    """Holds the live EngineConfig and swaps it atomically on reload."""

    def __init__(self, config: EngineConfig | None = None, path: str | Path | None = None):
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        self._listeners: list[Callable[[EngineConfig], None]] = []

        if config is None and self._path is not None:
            config = load_engine_config(self._path)
        self._config = (config or EngineConfig()).validate()

    def current(self) -> EngineConfig:
        """Return the current snapshot. Callers must not hold it across operations."""
        return self._config

    def subscribe(self, listener: Callable[[EngineConfig], None]) -> None:
        """Register a callback invoked after every successful swap."""
        with self._lock:
            self._listeners.append(listener)

    def swap(self, new_config: EngineConfig) -> EngineConfig:
        """Atomically replace the configuration and notify listeners."""
        new_config.validate()
        with self._lock:
            new_config = replace(new_config, version=self._config.version + 1)
            self._config = new_config
            listeners = list(self._listeners)

        logger.info(f"Engine configuration swapped (version {new_config.version})")
        for listener in listeners:
            listener(new_config)
        return new_config

    def update(self, section: str, **changes: Any) -> EngineConfig:
        """Swap in a copy of the current config with one section changed."""
        if section not in _SECTIONS:
            raise ConfigError(f"unknown configuration section '{section}'")
        current = self.current()
        try:
            new_section = replace(getattr(current, section), **changes)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        return self.swap(replace(current, **{section: new_section}))

    def reload(self, path: str | Path | None = None) -> EngineConfig:
        """Reload from YAML. On error the previous configuration stays live."""
        target = Path(path) if path else self._path
        if target is None:
            raise ConfigError("no configuration file to reload from")
        new_config = load_engine_config(target)
        self._path = target
        return self.swap(new_config)

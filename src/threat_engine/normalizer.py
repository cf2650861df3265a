"""
Event Normalizer - converts source-specific payloads into SecurityEvents.

Malformed payloads raise NormalizationError; they are never coerced into a
plausible-looking event because correlation depends on event fidelity.
"""

import re
from datetime import datetime, timezone
from typing import Any, Mapping

from src.threat_engine.config import NormalizerConfig
from src.threat_engine.errors import NormalizationError
from src.threat_engine.schemas import EventSource, SecurityEvent, new_id, utcnow
from src.shared.logger import get_logger

logger = get_logger()


TIMESTAMP_FIELDS = ("timestamp", "@timestamp", "event_time", "time", "ts", "date")
ID_FIELDS = ("event_id", "id", "uid")

# Epoch values above this are milliseconds (year 33658 in seconds)
_EPOCH_MS_THRESHOLD = 1e12

_TIMESTAMP_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d/%b/%Y:%H:%M:%S %z",  # Apache access log
]

# Entity role -> accepted payload aliases, per source
ENTITY_FIELDS: dict[EventSource, dict[str, tuple[str, ...]]] = {
    EventSource.NETWORK: {
        "host": ("host", "hostname", "device"),
        "src_ip": ("src_ip", "source_ip", "srcaddr", "client_ip"),
        "dst_ip": ("dst_ip", "dest_ip", "destination_ip", "dstaddr"),
        "user": ("user", "username"),
    },
    EventSource.ENDPOINT: {
        "host": ("host", "hostname", "computer", "device"),
        "user": ("user", "username", "account"),
        "process": ("process", "process_name", "image"),
        "file": ("file", "file_path", "target_filename"),
    },
    EventSource.IDENTITY: {
        "user": ("user", "username", "account", "principal"),
        "host": ("host", "hostname", "workstation", "target_host"),
        "src_ip": ("src_ip", "source_ip", "client_ip", "ip"),
        "session": ("session", "session_id", "logon_id"),
    },
    EventSource.APPLICATION: {
        "service": ("service", "app", "application"),
        "user": ("user", "username", "account"),
        "host": ("host", "hostname"),
        "src_ip": ("src_ip", "client_ip", "remote_addr"),
        "session": ("session", "session_id"),
    },
    EventSource.EMAIL: {
        "sender": ("sender", "from", "mail_from"),
        "recipient": ("recipient", "to", "rcpt_to"),
        "user": ("user", "mailbox"),
        "domain": ("sender_domain", "domain"),
    },
}

# Attribute name -> (aliases, expected type)
ATTRIBUTE_FIELDS: dict[EventSource, dict[str, tuple[tuple[str, ...], type | tuple[type, ...]]]] = {
    EventSource.NETWORK: {
        "src_port": (("src_port", "source_port", "sport"), int),
        "dst_port": (("dst_port", "dest_port", "dport"), int),
        "protocol": (("protocol", "proto"), str),
        "bytes_in": (("bytes_in", "bytes_received"), (int, float)),
        "bytes_out": (("bytes_out", "bytes_sent"), (int, float)),
        "action": (("action", "verdict"), str),
    },
    EventSource.ENDPOINT: {
        "pid": (("pid", "process_id"), int),
        "parent_process": (("parent_process", "parent_image"), str),
        "command_line": (("command_line", "cmdline"), str),
        "action": (("action", "event_type"), str),
        "hash": (("hash", "sha256", "md5"), str),
    },
    EventSource.IDENTITY: {
        "outcome": (("outcome", "result", "status"), str),
        "auth_method": (("auth_method", "logon_type", "method"), (str, int)),
        "action": (("action", "event_type"), str),
        "privileged": (("privileged", "is_admin"), bool),
    },
    EventSource.APPLICATION: {
        "action": (("action", "operation", "method"), str),
        "status_code": (("status_code", "status"), int),
        "path": (("path", "url", "uri"), str),
        "bytes_out": (("bytes_out", "response_bytes"), (int, float)),
    },
    EventSource.EMAIL: {
        "subject": (("subject",), str),
        "attachment": (("attachment", "attachment_name"), str),
        "url": (("url", "link"), str),
        "verdict": (("verdict", "spam_verdict"), str),
    },
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601, common log formats and epoch seconds/milliseconds to aware UTC."""
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if re.fullmatch(r"\d+(\.\d+)?", text):
            return parse_timestamp(float(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            dt = None
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    dt = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if dt is None:
                return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class EventNormalizer:
    """Turns raw payloads into canonical SecurityEvents."""

    def __init__(self, config: NormalizerConfig | None = None):
        self.config = config or NormalizerConfig()

    def normalize(
        self,
        raw_payload: Any,
        source_type: EventSource | str,
        ingested_at: datetime | None = None,
    ) -> SecurityEvent:
        """Normalize one payload.

        Args:
            raw_payload: Source-specific mapping
            source_type: One of the EventSource values
            ingested_at: Ingestion time (defaults to now)

        Returns:
            The canonical SecurityEvent

        Raises:
            NormalizationError: schema_mismatch, missing_required_field or unparseable_timestamp
        """
        source = self._parse_source(source_type, raw_payload)

        if not isinstance(raw_payload, Mapping):
            raise NormalizationError(
                NormalizationError.SCHEMA_MISMATCH,
                f"payload must be a mapping, got {type(raw_payload).__name__}",
                raw_payload,
            )

        timestamp = self._extract_timestamp(raw_payload)
        entities = self._extract_entities(raw_payload, source)
        attributes = self._extract_attributes(raw_payload, source)

        ingested_at = ingested_at or utcnow()
        skew = (ingested_at - timestamp).total_seconds()
        if abs(skew) > self.config.max_clock_skew_seconds:
            # Both clocks are kept; correlation runs on event time
            attributes["clock_skew_seconds"] = round(skew, 3)

        event_id = self._extract_id(raw_payload) or new_id("evt")

        return SecurityEvent(
            event_id=event_id,
            timestamp=timestamp,
            source=source,
            entities=entities,
            attributes=attributes,
            raw=raw_payload,
            ingested_at=ingested_at,
        )

    def try_normalize(
        self,
        raw_payload: Any,
        source_type: EventSource | str,
        ingested_at: datetime | None = None,
    ) -> SecurityEvent | None:
        """Normalize, or log and drop the payload on NormalizationError."""
        try:
            return self.normalize(raw_payload, source_type, ingested_at)
        except NormalizationError as e:
            logger.warning(f"Dropping malformed {source_type} event ({e.reason}): {e.detail}")
            return None

    def _parse_source(self, source_type: EventSource | str, payload: Any) -> EventSource:
        try:
            return EventSource(source_type)
        except ValueError:
            raise NormalizationError(
                NormalizationError.SCHEMA_MISMATCH,
                f"unknown source type '{source_type}'",
                payload,
            ) from None

    def _extract_id(self, payload: Mapping[str, Any]) -> str | None:
        for name in ID_FIELDS:
            value = payload.get(name)
            if value is None:
                continue
            if not isinstance(value, (str, int)) or isinstance(value, bool):
                raise NormalizationError(
                    NormalizationError.SCHEMA_MISMATCH, f"'{name}' must be a string or integer", payload
                )
            return str(value)
        return None

    def _extract_timestamp(self, payload: Mapping[str, Any]) -> datetime:
        for name in TIMESTAMP_FIELDS:
            if name in payload and payload[name] not in (None, ""):
                parsed = parse_timestamp(payload[name])
                if parsed is None:
                    raise NormalizationError(
                        NormalizationError.UNPARSEABLE_TIMESTAMP,
                        f"cannot parse {name}={payload[name]!r}",
                        payload,
                    )
                return parsed
        raise NormalizationError(
            NormalizationError.MISSING_REQUIRED_FIELD, "no timestamp field present", payload
        )

    def _extract_entities(self, payload: Mapping[str, Any], source: EventSource) -> dict[str, str]:
        entities: dict[str, str] = {}

        # An explicit "entities" block wins over field aliases
        explicit = payload.get("entities")
        if explicit is not None:
            if not isinstance(explicit, Mapping):
                raise NormalizationError(
                    NormalizationError.SCHEMA_MISMATCH, "'entities' must be a mapping", payload
                )
            for role, value in explicit.items():
                entities[str(role)] = self._entity_value(role, value, payload)

        for role, aliases in ENTITY_FIELDS[source].items():
            if role in entities:
                continue
            for alias in aliases:
                value = payload.get(alias)
                if value not in (None, ""):
                    entities[role] = self._entity_value(alias, value, payload)
                    break

        if not entities:
            raise NormalizationError(
                NormalizationError.MISSING_REQUIRED_FIELD,
                f"no entity fields for {source.value} event",
                payload,
            )
        return entities

    def _entity_value(self, name: Any, value: Any, payload: Mapping[str, Any]) -> str:
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise NormalizationError(
                NormalizationError.SCHEMA_MISMATCH,
                f"entity '{name}' must be a string or integer, got {type(value).__name__}",
                payload,
            )
        text = str(value).strip()
        if not text:
            raise NormalizationError(NormalizationError.SCHEMA_MISMATCH, f"entity '{name}' is empty", payload)
        return text.lower() if isinstance(value, str) and "@" in text else text

    def _extract_attributes(self, payload: Mapping[str, Any], source: EventSource) -> dict[str, Any]:
        attributes: dict[str, Any] = {}

        extra = payload.get("attributes")
        if extra is not None:
            if not isinstance(extra, Mapping):
                raise NormalizationError(
                    NormalizationError.SCHEMA_MISMATCH, "'attributes' must be a mapping", payload
                )
            attributes.update(extra)

        for name, (aliases, expected) in ATTRIBUTE_FIELDS[source].items():
            if name in attributes:
                continue
            for alias in aliases:
                if alias not in payload or payload[alias] is None:
                    continue
                value = payload[alias]
                if isinstance(value, bool) and expected is not bool:
                    raise NormalizationError(
                        NormalizationError.SCHEMA_MISMATCH, f"'{alias}' must not be a boolean", payload
                    )
                if not isinstance(value, expected):
                    raise NormalizationError(
                        NormalizationError.SCHEMA_MISMATCH,
                        f"'{alias}' has type {type(value).__name__}",
                        payload,
                    )
                attributes[name] = value
                break

        return attributes

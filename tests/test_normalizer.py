"""
Tests for the event normalizer.
"""

from datetime import datetime, timezone

import pytest

from src.threat_engine.errors import NormalizationError
from src.threat_engine.normalizer import EventNormalizer, parse_timestamp
from src.threat_engine.schemas import EventSource


@pytest.fixture
def normalizer():
    return EventNormalizer()


NOW = datetime(2026, 1, 5, 10, 0, 5, tzinfo=timezone.utc)


class TestParseTimestamp:
    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2026-01-05T10:00:00Z") == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        parsed = parse_timestamp("2026-01-05T12:00:00+02:00")
        assert parsed == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_naive_values_are_utc(self):
        assert parse_timestamp("2026-01-05 10:00:00").tzinfo == timezone.utc

    def test_epoch_seconds_and_milliseconds(self):
        seconds = parse_timestamp(1767607200)
        millis = parse_timestamp(1767607200000)
        assert seconds == millis == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_apache_format(self):
        parsed = parse_timestamp("05/Jan/2026:10:00:00 +0000")
        assert parsed == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["yesterday", "", None, True, {"t": 1}])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestNormalize:
    def test_identity_event(self, normalizer):
        event = normalizer.normalize(
            {
                "event_id": "e-1",
                "timestamp": "2026-01-05T10:00:00Z",
                "username": "alice",
                "workstation": "ws-01",
                "client_ip": "10.0.0.5",
                "result": "failure",
            },
            "identity",
            ingested_at=NOW,
        )
        assert event.event_id == "e-1"
        assert event.source == EventSource.IDENTITY
        assert dict(event.entities) == {"user": "alice", "host": "ws-01", "src_ip": "10.0.0.5"}
        assert event.attributes["outcome"] == "failure"
        assert event.entity_keys == {"user:alice", "host:ws-01", "src_ip:10.0.0.5"}

    def test_explicit_entities_win_over_aliases(self, normalizer):
        event = normalizer.normalize(
            {"ts": 1767607200, "user": "bob", "entities": {"user": "alice", "tenant": "acme"}},
            EventSource.APPLICATION,
            ingested_at=NOW,
        )
        assert event.entities["user"] == "alice"
        assert event.entities["tenant"] == "acme"

    def test_email_addresses_are_lowercased(self, normalizer):
        event = normalizer.normalize(
            {"timestamp": "2026-01-05T10:00:00Z", "from": "Mallory@Evil.Example", "to": "alice@corp.example"},
            "email",
            ingested_at=NOW,
        )
        assert event.entities["sender"] == "mallory@evil.example"

    def test_generates_id_when_missing(self, normalizer):
        event = normalizer.normalize(
            {"timestamp": "2026-01-05T10:00:00Z", "host": "ws-01"}, "endpoint", ingested_at=NOW
        )
        assert event.event_id.startswith("evt-")

    def test_event_is_immutable(self, normalizer):
        event = normalizer.normalize(
            {"timestamp": "2026-01-05T10:00:00Z", "host": "ws-01"}, "endpoint", ingested_at=NOW
        )
        with pytest.raises(TypeError):
            event.entities["host"] = "other"

    def test_clock_skew_is_recorded_not_corrected(self, normalizer):
        event = normalizer.normalize(
            {"timestamp": "2026-01-05T09:00:00Z", "host": "ws-01"}, "endpoint", ingested_at=NOW
        )
        assert event.timestamp == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        assert event.attributes["clock_skew_seconds"] == pytest.approx(3605.0)

    def test_small_skew_is_not_flagged(self, normalizer):
        event = normalizer.normalize(
            {"timestamp": "2026-01-05T10:00:00Z", "host": "ws-01"}, "endpoint", ingested_at=NOW
        )
        assert "clock_skew_seconds" not in event.attributes


class TestMalformed:
    def test_missing_timestamp(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize({"user": "bob", "outcome": "success"}, "identity")
        assert excinfo.value.reason == NormalizationError.MISSING_REQUIRED_FIELD

    def test_unparseable_timestamp(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize({"timestamp": "not a time", "user": "bob"}, "identity")
        assert excinfo.value.reason == NormalizationError.UNPARSEABLE_TIMESTAMP

    def test_no_entities(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize({"timestamp": "2026-01-05T10:00:00Z", "outcome": "success"}, "identity")
        assert excinfo.value.reason == NormalizationError.MISSING_REQUIRED_FIELD

    def test_unknown_source(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize({"timestamp": "2026-01-05T10:00:00Z", "user": "bob"}, "carrier-pigeon")
        assert excinfo.value.reason == NormalizationError.SCHEMA_MISMATCH

    def test_wrong_attribute_type_is_rejected(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize(
                {"timestamp": "2026-01-05T10:00:00Z", "host": "fw-1", "dst_port": "443"}, "network"
            )
        assert excinfo.value.reason == NormalizationError.SCHEMA_MISMATCH

    def test_non_mapping_payload(self, normalizer):
        with pytest.raises(NormalizationError):
            normalizer.normalize(["not", "a", "dict"], "network")

    def test_try_normalize_drops(self, normalizer):
        assert normalizer.try_normalize({"user": "bob"}, "identity") is None

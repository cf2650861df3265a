"""
Tests for the incident manager.
"""

import pytest

from src.threat_engine.config import IncidentConfig
from src.threat_engine.errors import IncidentNotFound, InvalidTransition
from src.threat_engine.incidents import IncidentManager, chain_from_detection
from src.threat_engine.schemas import AttackChain, DecisionKind, IncidentStatus, Severity, new_id

from tests.conftest import at, make_detection


def chain(
    severity=Severity.HIGH,
    confidence=0.85,
    entities=("user:alice", "src_ip:10.0.0.5"),
    techniques=("T1110", "T1021"),
    start=0,
    end=25,
    chain_id=None,
    revision=0,
):
    return AttackChain(
        chain_id=chain_id or new_id("chain"),
        detection_refs=[new_id("det"), new_id("det")],
        entities=set(entities),
        pivot=sorted(entities)[0],
        tactic_sequence=["credential-access", "lateral-movement"],
        techniques=set(techniques),
        window_start=at(start),
        window_end=at(end),
        correlation_confidence=confidence,
        severity=severity,
        revision=revision,
    )


@pytest.fixture
def manager():
    return IncidentManager()


class TestPromotion:
    def test_high_severity_chain_creates_incident(self, manager):
        source = chain()
        decision = manager.ingest(source)

        assert decision.kind == DecisionKind.CREATE_NEW
        incident = manager.get(decision.incident_id)
        assert incident.status == IncidentStatus.OPEN
        assert incident.severity == Severity.HIGH
        assert incident.source_chain_refs == [source.chain_id]
        assert incident.title == "credential-access -> lateral-movement on src_ip:10.0.0.5"
        assert [e.kind for e in incident.timeline] == ["created"]

    def test_confident_medium_chain_qualifies(self, manager):
        assert manager.ingest(chain(severity=Severity.MEDIUM, confidence=0.7)).kind == DecisionKind.CREATE_NEW

    def test_weak_chain_is_discarded_with_audit(self, manager):
        weak = chain(severity=Severity.MEDIUM, confidence=0.0, entities=("host:kiosk-7",), techniques=("T1543.003",))
        decision = manager.ingest(weak)

        assert decision.kind == DecisionKind.DISCARD
        assert "severity medium < high" in decision.reason
        assert len(manager) == 0
        (audit,) = manager.discarded
        assert audit.chain.chain_id == weak.chain_id
        assert audit.to_dict()["discard_reason"] == decision.reason

    def test_thresholds_come_from_config(self):
        manager = IncidentManager(IncidentConfig(min_severity=Severity.MEDIUM))
        assert manager.ingest(chain(severity=Severity.MEDIUM, confidence=0.1)).kind == DecisionKind.CREATE_NEW


class TestMerge:
    def test_chains_sharing_host_and_technique_merge(self, manager):
        first = manager.ingest(chain(entities=("host:host-42", "user:bob"), techniques=("T1059",)))
        second = manager.ingest(chain(entities=("host:host-42",), techniques=("T1059", "T1105"), start=900, end=950))
        assert second.kind == DecisionKind.MERGE_INTO
        assert second.incident_id == first.incident_id
        assert len(manager) == 1

    def test_overlapping_chain_merges(self, manager):
        first = manager.ingest(chain())
        decision = manager.ingest(chain(start=600, end=700, techniques=("T1021", "T1003")))

        assert decision.kind == DecisionKind.MERGE_INTO
        assert decision.incident_id == first.incident_id
        incident = manager.get(first.incident_id)
        assert len(incident.source_chain_refs) == 2
        assert incident.techniques == {"T1110", "T1021", "T1003"}
        assert incident.last_seen == at(700)
        assert len(manager) == 1

    def test_no_shared_technique_creates_new(self, manager):
        manager.ingest(chain())
        decision = manager.ingest(chain(techniques=("T1490",)))
        assert decision.kind == DecisionKind.CREATE_NEW
        assert len(manager) == 2

    def test_outside_recency_window_creates_new(self, manager):
        manager.ingest(chain())
        decision = manager.ingest(chain(start=7200, end=7300))
        assert decision.kind == DecisionKind.CREATE_NEW

    def test_merge_escalates_severity(self, manager):
        first = manager.ingest(chain(severity=Severity.HIGH))
        decision = manager.ingest(chain(severity=Severity.CRITICAL, start=30, end=60))
        assert decision.escalated
        incident = manager.get(first.incident_id)
        assert incident.severity == Severity.CRITICAL
        assert "escalated" in [e.kind for e in incident.timeline]

    def test_chain_revision_updates_same_incident(self, manager):
        original = chain(chain_id="chain-1")
        first = manager.ingest(original)
        decision = manager.ingest(chain(chain_id="chain-1", revision=1, end=90))
        assert decision.kind == DecisionKind.MERGE_INTO
        assert decision.incident_id == first.incident_id
        assert "revision 1 of chain-1" in manager.get(first.incident_id).timeline[-1].message

    def test_weak_chain_still_merges_into_existing(self, manager):
        first = manager.ingest(chain())
        decision = manager.ingest(chain(severity=Severity.LOW, confidence=0.1, start=100, end=120))
        assert decision.kind == DecisionKind.MERGE_INTO
        assert decision.incident_id == first.incident_id

    def test_resolved_incident_is_linked_not_reopened(self, manager):
        first = manager.ingest(chain())
        manager.transition(first.incident_id, IncidentStatus.RESOLVED)

        decision = manager.ingest(chain(start=100, end=200))

        assert decision.kind == DecisionKind.CREATE_NEW
        recurrence = manager.get(decision.incident_id)
        assert recurrence.related_incidents == [first.incident_id]
        assert manager.get(first.incident_id).status == IncidentStatus.RESOLVED

    def test_revised_chain_of_resolved_incident_becomes_recurrence(self, manager):
        first = manager.ingest(chain(chain_id="chain-1"))
        manager.transition(first.incident_id, IncidentStatus.RESOLVED)

        decision = manager.ingest(chain(chain_id="chain-1", revision=1, severity=Severity.CRITICAL, end=90))

        assert decision.kind == DecisionKind.CREATE_NEW
        assert not decision.escalated
        resolved = manager.get(first.incident_id)
        assert resolved.status == IncidentStatus.RESOLVED
        assert resolved.severity == Severity.HIGH
        assert [e.kind for e in resolved.timeline] == ["created", "status"]
        recurrence = manager.get(decision.incident_id)
        assert recurrence.severity == Severity.CRITICAL
        assert recurrence.related_incidents == [first.incident_id]
        assert manager.incident_for_chain("chain-1").incident_id == decision.incident_id


class TestFastPath:
    def test_critical_detection_promoted_directly(self, manager):
        detection = make_detection(severity=Severity.CRITICAL, technique="credential-access/T1003.001")
        decision = manager.ingest_detection(detection)
        assert decision.kind == DecisionKind.CREATE_NEW
        incident = manager.get(decision.incident_id)
        assert incident.source_detection_refs == [detection.detection_id]
        # A repeat is not a second incident
        assert manager.ingest_detection(detection).incident_id == decision.incident_id
        assert len(manager) == 1

    def test_below_fast_path_is_ignored(self, manager):
        assert manager.ingest_detection(make_detection(severity=Severity.HIGH)).kind == DecisionKind.DISCARD

    def test_later_chain_merges_into_fast_path_incident(self, manager):
        detection = make_detection(severity=Severity.CRITICAL, technique="credential-access/T1110")
        first = manager.ingest_detection(detection)
        decision = manager.ingest(chain())
        assert decision.incident_id == first.incident_id

    def test_chain_from_detection(self):
        detection = make_detection(entities={"user": "alice"})
        single = chain_from_detection(detection)
        assert single.length == 1
        assert single.pivot == "user:alice"


class TestLifecycle:
    def test_acknowledge(self, manager):
        decision = manager.ingest(chain())
        incident = manager.acknowledge(decision.incident_id, "analyst-1")
        assert incident.status == IncidentStatus.ACKNOWLEDGED
        assert incident.assignee == "analyst-1"
        assert incident.timeline[-1].actor == "analyst-1"

    def test_acknowledge_keeps_contained(self, manager):
        decision = manager.ingest(chain())
        manager.transition(decision.incident_id, IncidentStatus.CONTAINED)
        incident = manager.acknowledge(decision.incident_id, "analyst-1")
        assert incident.status == IncidentStatus.CONTAINED

    def test_terminal_states_are_final(self, manager):
        decision = manager.ingest(chain())
        manager.transition(decision.incident_id, IncidentStatus.FALSE_POSITIVE, note="scanner")
        with pytest.raises(InvalidTransition):
            manager.transition(decision.incident_id, IncidentStatus.OPEN)
        with pytest.raises(InvalidTransition):
            manager.acknowledge(decision.incident_id, "analyst-1")

    def test_unknown_incident(self, manager):
        with pytest.raises(IncidentNotFound):
            manager.get("inc-missing")

    def test_timeline_is_append_only(self, manager):
        decision = manager.ingest(chain())
        manager.annotate(decision.incident_id, "analyst-1", "looking")
        manager.transition(decision.incident_id, "contained", "analyst-1")
        incident = manager.get(decision.incident_id)
        assert [e.kind for e in incident.timeline] == ["created", "note", "status"]
        assert incident.timeline_version == 3

    def test_queries(self, manager):
        open_decision = manager.ingest(chain())
        closed_decision = manager.ingest(chain(entities=("host:srv-db",), techniques=("T1490",)))
        manager.transition(closed_decision.incident_id, "resolved")

        assert [i.incident_id for i in manager.list_open()] == [open_decision.incident_id]
        assert len(manager.list_all()) == 2
        assert [i.incident_id for i in manager.find_by_entity("host:srv-db")] == [closed_decision.incident_id]

"""
Rule and signature detectors - deterministic predicate evaluation.

A rule is an entity-scoped logical expression over event fields plus the
severity/confidence pair it emits verbatim. Expressions are plain mappings so
rule databases can live in YAML:

    {"all": [...]}, {"any": [...]}, {"not": {...}}
    {"field": "outcome", "op": "eq", "value": "failure"}
    {"field": "entities.host", "op": "ne", "value": {"$event": "entities.host"}}
    {"count": {"role": "user", "within_seconds": 600, "where": {...}}, "op": "gte", "value": 5}
"""

import ipaddress
import operator
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml

from src.threat_engine.detectors.base import DetectorContext, DetectorScope, build_detection
from src.threat_engine.errors import ConfigError
from src.threat_engine.schemas import (
    Detection,
    DetectorType,
    EventSource,
    SecurityEvent,
    Severity,
    Technique,
)
from src.shared.logger import get_logger

logger = get_logger()

_MISSING = object()

# Supporting events attached to a count-based detection
MAX_SUPPORTING_EVENTS = 20

Predicate = Callable[[SecurityEvent, SecurityEvent, DetectorContext | None], bool]


def resolve_field(event: SecurityEvent, path: str) -> Any:
    """Look up ``source``, ``entities.<role>``, ``attributes.<name>`` or a bare attribute/entity name."""
    if path == "source":
        return event.source.value
    if path == "event_id":
        return event.event_id
    head, _, rest = path.partition(".")
    if head == "entities" and rest:
        return event.entities.get(rest, _MISSING)
    if head == "attributes" and rest:
        return event.attributes.get(rest, _MISSING)
    if path in event.attributes:
        return event.attributes[path]
    return event.entities.get(path, _MISSING)


def _in_cidr(value: Any, networks: Any) -> bool:
    try:
        address = ipaddress.ip_address(str(value))
    except ValueError:
        return False
    if isinstance(networks, str):
        networks = [networks]
    return any(address in ipaddress.ip_network(n, strict=False) for n in networks)


def _safe(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        try:
            return bool(op(left, right))
        except TypeError:
            return False
    return compare


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": _safe(operator.gt),
    "gte": _safe(operator.ge),
    "lt": _safe(operator.lt),
    "lte": _safe(operator.le),
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
    "contains": lambda a, b: isinstance(a, (str, list, tuple)) and b in a,
    "icontains": lambda a, b: isinstance(a, str) and str(b).lower() in a.lower(),
    "startswith": lambda a, b: isinstance(a, str) and a.startswith(b),
    "endswith": lambda a, b: isinstance(a, str) and a.lower().endswith(str(b).lower()),
    "in_cidr": _in_cidr,
    "not_in_cidr": lambda a, b: not _in_cidr(a, b),
}


def compile_condition(node: Any) -> Predicate:
    """Compile an expression mapping into a predicate(current_event, candidate_event, context)."""
    if not isinstance(node, dict) or not node:
        raise ConfigError(f"rule condition must be a non-empty mapping, got {node!r}")

    if "all" in node:
        parts = [compile_condition(s) for s in node["all"]]
        return lambda cur, ev, ctx: all(p(cur, ev, ctx) for p in parts)
    if "any" in node:
        parts = [compile_condition(s) for s in node["any"]]
        return lambda cur, ev, ctx: any(p(cur, ev, ctx) for p in parts)
    if "not" in node:
        inner = compile_condition(node["not"])
        return lambda cur, ev, ctx: not inner(cur, ev, ctx)
    if "count" in node:
        return _compile_count(node)
    if "field" in node:
        return _compile_comparison(node)

    raise ConfigError(f"unrecognised rule condition: {node!r}")


def _value_getter(value: Any) -> Callable[[SecurityEvent], Any]:
    """Literal values, or ``{"$event": "path"}`` references to the triggering event."""
    if isinstance(value, dict) and "$event" in value:
        path = value["$event"]
        return lambda cur: resolve_field(cur, path)
    return lambda cur: value


def _compile_comparison(node: dict[str, Any]) -> Predicate:
    path = node["field"]
    op_name = node.get("op", "exists" if "value" not in node else "eq")

    if op_name == "exists":
        expected = bool(node.get("value", True))
        return lambda cur, ev, ctx: (resolve_field(ev, path) is not _MISSING) == expected

    if op_name == "regex":
        try:
            pattern = re.compile(node["value"], re.IGNORECASE)
        except (re.error, KeyError) as e:
            raise ConfigError(f"invalid regex in rule condition {node!r}: {e}") from e

        def matches(cur: SecurityEvent, ev: SecurityEvent, ctx: DetectorContext | None) -> bool:
            value = resolve_field(ev, path)
            return isinstance(value, str) and bool(pattern.search(value))

        return matches

    compare = OPERATORS.get(op_name)
    if compare is None:
        raise ConfigError(f"unknown operator '{op_name}' in rule condition")
    get_value = _value_getter(node.get("value"))

    def predicate(cur: SecurityEvent, ev: SecurityEvent, ctx: DetectorContext | None) -> bool:
        left = resolve_field(ev, path)
        if left is _MISSING:
            return False
        right = get_value(cur)
        if right is _MISSING:
            return False
        try:
            return compare(left, right)
        except TypeError:
            return False

    return predicate


def _compile_count(node: dict[str, Any]) -> Predicate:
    count_node = node["count"]
    if not isinstance(count_node, dict) or "role" not in count_node:
        raise ConfigError(f"count condition needs a 'role': {node!r}")

    role = count_node["role"]
    within = count_node.get("within_seconds")
    where = compile_condition(count_node["where"]) if count_node.get("where") else None
    include_current = count_node.get("include_current", True)
    compare = OPERATORS.get(node.get("op", "gte"))
    if compare is None:
        raise ConfigError(f"unknown operator '{node.get('op')}' in count condition")
    threshold = node.get("value", 1)

    def predicate(cur: SecurityEvent, ev: SecurityEvent, ctx: DetectorContext | None) -> bool:
        if ctx is None:
            return False
        matcher = (lambda e: where(cur, e, ctx)) if where else None
        total = ctx.count(role, matcher, within)
        if include_current and (where is None or where(cur, cur, ctx)):
            total += 1
        return compare(total, threshold)

    return predicate


@dataclass
class DetectionRule:
    """A deterministic detection rule."""

    rule_id: str
    name: str
    technique: Technique
    severity: Severity
    confidence: float
    condition: dict[str, Any]

    # Entity scope
    sources: list[str] = field(default_factory=list)
    entity_role: str | None = None

    description: str = ""
    enabled: bool = True

    def __post_init__(self):
        self.technique = Technique.parse(self.technique)
        self.severity = Severity(self.severity)
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ConfigError(f"rule {self.rule_id}: confidence must be within [0, 1]")
        try:
            self._sources = frozenset(EventSource(s) for s in self.sources)
        except ValueError as e:
            raise ConfigError(f"rule {self.rule_id}: {e}") from e
        self._predicate = compile_condition(self.condition)
        self._counts = _collect_counts(self.condition)

    def applies_to(self, event: SecurityEvent) -> bool:
        if not self.enabled:
            return False
        if self._sources and event.source not in self._sources:
            return False
        if self.entity_role and self.entity_role not in event.entities:
            return False
        return True

    def matches(self, event: SecurityEvent, context: DetectorContext | None) -> bool:
        return self._predicate(event, event, context)

    def supporting_events(self, event: SecurityEvent, context: DetectorContext) -> list[SecurityEvent]:
        """Prior events that satisfied the rule's count clauses."""
        support: dict[str, SecurityEvent] = {}
        for clause in self._counts:
            role, within, where = clause["role"], clause.get("within_seconds"), clause.get("where")
            where_fn = compile_condition(where) if where else None
            candidates = context.events_for(role)
            if within:
                cutoff = event.timestamp.timestamp() - within
                candidates = tuple(e for e in candidates if e.timestamp.timestamp() >= cutoff)
            for e in candidates:
                if where_fn is None or where_fn(event, e, context):
                    support[e.event_id] = e
        ordered = sorted(support.values(), key=lambda e: e.timestamp)
        return ordered[-MAX_SUPPORTING_EVENTS:]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetectionRule":
        try:
            return cls(
                rule_id=data["rule_id"],
                name=data.get("name", data["rule_id"]),
                technique=Technique.parse(data["technique"]),
                severity=data["severity"],
                confidence=float(data["confidence"]),
                condition=data["condition"],
                sources=list(data.get("sources", [])),
                entity_role=data.get("entity_role"),
                description=data.get("description", ""),
                enabled=data.get("enabled", True),
            )
        except KeyError as e:
            raise ConfigError(f"rule is missing required key {e}: {data!r}") from e
        except ValueError as e:
            raise ConfigError(f"invalid rule {data.get('rule_id')!r}: {e}") from e


def _collect_counts(node: Any) -> list[dict[str, Any]]:
    if not isinstance(node, dict):
        return []
    if "count" in node:
        return [node["count"]]
    found: list[dict[str, Any]] = []
    for key in ("all", "any"):
        for child in node.get(key, []):
            found.extend(_collect_counts(child))
    return found


def load_rules(path: str | Path) -> list[DetectionRule]:
    """Load a YAML rule database (a list, or a mapping with a ``rules`` key)."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot load rule database {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ConfigError(f"rule database {path} must contain a list of rules")
    return [DetectionRule.from_dict(item) for item in data]


def get_default_rules() -> list[DetectionRule]:
    """Built-in behavioural-agnostic rules."""
    return [
        # Successful logon after repeated failures for the same user elsewhere
        DetectionRule(
            rule_id="identity_lateral_logon",
            name="Logon to new host after failed attempts elsewhere",
            technique=Technique("lateral-movement", "T1021"),
            severity=Severity.MEDIUM,
            confidence=0.6,
            sources=["identity"],
            entity_role="user",
            condition={"all": [
                {"field": "outcome", "op": "eq", "value": "success"},
                {"count": {
                    "role": "user",
                    "within_seconds": 600,
                    "include_current": False,
                    "where": {"all": [
                        {"field": "outcome", "op": "eq", "value": "failure"},
                        {"field": "entities.host", "op": "ne", "value": {"$event": "entities.host"}},
                    ]},
                }, "op": "gte", "value": 5},
            ]},
        ),
        DetectionRule(
            rule_id="identity_password_spray",
            name="Failed logons from one source across many accounts",
            technique=Technique("credential-access", "T1110.003"),
            severity=Severity.MEDIUM,
            confidence=0.65,
            sources=["identity"],
            entity_role="src_ip",
            condition={"all": [
                {"field": "outcome", "op": "eq", "value": "failure"},
                {"count": {
                    "role": "src_ip",
                    "within_seconds": 300,
                    "where": {"field": "entities.user", "op": "ne", "value": {"$event": "entities.user"}},
                }, "op": "gte", "value": 10},
            ]},
        ),
        DetectionRule(
            rule_id="identity_admin_group_add",
            name="Account added to privileged group",
            technique=Technique("privilege-escalation", "T1098"),
            severity=Severity.HIGH,
            confidence=0.7,
            sources=["identity"],
            condition={"all": [
                {"field": "action", "op": "eq", "value": "group_member_added"},
                {"field": "group", "op": "regex", "value": r"admin|domain admins|wheel|sudo"},
            ]},
        ),
        DetectionRule(
            rule_id="endpoint_encoded_powershell",
            name="Encoded PowerShell command",
            technique=Technique("execution", "T1059.001"),
            severity=Severity.HIGH,
            confidence=0.75,
            sources=["endpoint"],
            entity_role="host",
            condition={"all": [
                {"field": "entities.process", "op": "regex", "value": r"powershell|pwsh"},
                {"field": "command_line", "op": "regex", "value": r"\s-(e|enc|encodedcommand)\s"},
            ]},
        ),
        DetectionRule(
            rule_id="endpoint_service_install",
            name="New service installed",
            technique=Technique("persistence", "T1543.003"),
            severity=Severity.MEDIUM,
            confidence=0.55,
            sources=["endpoint"],
            entity_role="host",
            condition={"field": "action", "op": "eq", "value": "service_install"},
        ),
        DetectionRule(
            rule_id="network_large_egress",
            name="Large outbound transfer to external address",
            technique=Technique("exfiltration", "T1048"),
            severity=Severity.MEDIUM,
            confidence=0.5,
            sources=["network"],
            condition={"all": [
                {"field": "bytes_out", "op": "gte", "value": 500_000_000},
                {"field": "entities.dst_ip", "op": "not_in_cidr",
                 "value": ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]},
            ]},
        ),
        DetectionRule(
            rule_id="email_executable_attachment",
            name="Executable attachment delivered",
            technique=Technique("initial-access", "T1566.001"),
            severity=Severity.HIGH,
            confidence=0.7,
            sources=["email"],
            condition={"field": "attachment", "op": "regex", "value": r"\.(exe|scr|js|vbs|hta|iso|lnk)$"},
        ),
    ]


def get_default_signatures() -> list[DetectionRule]:
    """Built-in command-line signatures for well-known tooling."""
    return [
        DetectionRule(
            rule_id="sig_mimikatz",
            name="Mimikatz credential dumping",
            technique=Technique("credential-access", "T1003.001"),
            severity=Severity.CRITICAL,
            confidence=0.9,
            sources=["endpoint"],
            condition={"any": [
                {"field": "command_line", "op": "regex", "value": r"sekurlsa::|lsadump::|mimikatz"},
                {"field": "entities.process", "op": "regex", "value": r"mimikatz"},
            ]},
        ),
        DetectionRule(
            rule_id="sig_certutil_download",
            name="Certutil used as downloader",
            technique=Technique("command-and-control", "T1105"),
            severity=Severity.HIGH,
            confidence=0.8,
            sources=["endpoint"],
            condition={"field": "command_line", "op": "regex", "value": r"certutil(\.exe)?\s.*-urlcache"},
        ),
        DetectionRule(
            rule_id="sig_shadow_copy_delete",
            name="Shadow copies deleted",
            technique=Technique("impact", "T1490"),
            severity=Severity.CRITICAL,
            confidence=0.95,
            sources=["endpoint"],
            condition={"field": "command_line", "op": "regex", "value": r"vssadmin(\.exe)?\s+delete\s+shadows"},
        ),
    ]


class RuleDetector:
    """Evaluates a rule database against each event."""

    def __init__(
        self,
        detector_id: str = "rules",
        rules: Iterable[DetectionRule] | None = None,
        detector_type: DetectorType = DetectorType.RULE,
        version: str = "1.0",
    ):
        self.detector_id = detector_id
        self.version = version
        self.detector_type = detector_type
        self._rules: tuple[DetectionRule, ...] = ()
        self.replace_rules(rules if rules is not None else get_default_rules())
        logger.info(f"Rule detector '{detector_id}' initialized with {len(self._rules)} rules")

    @property
    def rules(self) -> tuple[DetectionRule, ...]:
        return self._rules

    @property
    def scope(self) -> DetectorScope:
        rules = self._rules
        sources: set[EventSource] = set()
        for rule in rules:
            if not rule._sources:
                return DetectorScope()
            sources |= rule._sources
        return DetectorScope(sources=frozenset(sources))

    def replace_rules(self, rules: Iterable[DetectionRule]) -> None:
        """Atomically swap the rule database."""
        new_rules = tuple(rules)
        ids = [r.rule_id for r in new_rules]
        if len(ids) != len(set(ids)):
            raise ConfigError(f"duplicate rule ids in database for {self.detector_id}")
        self._rules = new_rules

    def reload_from(self, paths: Iterable[str | Path]) -> int:
        """Load and swap in rules from YAML files; the old database stays on error."""
        rules: list[DetectionRule] = []
        for path in paths:
            rules.extend(load_rules(path))
        self.replace_rules(rules)
        logger.info(f"Rule detector '{self.detector_id}' reloaded {len(rules)} rules")
        return len(rules)

    def detect(self, event: SecurityEvent, context: DetectorContext) -> list[Detection]:
        detections = []
        # One read of the tuple so a concurrent swap cannot split this evaluation
        for rule in self._rules:
            if not rule.applies_to(event):
                continue
            if not rule.matches(event, context):
                continue
            detections.append(build_detection(
                self,
                event,
                technique=rule.technique,
                confidence=rule.confidence,
                severity=rule.severity,
                description=f"{rule.name} [{rule.rule_id}]",
                related_events=rule.supporting_events(event, context) if rule._counts else (),
            ))
        return detections


def create_signature_detector(rules: Iterable[DetectionRule] | None = None) -> RuleDetector:
    """Signature detector: the same engine with the signature database."""
    return RuleDetector(
        detector_id="signatures",
        rules=rules if rules is not None else get_default_signatures(),
        detector_type=DetectorType.SIGNATURE,
    )

"""
Detection strategies and the pool that runs them.
"""

from src.threat_engine.detectors.anomaly import FunctionModel, ModelDetector, RarityModel, get_default_model_detectors
from src.threat_engine.detectors.base import (
    Detector,
    DetectorContext,
    DetectorScope,
    EntityHistory,
    build_detection,
)
from src.threat_engine.detectors.behavioral import BehavioralDetector, BehaviorProfile, get_default_profiles
from src.threat_engine.detectors.pool import DetectorPool
from src.threat_engine.detectors.rules import (
    DetectionRule,
    RuleDetector,
    create_signature_detector,
    get_default_rules,
    get_default_signatures,
    load_rules,
)


def build_default_detectors(rule_files: tuple[str, ...] = ()) -> list[Detector]:
    """The stock detector set: rules, signatures, behavioural profiles and rarity models."""
    rules = list(get_default_rules())
    for path in rule_files:
        rules.extend(load_rules(path))
    return [
        RuleDetector(rules=rules),
        create_signature_detector(get_default_signatures()),
        BehavioralDetector(),
        *get_default_model_detectors(),
    ]


__all__ = [
    "BehaviorProfile",
    "BehavioralDetector",
    "DetectionRule",
    "Detector",
    "DetectorContext",
    "DetectorPool",
    "DetectorScope",
    "EntityHistory",
    "FunctionModel",
    "ModelDetector",
    "RarityModel",
    "RuleDetector",
    "build_default_detectors",
    "build_detection",
    "create_signature_detector",
    "get_default_model_detectors",
    "get_default_profiles",
    "get_default_rules",
    "get_default_signatures",
    "load_rules",
]

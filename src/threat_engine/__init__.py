"""
Threatline threat engine.

Real-time detection and event correlation: security events are normalized,
evaluated by independent detectors, enriched and scored, correlated into
attack chains and promoted to incidents that are dispatched to sinks.
"""

__version__ = "0.1.0"

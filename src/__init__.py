"""
Threatline - threat detection and event correlation engine.

This package contains:
- threat_engine: normalizer, detectors, scorer, correlator, incidents, dispatcher and API
- shared: Shared utilities and configuration
"""

__version__ = "0.1.0"

"""Shared utilities for Threatline."""

from src.shared.config import settings
from src.shared.logger import (
    ThreatlineLogger,
    get_logger,
    log_config_status,
    log_result_table,
    log_startup_banner,
)

__all__ = [
    # Config
    "settings",
    # Logger
    "ThreatlineLogger",
    "get_logger",
    "log_config_status",
    "log_result_table",
    "log_startup_banner",
]

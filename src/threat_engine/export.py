"""
Read-only compliance / audit export.

Every exported record is a flat JSON object carrying ``schema_version`` and
``record_type`` next to the stored fields, so downstream consumers can rely
on the shape across releases.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from src.shared.config import settings
from src.threat_engine.config import EXPORT_SCHEMA_VERSION
from src.threat_engine.storage import EngineStorage
from src.shared.logger import get_logger

logger = get_logger()

EXPORT_KINDS = ("detections", "chains", "incidents", "suppressions")


class AuditExporter:
    """Exports stored detections, chains, incidents and suppressions."""

    def __init__(self, storage: EngineStorage, export_dir: str | Path | None = None):
        self.storage = storage
        self.export_dir = Path(export_dir or settings.export_dir)

    def records(
        self,
        kind: str,
        hours_back: float | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Export one record kind as a list of dicts.

        Args:
            kind: detections, chains, incidents or suppressions
            hours_back: Only records written within this many hours
            limit: Maximum number of records

        Returns:
            Records in storage order, each stamped with the export schema version
        """
        if kind not in EXPORT_KINDS:
            raise ValueError(f"unknown export kind '{kind}' (expected one of {', '.join(EXPORT_KINDS)})")
        singular = kind[:-1]
        return [
            {"schema_version": EXPORT_SCHEMA_VERSION, "record_type": singular, **record}
            for record in self.storage.query(kind, hours_back=hours_back, limit=limit)
        ]

    def iter_jsonl(self, kind: str, hours_back: float | None = None) -> Iterator[str]:
        """Yield one JSON line per record."""
        for record in self.records(kind, hours_back=hours_back):
            yield json.dumps(record, sort_keys=True, default=str) + "\n"

    def write_jsonl(self, kind: str, path: str | Path | None = None, hours_back: float | None = None) -> Path:
        """Write one kind to a JSON Lines file and return its path."""
        if path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            path = self.export_dir / f"{kind}_{timestamp}.jsonl"
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        count = 0
        with open(path, "w", encoding="utf-8") as f:
            for line in self.iter_jsonl(kind, hours_back=hours_back):
                f.write(line)
                count += 1

        logger.success(f"Exported {count} {kind} to {path}")
        return path

    def write_all(self, hours_back: float | None = None) -> dict[str, Path]:
        return {kind: self.write_jsonl(kind, hours_back=hours_back) for kind in EXPORT_KINDS}

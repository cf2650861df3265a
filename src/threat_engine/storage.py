"""
SQLite storage for window state and the audit trail.

Detections, chains (with the incident decision taken for them), incidents,
suppressions and dead letters are append/replace records read by the export
module. Window snapshots back correlator recovery. Every sqlite3 failure is
raised as StorageUnavailableError.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator

from src.threat_engine.config import ENGINE_DB_PATH, RETENTION_POLICY
from src.threat_engine.errors import StorageUnavailableError
from src.threat_engine.schemas import AttackChain, Detection, Incident, IncidentDecision, utcnow
from src.shared.logger import get_logger

logger = get_logger()

# Record kinds readable through ``query``
RECORD_TABLES = {
    "detections": ("detections", "created_at"),
    "chains": ("chains", "closed_at"),
    "incidents": ("incidents", "last_updated_at"),
    "suppressions": ("suppressions", "suppressed_at"),
    "dead_letters": ("dead_letters", "failed_at"),
}


class EngineStorage:
    """SQLite storage for window snapshots and audit records."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize storage with database path."""
        self.db_path = Path(db_path) if db_path else ENGINE_DB_PATH

        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()
        logger.info(f"Engine storage initialized at {self.db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"cannot open {self.db_path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"{self.db_path}: {e}") from e
        finally:
            conn.close()

    def _init_schema(self):
        """Create tables and indexes if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS detections (
                    detection_id TEXT PRIMARY KEY,
                    detector_id TEXT NOT NULL,
                    event_time DATETIME NOT NULL,
                    created_at DATETIME NOT NULL,
                    severity TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    record TEXT NOT NULL  -- JSON
                )
            """)

            # One row per chain revision
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chains (
                    chain_id TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    closed_at DATETIME NOT NULL,
                    severity TEXT NOT NULL,
                    decision TEXT,
                    incident_id TEXT,
                    reason TEXT,
                    record TEXT NOT NULL,  -- JSON
                    PRIMARY KEY (chain_id, revision)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS incidents (
                    incident_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    created_at DATETIME NOT NULL,
                    last_updated_at DATETIME NOT NULL,
                    record TEXT NOT NULL  -- JSON
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS suppressions (
                    suppression_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    detection_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    suppressed_at DATETIME NOT NULL,
                    record TEXT NOT NULL  -- JSON
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS dead_letters (
                    letter_id TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    incident_id TEXT,
                    failed_at DATETIME NOT NULL,
                    record TEXT NOT NULL  -- JSON
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS window_snapshots (
                    window_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    updated_at DATETIME NOT NULL,
                    snapshot TEXT NOT NULL  -- JSON
                )
            """)

            # Indexes for export and retention
            conn.execute("CREATE INDEX IF NOT EXISTS idx_detections_created ON detections(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chains_closed ON chains(closed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_updated ON incidents(last_updated_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_suppressions_at ON suppressions(suppressed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_windows_state ON window_snapshots(state)")

    # ------------------------------------------------------------------
    # Window state
    # ------------------------------------------------------------------

    def save_window(self, snapshot: dict[str, Any]):
        """Insert or replace one window snapshot."""
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO window_snapshots (window_id, state, updated_at, snapshot)
                VALUES (?, ?, ?, ?)
            """, (
                snapshot["window_id"],
                snapshot["state"],
                utcnow().isoformat(),
                json.dumps(snapshot, default=str),
            ))

    def load_windows(self, active_only: bool = True) -> list[dict[str, Any]]:
        """Load window snapshots, by default only those not yet closed."""
        query = "SELECT snapshot FROM window_snapshots"
        if active_only:
            query += " WHERE state != 'closed'"
        query += " ORDER BY window_id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [json.loads(row["snapshot"]) for row in rows]

    # ------------------------------------------------------------------
    # Audit records
    # ------------------------------------------------------------------

    def insert_detection(self, detection: Detection):
        """Insert a detection into storage."""
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO detections
                (detection_id, detector_id, event_time, created_at, severity, confidence, record)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                detection.detection_id,
                detection.detector_id,
                detection.event_time.isoformat(),
                detection.created_at.isoformat(),
                detection.severity.value,
                detection.confidence,
                json.dumps(detection.to_dict(), default=str),
            ))

    def save_chain(self, chain: AttackChain, decision: IncidentDecision | None = None):
        """Record a chain revision together with the incident decision taken for it."""
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO chains
                (chain_id, revision, closed_at, severity, decision, incident_id, reason, record)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chain.chain_id,
                chain.revision,
                utcnow().isoformat(),
                chain.severity.value,
                decision.kind.value if decision else None,
                decision.incident_id if decision else None,
                decision.reason if decision else None,
                json.dumps(chain.to_dict()),
            ))

    def save_incident(self, incident: Incident):
        """Insert or replace the current state of an incident."""
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO incidents
                (incident_id, status, severity, created_at, last_updated_at, record)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                incident.incident_id,
                incident.status.value,
                incident.severity.value,
                incident.created_at.isoformat(),
                incident.last_updated_at.isoformat(),
                json.dumps(incident.to_dict()),
            ))

    def insert_suppression(self, detection: Detection, reason: str):
        """Record a detection the scorer dropped."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO suppressions (detection_id, reason, suppressed_at, record)
                VALUES (?, ?, ?, ?)
            """, (
                detection.detection_id,
                reason,
                utcnow().isoformat(),
                json.dumps(detection.to_dict(), default=str),
            ))

    def insert_dead_letter(self, letter: dict[str, Any]):
        """Record a delivery that exhausted its retries."""
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO dead_letters (letter_id, target, incident_id, failed_at, record)
                VALUES (?, ?, ?, ?, ?)
            """, (
                letter["letter_id"],
                letter["target"],
                letter.get("incident_id"),
                letter["failed_at"],
                json.dumps(letter, default=str),
            ))

    def query(
        self,
        kind: str,
        hours_back: float | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Get stored records of one kind, oldest first.

        Args:
            kind: detections, chains, incidents, suppressions or dead_letters
            hours_back: Only records written within this many hours
            limit: Maximum number of records

        Returns:
            Decoded records. Chains carry their decision fields, suppressions their reason.
        """
        if kind not in RECORD_TABLES:
            raise ValueError(f"unknown record kind '{kind}'")
        table, time_column = RECORD_TABLES[kind]

        query = f"SELECT * FROM {table} WHERE 1=1"
        params: list[Any] = []

        if hours_back:
            cutoff = utcnow() - timedelta(hours=hours_back)
            query += f" AND {time_column} >= ?"
            params.append(cutoff.isoformat())

        query += f" ORDER BY {time_column} ASC"

        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        records = []
        for row in rows:
            record = json.loads(row["record"])
            if kind == "chains":
                record["decision"] = row["decision"]
                record["incident_id"] = row["incident_id"]
                record["reason"] = row["reason"]
            elif kind == "suppressions":
                record = {
                    "detection_id": row["detection_id"],
                    "reason": row["reason"],
                    "suppressed_at": row["suppressed_at"],
                    "detection": record,
                }
            records.append(record)
        return records

    def cleanup_old_data(self):
        """Clean up old data based on retention policy. Incidents are never deleted."""
        now = utcnow()
        with self._connect() as conn:
            for kind in ("detections", "chains", "suppressions", "dead_letters"):
                table, time_column = RECORD_TABLES[kind]
                cutoff = now - timedelta(days=RETENTION_POLICY[kind])
                conn.execute(f"DELETE FROM {table} WHERE {time_column} < ?", (cutoff.isoformat(),))

            cutoff = now - timedelta(days=RETENTION_POLICY["window_snapshots"])
            conn.execute(
                "DELETE FROM window_snapshots WHERE state = 'closed' AND updated_at < ?",
                (cutoff.isoformat(),),
            )

        logger.info("Cleaned up old data from storage")

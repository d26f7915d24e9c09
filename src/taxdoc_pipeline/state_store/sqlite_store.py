"""
SQLite-based state store implementation.

Tables:
- templates: Learned extraction templates (JSON payload + version for CAS)
- template_events: Append-only audit trail of template changes
- extraction_results: Immutable extraction results keyed by result_id
- corrections: Reviewer corrections referencing a result
- accuracy_records: Accuracy delta per correction (learning analytics)
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class TemplateRecord:
    """Stored template row."""

    template_id: str
    fingerprint_key: str
    data_json: str
    weight: float
    active: bool
    usage_count: int
    version: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TemplateRecord":
        """Create from database row."""
        return cls(
            template_id=row["template_id"],
            fingerprint_key=row["fingerprint_key"],
            data_json=row["data_json"],
            weight=row["weight"],
            active=bool(row["active"]),
            usage_count=row["usage_count"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class TemplateEventRecord:
    """One entry in a template's audit trail."""

    id: int
    template_id: str
    event_type: str
    detail: dict[str, Any]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TemplateEventRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            template_id=row["template_id"],
            event_type=row["event_type"],
            detail=json.loads(row["detail_json"]) if row["detail_json"] else {},
            created_at=row["created_at"],
        )


@dataclass
class ResultRecord:
    """Stored extraction result."""

    result_id: str
    document_hash: str
    strategy: str
    success: bool
    confidence: float
    result_json: str
    raw_text: str | None
    fingerprint_json: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ResultRecord":
        """Create from database row."""
        return cls(
            result_id=row["result_id"],
            document_hash=row["document_hash"],
            strategy=row["strategy"],
            success=bool(row["success"]),
            confidence=row["confidence"],
            result_json=row["result_json"],
            raw_text=row["raw_text"],
            fingerprint_json=row["fingerprint_json"],
            created_at=row["created_at"],
        )


@dataclass
class AccuracyRecord:
    """Accuracy observed for one correction."""

    id: int
    result_id: str
    template_id: str | None
    strategy: str
    feedback: str
    accuracy: float
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AccuracyRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            result_id=row["result_id"],
            template_id=row["template_id"],
            strategy=row["strategy"],
            feedback=row["feedback"],
            accuracy=row["accuracy"],
            created_at=row["created_at"],
        )


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Provides persistent tracking of:
    - Learned templates (with optimistic version compare-and-set)
    - Template audit events
    - Extraction results (idempotence lookups by content hash)
    - Corrections and accuracy records

    Each operation opens its own connection, so the store can be shared
    across worker threads.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS templates (
                    template_id TEXT PRIMARY KEY,
                    fingerprint_key TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    weight REAL NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            # At most one active template per fingerprint key
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_templates_active_key
                ON templates(fingerprint_key) WHERE active = 1
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS template_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    detail_json TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (template_id) REFERENCES templates(template_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS extraction_results (
                    result_id TEXT PRIMARY KEY,
                    document_hash TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    confidence REAL NOT NULL,
                    result_json TEXT NOT NULL,
                    raw_text TEXT,
                    fingerprint_json TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_results_hash
                ON extraction_results(document_hash, created_at)
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS corrections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    result_id TEXT NOT NULL,
                    document_hash TEXT NOT NULL,
                    feedback TEXT NOT NULL,
                    correction_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (result_id) REFERENCES extraction_results(result_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accuracy_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    result_id TEXT NOT NULL,
                    template_id TEXT,
                    strategy TEXT NOT NULL,
                    feedback TEXT NOT NULL,
                    accuracy REAL NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def get_template(self, template_id: str) -> TemplateRecord | None:
        """Get a template by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM templates WHERE template_id = ?", (template_id,)
            ).fetchone()
            return TemplateRecord.from_row(row) if row else None

    def get_active_template_by_key(self, fingerprint_key: str) -> TemplateRecord | None:
        """Get the active template for an exact fingerprint key."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM templates WHERE fingerprint_key = ? AND active = 1",
                (fingerprint_key,),
            ).fetchone()
            return TemplateRecord.from_row(row) if row else None

    def list_templates(self, include_inactive: bool = False) -> list[TemplateRecord]:
        """Scan templates, most recently updated first."""
        query = "SELECT * FROM templates"
        if not include_inactive:
            query += " WHERE active = 1"
        query += " ORDER BY updated_at DESC"
        with self._transaction() as conn:
            return [TemplateRecord.from_row(row) for row in conn.execute(query).fetchall()]

    def insert_template(
        self,
        template_id: str,
        fingerprint_key: str,
        data_json: str,
        weight: float,
        active: bool = True,
        usage_count: int = 0,
        created_at: str | None = None,
    ) -> bool:
        """
        Insert a new template at version 1.

        Returns:
            False if an active template already exists for the key
        """
        now = created_at or _now_iso()
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO templates
                    (template_id, fingerprint_key, data_json, weight, active,
                     usage_count, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                    (
                        template_id,
                        fingerprint_key,
                        data_json,
                        weight,
                        int(active),
                        usage_count,
                        now,
                        now,
                    ),
                )
            return True
        except sqlite3.IntegrityError:
            logger.debug("Active template already exists for key %s", fingerprint_key[:12])
            return False

    def update_template(
        self,
        template_id: str,
        expected_version: int,
        data_json: str,
        weight: float,
        active: bool,
        usage_count: int,
        updated_at: str | None = None,
    ) -> bool:
        """
        Compare-and-set update.

        Returns:
            True if the row was at expected_version and has been bumped
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE templates
                SET data_json = ?, weight = ?, active = ?, usage_count = ?,
                    version = version + 1, updated_at = ?
                WHERE template_id = ? AND version = ?
            """,
                (
                    data_json,
                    weight,
                    int(active),
                    usage_count,
                    updated_at or _now_iso(),
                    template_id,
                    expected_version,
                ),
            )
            return cursor.rowcount == 1

    def add_template_event(
        self, template_id: str, event_type: str, detail: dict[str, Any] | None = None
    ) -> None:
        """Append to a template's audit trail."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO template_events (template_id, event_type, detail_json, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (template_id, event_type, json.dumps(detail or {}, default=str), _now_iso()),
            )

    def get_template_events(self, template_id: str) -> list[TemplateEventRecord]:
        """Audit trail for a template, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM template_events WHERE template_id = ? ORDER BY id",
                (template_id,),
            ).fetchall()
            return [TemplateEventRecord.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Extraction results
    # -------------------------------------------------------------------------

    def save_result(
        self,
        result_id: str,
        document_hash: str,
        strategy: str,
        success: bool,
        confidence: float,
        result_json: str,
        raw_text: str | None = None,
        fingerprint_json: str | None = None,
        created_at: str | None = None,
    ) -> None:
        """Store an extraction result (results are never updated)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO extraction_results
                (result_id, document_hash, strategy, success, confidence,
                 result_json, raw_text, fingerprint_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    result_id,
                    document_hash,
                    strategy,
                    int(success),
                    confidence,
                    result_json,
                    raw_text,
                    fingerprint_json,
                    created_at or _now_iso(),
                ),
            )

    def get_result(self, result_id: str) -> ResultRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM extraction_results WHERE result_id = ?", (result_id,)
            ).fetchone()
            return ResultRecord.from_row(row) if row else None

    def get_latest_result(
        self, document_hash: str, successful_only: bool = False
    ) -> ResultRecord | None:
        """Most recent result for a content hash."""
        query = "SELECT * FROM extraction_results WHERE document_hash = ?"
        if successful_only:
            query += " AND success = 1"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        with self._transaction() as conn:
            row = conn.execute(query, (document_hash,)).fetchone()
            return ResultRecord.from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Corrections and accuracy
    # -------------------------------------------------------------------------

    def save_correction(
        self,
        result_id: str,
        document_hash: str,
        feedback: str,
        correction_json: str,
        created_at: str | None = None,
    ) -> int:
        """Store a correction. Returns its row ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO corrections
                (result_id, document_hash, feedback, correction_json, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (result_id, document_hash, feedback, correction_json, created_at or _now_iso()),
            )
            return cursor.lastrowid

    def get_corrections(self, result_id: str) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM corrections WHERE result_id = ? ORDER BY id", (result_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def record_accuracy(
        self,
        result_id: str,
        template_id: str | None,
        strategy: str,
        feedback: str,
        accuracy: float,
        created_at: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO accuracy_records
                (result_id, template_id, strategy, feedback, accuracy, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (result_id, template_id, strategy, feedback, accuracy, created_at or _now_iso()),
            )

    def get_accuracy_records(self, since: str | None = None) -> list[AccuracyRecord]:
        """Accuracy records, optionally only those created at or after an ISO timestamp."""
        query = "SELECT * FROM accuracy_records"
        params: tuple = ()
        if since:
            query += " WHERE created_at >= ?"
            params = (since,)
        query += " ORDER BY created_at"
        with self._transaction() as conn:
            return [AccuracyRecord.from_row(row) for row in conn.execute(query, params).fetchall()]

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def ping(self) -> bool:
        """Cheap connectivity check for health reporting."""
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def get_stats(self) -> dict[str, int]:
        """Get pipeline statistics."""
        with self._transaction() as conn:
            stats = {}

            stats["results_total"] = conn.execute(
                "SELECT COUNT(*) FROM extraction_results"
            ).fetchone()[0]
            stats["results_successful"] = conn.execute(
                "SELECT COUNT(*) FROM extraction_results WHERE success = 1"
            ).fetchone()[0]
            stats["documents_seen"] = conn.execute(
                "SELECT COUNT(DISTINCT document_hash) FROM extraction_results"
            ).fetchone()[0]
            stats["templates_active"] = conn.execute(
                "SELECT COUNT(*) FROM templates WHERE active = 1"
            ).fetchone()[0]
            stats["templates_inactive"] = conn.execute(
                "SELECT COUNT(*) FROM templates WHERE active = 0"
            ).fetchone()[0]
            stats["corrections_total"] = conn.execute(
                "SELECT COUNT(*) FROM corrections"
            ).fetchone()[0]

            return stats

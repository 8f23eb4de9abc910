"""
SQLite database for persistent job storage.

Every conversion, cover and imposition job is recorded here, together with its
build state and event log, so job history survives server restarts.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load_json(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw else None


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: SQLite handles concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        _ensure_db_dir(db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
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
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    label TEXT NOT NULL,
                    status TEXT NOT NULL,
                    build_state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    document_id TEXT,
                    request TEXT,
                    work_dir TEXT,
                    pdf_path TEXT,
                    result TEXT,
                    s3_key TEXT,
                    download_url TEXT,
                    error TEXT,
                    events TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                ON jobs(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)

    def save_job(self, job_data: Dict[str, Any]) -> None:
        """
        Save or update a job record.

        Args:
            job_data: Dictionary with job fields
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO jobs (
                    id, kind, label, status, build_state,
                    created_at, updated_at, document_id, request,
                    work_dir, pdf_path, result, s3_key, download_url, error, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_data["id"],
                job_data["kind"],
                job_data["label"],
                job_data["status"],
                job_data["build_state"],
                _serialize_datetime(job_data["created_at"]),
                _serialize_datetime(job_data["updated_at"]),
                job_data.get("document_id"),
                json.dumps(job_data.get("request", {})),
                str(job_data["work_dir"]) if job_data.get("work_dir") else None,
                str(job_data["pdf_path"]) if job_data.get("pdf_path") else None,
                _dump_json(job_data.get("result")),
                job_data.get("s3_key"),
                job_data.get("download_url"),
                _dump_json(job_data.get("error")),
                json.dumps([
                    {"timestamp": _serialize_datetime(e["timestamp"]), "message": e["message"]}
                    for e in job_data.get("events", [])
                ]),
            ))

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Args:
            job_id: The job ID

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_dict(row)

    def list_jobs(self) -> List[Dict[str, Any]]:
        """
        List all jobs ordered by creation time (newest first).

        Returns:
            List of job data dictionaries
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC"
            ).fetchall()

            return [self._row_to_dict(row) for row in rows]

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        events_raw = json.loads(row["events"] or "[]")
        events = [
            {
                "timestamp": _deserialize_datetime(e["timestamp"]),
                "message": e["message"],
            }
            for e in events_raw
        ]

        return {
            "id": row["id"],
            "kind": row["kind"],
            "label": row["label"],
            "status": row["status"],
            "build_state": row["build_state"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "document_id": row["document_id"],
            "request": json.loads(row["request"] or "{}"),
            "work_dir": Path(row["work_dir"]) if row["work_dir"] else None,
            "pdf_path": Path(row["pdf_path"]) if row["pdf_path"] else None,
            "result": _load_json(row["result"]),
            "s3_key": row["s3_key"],
            "download_url": row["download_url"],
            "error": _load_json(row["error"]),
            "events": events,
        }

"""SQLite implementation of StatusStore.

This module provides a local status store using:
- sqlite-utils for table access
- WAL mode so an operator can read status while the worker writes
- Single-statement updates (each status write is atomic on its own row)
- A state transition table as an audit trail of every status change
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from ..errors import StatusUpdateError
from .backends import StatusStore
from .models import Job, JobStatus


SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS project (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    files TEXT,
    detail TEXT,
    ordering TEXT,
    feature TEXT,
    telegram_user TEXT,
    process_start TEXT,
    process_end TEXT,
    model_urls TEXT
);

CREATE INDEX IF NOT EXISTS idx_project_status ON project(status);

-- Notification recipients
CREATE TABLE IF NOT EXISTS telegram_user (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL
);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);
"""


class SQLiteStatusStore(StatusStore):
    """SQLite-backed job status store."""

    def __init__(self, db_path: str):
        """Open (and create if needed) the status database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Consumer runs the pipeline on a worker thread
        self.db = Database(sqlite3.connect(str(self.db_path), check_same_thread=False))

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            rows = list(self.db["project"].rows_where("id = ?", [str(job_id)]))
        except sqlite3.Error as e:
            raise StatusUpdateError(f"Failed to read job {job_id}: {e}") from e

        if not rows:
            return None
        return self._row_to_job(rows[0])

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        process_start: Optional[datetime] = None,
        process_end: Optional[datetime] = None,
        model_urls: Optional[List[str]] = None,
    ) -> None:
        status_value = JobStatus(status).value
        fields: Dict[str, Any] = {"status": status_value}
        if process_start is not None:
            fields["process_start"] = process_start.isoformat()
        if process_end is not None:
            fields["process_end"] = process_end.isoformat()
        if model_urls is not None:
            fields["model_urls"] = json.dumps(model_urls)

        assignments = ", ".join(f"{column} = ?" for column in fields)

        try:
            with self.db.conn:
                row = self.db.execute(
                    "SELECT status FROM project WHERE id = ?", [str(job_id)]
                ).fetchone()
                if row is None:
                    raise StatusUpdateError(f"Cannot update missing job {job_id}")

                self.db.execute(
                    f"UPDATE project SET {assignments} WHERE id = ?",
                    [*fields.values(), str(job_id)],
                )
                self._log_transition(str(job_id), row[0], status_value)
        except sqlite3.Error as e:
            raise StatusUpdateError(f"Failed to update job {job_id}: {e}") from e

    def get_telegram_chat_id(self, telegram_user: str) -> Optional[str]:
        try:
            rows = list(self.db["telegram_user"].rows_where("id = ?", [str(telegram_user)]))
        except sqlite3.Error as e:
            raise StatusUpdateError(f"Failed to read telegram user {telegram_user}: {e}") from e
        if not rows:
            return None
        return rows[0]["user_id"]

    def save_telegram_user(self, telegram_user: str, chat_id: str) -> None:
        """Register the chat id a notify target resolves to."""
        self.db["telegram_user"].insert(
            {"id": str(telegram_user), "user_id": str(chat_id)}, pk="id", replace=True
        )

    def save_job(self, job: Job) -> None:
        record = {
            "id": job.id,
            "status": JobStatus(job.status).value,
            "files": json.dumps(job.files),
            "detail": job.detail,
            "ordering": job.ordering,
            "feature": job.feature,
            "telegram_user": job.telegram_user,
            "process_start": job.process_start.isoformat() if job.process_start else None,
            "process_end": job.process_end.isoformat() if job.process_end else None,
            "model_urls": json.dumps(job.model_urls),
        }
        self.db["project"].insert(record, pk="id", replace=True)

    def reset_job(self, job_id: str) -> None:
        with self.db.conn:
            row = self.db.execute(
                "SELECT status FROM project WHERE id = ?", [str(job_id)]
            ).fetchone()
            if row is None:
                raise StatusUpdateError(f"Cannot reset missing job {job_id}")

            self.db.execute("""
                UPDATE project
                SET status = ?, process_start = NULL, process_end = NULL, model_urls = ?
                WHERE id = ?
            """, (JobStatus.PENDING.value, json.dumps([]), str(job_id)))
            self._log_transition(str(job_id), row[0], JobStatus.PENDING.value)

    def list_jobs(self, status_filter: Optional[str] = None) -> List[Job]:
        if status_filter:
            rows = self.db["project"].rows_where("status = ?", [status_filter])
        else:
            rows = self.db["project"].rows
        return [self._row_to_job(row) for row in rows]

    def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        return list(self.db["state_transitions"].rows_where(
            "job_id = ?", [str(job_id)], order_by="id"
        ))

    def _log_transition(self, job_id: str, from_state: Optional[str], to_state: str) -> None:
        """Append a status change to the audit trail (caller holds the transaction)."""
        self.db.execute("""
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp)
            VALUES (?, ?, ?, ?)
        """, (job_id, from_state, to_state, datetime.now().isoformat()))

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        item = dict(row)
        item["files"] = json.loads(item["files"]) if item.get("files") else []
        item["model_urls"] = json.loads(item["model_urls"]) if item.get("model_urls") else []
        return Job(**item)

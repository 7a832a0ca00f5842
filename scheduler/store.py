"""
Job and execution-history storage.

Jobs and their execution log live in a single SQLite database
(~/.agent-scheduler/jobs.db by default). Every public method is its own
transaction; nothing here schedules or cancels anything.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from scheduler.models import (
    Constraints,
    ExecutionLog,
    ExecutionStatus,
    Job,
    parse_status,
    schedule_from_dict,
    schedule_to_dict,
    from_iso,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    instruction TEXT NOT NULL,
    schedule TEXT NOT NULL,
    constraints TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_executed_at TEXT,
    execution_count INTEGER NOT NULL DEFAULT 0,
    max_executions INTEGER,
    notify_on_completion INTEGER NOT NULL DEFAULT 1,
    backend_handle TEXT,
    origin_conversation_id TEXT,
    agent_name TEXT
);

CREATE TABLE IF NOT EXISTS execution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL,
    result_summary TEXT,
    error_message TEXT,
    conversation_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_execution_log_job
    ON execution_log (job_id, started_at);
"""

_JOB_COLUMNS = (
    "id", "title", "description", "instruction", "schedule", "constraints",
    "enabled", "created_at", "last_executed_at", "execution_count",
    "max_executions", "notify_on_completion", "backend_handle",
    "origin_conversation_id", "agent_name",
)


def _job_to_row(job: Job) -> tuple:
    return (
        job.id,
        job.title or "",
        job.description,
        job.instruction,
        json.dumps(schedule_to_dict(job.schedule)),
        json.dumps(job.constraints.to_dict()),
        1 if job.enabled else 0,
        to_iso(job.created_at),
        to_iso(job.last_executed_at),
        job.execution_count,
        job.max_executions,
        1 if job.notify_on_completion else 0,
        job.backend_handle,
        job.origin_conversation_id,
        job.agent_name,
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        title=row["title"] or "",
        description=row["description"],
        instruction=row["instruction"],
        schedule=schedule_from_dict(json.loads(row["schedule"])),
        constraints=Constraints.from_dict(json.loads(row["constraints"] or "{}")),
        enabled=bool(row["enabled"]),
        created_at=from_iso(row["created_at"]),
        last_executed_at=from_iso(row["last_executed_at"]),
        execution_count=row["execution_count"],
        max_executions=row["max_executions"],
        notify_on_completion=bool(row["notify_on_completion"]),
        backend_handle=row["backend_handle"],
        origin_conversation_id=row["origin_conversation_id"],
        agent_name=row["agent_name"],
    )


def _row_to_log(row: sqlite3.Row) -> ExecutionLog:
    return ExecutionLog(
        id=row["id"],
        job_id=row["job_id"],
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        status=parse_status(row["status"]),
        result_summary=row["result_summary"],
        error_message=row["error_message"],
        conversation_id=row["conversation_id"],
    )


class JobStore:
    """
    SQLite-backed store for jobs and execution logs.

    A single connection is shared across threads and serialized with a lock,
    so each call is atomic with respect to the others. There are no
    cross-call transactions.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        with self._conn:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # =========================================================================
    # Jobs
    # =========================================================================

    def create(self, job: Job) -> Job:
        """Insert a job, or overwrite the definition if the ID already exists."""
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _JOB_COLUMNS if col != "id")
        sql = (
            f"INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        with self._lock, self._conn:
            self._conn.execute(sql, _job_to_row(job))
        return job

    def update(self, job: Job) -> bool:
        """Replace every mutable column of an existing job. Returns False if missing."""
        assignments = ", ".join(f"{col} = ?" for col in _JOB_COLUMNS if col != "id")
        row = _job_to_row(job)
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                row[1:] + (job.id,),
            )
        return cur.rowcount > 0

    def get_by_id(self, job_id: str) -> Optional[Job]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_enabled(self) -> List[Job]:
        return self._query_jobs("SELECT * FROM jobs WHERE enabled = 1 ORDER BY created_at DESC")

    def list_all(self) -> List[Job]:
        return self._query_jobs("SELECT * FROM jobs ORDER BY created_at DESC")

    def list_disabled(self, limit: int = 50, offset: int = 0) -> List[Job]:
        return self._query_jobs(
            "SELECT * FROM jobs WHERE enabled = 0 ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )

    def list_by_kind(self, kind: str, enabled_only: bool = True) -> List[Job]:
        """Jobs whose schedule has the given kind ("one_time", "recurring", ...)."""
        jobs = self.list_enabled() if enabled_only else self.list_all()
        return [job for job in jobs if job.schedule_kind == kind]

    def update_enabled(self, job_id: str, enabled: bool) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE jobs SET enabled = ? WHERE id = ?",
                (1 if enabled else 0, job_id),
            )

    def update_backend_handle(self, job_id: str, handle: Optional[str]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE jobs SET backend_handle = ? WHERE id = ?",
                (handle, job_id),
            )

    def update_last_execution(self, job_id: str, timestamp: datetime) -> None:
        """Set last_executed_at and bump execution_count."""
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE jobs SET last_executed_at = ?, execution_count = execution_count + 1 "
                "WHERE id = ?",
                (to_iso(timestamp), job_id),
            )

    def delete_by_id(self, job_id: str) -> bool:
        """Delete a job; its execution log rows cascade."""
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        return cur.rowcount > 0

    def _query_jobs(self, sql: str, params: tuple = ()) -> List[Job]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_job(row) for row in rows]

    # =========================================================================
    # Execution log
    # =========================================================================

    def insert_log(
        self,
        job_id: str,
        started_at: Optional[datetime] = None,
        status: ExecutionStatus = ExecutionStatus.CANCELLED,
        conversation_id: Optional[str] = None,
    ) -> int:
        """Insert a log row for a run that is starting. Returns the new log ID."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO execution_log (job_id, started_at, status, conversation_id) "
                "VALUES (?, ?, ?, ?)",
                (job_id, to_iso(started_at or utcnow()), status.value, conversation_id),
            )
        return cur.lastrowid

    def get_log(self, log_id: int) -> Optional[ExecutionLog]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM execution_log WHERE id = ?", (log_id,)
            ).fetchone()
        return _row_to_log(row) if row else None

    def complete_log(
        self,
        log_id: int,
        status: ExecutionStatus,
        summary: Optional[str] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> bool:
        with self._lock, self._conn:
            cur = self._complete_log(self._conn, log_id, status, summary, error,
                                     completed_at or utcnow(), conversation_id)
        return cur.rowcount > 0

    def finish_execution(
        self,
        log_id: int,
        status: ExecutionStatus,
        summary: Optional[str] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Complete a log row and record the run on its job in one transaction.

        Returns the job as it stands after the update, or None if either the
        log row or the job no longer exists.
        """
        completed_at = completed_at or utcnow()
        with self._lock:
            row = self._conn.execute(
                "SELECT job_id FROM execution_log WHERE id = ?", (log_id,)
            ).fetchone()
            if row is None:
                logger.warning("Execution log %s not found; run outcome not recorded", log_id)
                return None
            job_id = row["job_id"]
            with self._conn:
                self._complete_log(self._conn, log_id, status, summary, error,
                                   completed_at, conversation_id)
                self._conn.execute(
                    "UPDATE jobs SET last_executed_at = ?, execution_count = execution_count + 1 "
                    "WHERE id = ?",
                    (to_iso(completed_at), job_id),
                )
            return self.get_by_id(job_id)

    @staticmethod
    def _complete_log(conn, log_id, status, summary, error, completed_at, conversation_id):
        return conn.execute(
            "UPDATE execution_log SET completed_at = ?, status = ?, result_summary = ?, "
            "error_message = ?, conversation_id = COALESCE(?, conversation_id) WHERE id = ?",
            (to_iso(completed_at), status.value, summary, error, conversation_id, log_id),
        )

    def logs_for_job(self, job_id: str, limit: Optional[int] = None, offset: int = 0) -> List[ExecutionLog]:
        """Execution history for a job, newest first."""
        sql = "SELECT * FROM execution_log WHERE job_id = ? ORDER BY started_at DESC, id DESC"
        params: tuple = (job_id,)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += (limit, offset)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_log(row) for row in rows]

    def recent_logs(self, limit: int = 20) -> List[ExecutionLog]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM execution_log ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_log(row) for row in rows]

    def delete_logs_for_job(self, job_id: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM execution_log WHERE job_id = ?", (job_id,))
        return cur.rowcount

    def delete_logs_older_than(self, cutoff: datetime) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM execution_log WHERE started_at < ?", (to_iso(cutoff),)
            )
        return cur.rowcount

"""
Persistent periodic work queue for recurring jobs.

Work requests live in their own SQLite database (work.db) so they survive
process restarts. Each request has a unique name (one per job) and a
generated work ID; the work ID is the handle callers store to cancel it.

The queue does not run anything itself. The daemon ticker calls claim_due()
to pick up runnable work and complete() once the worker has finished, which
either schedules the next period or a backoff retry.
"""

import json
import logging
import socket
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Union

import psutil

from scheduler.backends.base import ExistingWorkPolicy, RetryPolicy, WorkResult
from scheduler.models import Constraints, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

STATE_ENQUEUED = "enqueued"
STATE_RUNNING = "running"

SCHEMA = """
CREATE TABLE IF NOT EXISTS periodic_work (
    unique_name TEXT PRIMARY KEY,
    work_id TEXT NOT NULL UNIQUE,
    job_id TEXT NOT NULL,
    interval_minutes INTEGER NOT NULL,
    constraints TEXT NOT NULL DEFAULT '{}',
    next_run_at TEXT NOT NULL,
    run_attempt INTEGER NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'enqueued',
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_periodic_work_due
    ON periodic_work (state, next_run_at);
"""


def unique_work_name(job_id: str) -> str:
    return f"cronjob_{job_id}"


@dataclass
class WorkRequest:
    work_id: str
    unique_name: str
    job_id: str
    interval_minutes: int
    constraints: Constraints
    next_run_at: datetime
    run_attempt: int = 0
    state: str = STATE_ENQUEUED


def _row_to_work(row: sqlite3.Row) -> WorkRequest:
    return WorkRequest(
        work_id=row["work_id"],
        unique_name=row["unique_name"],
        job_id=row["job_id"],
        interval_minutes=row["interval_minutes"],
        constraints=Constraints.from_dict(json.loads(row["constraints"] or "{}")),
        next_run_at=from_iso(row["next_run_at"]),
        run_attempt=row["run_attempt"],
        state=row["state"],
    )


# =============================================================================
# Constraint checks
# =============================================================================

class ConstraintChecker:
    """
    Evaluates work constraints against the host.

    Network reachability is checked with a short TCP connect and cached for a
    few seconds. Charging state comes from psutil; hosts without a battery
    count as plugged in.
    """

    def __init__(self, check_host: str = "1.1.1.1", check_port: int = 53,
                 timeout: float = 2.0, cache_seconds: float = 30.0):
        self.check_host = check_host
        self.check_port = check_port
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self._network_cache: Optional[tuple] = None

    def network_available(self) -> bool:
        now = time.monotonic()
        if self._network_cache and now - self._network_cache[0] < self.cache_seconds:
            return self._network_cache[1]
        try:
            with socket.create_connection((self.check_host, self.check_port), timeout=self.timeout):
                available = True
        except OSError:
            available = False
        self._network_cache = (now, available)
        return available

    def charging(self) -> bool:
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError):
            return True
        if battery is None:
            return True
        return bool(battery.power_plugged)

    def is_satisfied(self, constraints: Constraints) -> bool:
        if constraints.requires_network and not self.network_available():
            return False
        if constraints.requires_charging and not self.charging():
            return False
        return True


# =============================================================================
# Queue
# =============================================================================

class PeriodicWorkQueue:
    """SQLite-backed periodic work with unique names and backoff retries."""

    def __init__(
        self,
        db_path: Union[str, Path],
        retry_policy: Optional[RetryPolicy] = None,
        constraint_checker: Optional[ConstraintChecker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.retry_policy = retry_policy or RetryPolicy()
        self.constraint_checker = constraint_checker or ConstraintChecker()
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        with self._conn:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def enqueue_unique_periodic(
        self,
        unique_name: str,
        job_id: str,
        interval_minutes: int,
        constraints: Optional[Constraints] = None,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.REPLACE,
    ) -> WorkRequest:
        """
        Enqueue periodic work under a unique name.

        With REPLACE any existing work of the same name is dropped and a new
        request (with a new work ID) takes its place, so there is never more
        than one schedule per name. With KEEP an existing request is returned
        unchanged.
        """
        constraints = constraints or Constraints()
        now = self._clock()
        with self._lock:
            existing = self._conn.execute(
                "SELECT * FROM periodic_work WHERE unique_name = ?", (unique_name,)
            ).fetchone()
            if existing is not None and policy == ExistingWorkPolicy.KEEP:
                return _row_to_work(existing)

            work = WorkRequest(
                work_id=str(uuid.uuid4()),
                unique_name=unique_name,
                job_id=job_id,
                interval_minutes=interval_minutes,
                constraints=constraints,
                next_run_at=now + timedelta(minutes=interval_minutes),
            )
            with self._conn:
                self._conn.execute("DELETE FROM periodic_work WHERE unique_name = ?", (unique_name,))
                self._conn.execute(
                    "INSERT INTO periodic_work (unique_name, work_id, job_id, interval_minutes, "
                    "constraints, next_run_at, run_attempt, state, enqueued_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
                    (
                        work.unique_name, work.work_id, work.job_id, work.interval_minutes,
                        json.dumps(constraints.to_dict()), to_iso(work.next_run_at),
                        STATE_ENQUEUED, to_iso(now),
                    ),
                )
        if existing is not None:
            logger.debug("Replaced periodic work %s (old id %s)", unique_name, existing["work_id"])
        logger.info("Enqueued periodic work %s every %d min (id %s)", unique_name, interval_minutes, work.work_id)
        return work

    def cancel_work_by_id(self, work_id: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM periodic_work WHERE work_id = ?", (work_id,))
        return cur.rowcount > 0

    def cancel_unique_work(self, unique_name: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM periodic_work WHERE unique_name = ?", (unique_name,))
        return cur.rowcount > 0

    def get_work(self, work_id: str) -> Optional[WorkRequest]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM periodic_work WHERE work_id = ?", (work_id,)
            ).fetchone()
        return _row_to_work(row) if row else None

    def get_unique_work(self, unique_name: str) -> Optional[WorkRequest]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM periodic_work WHERE unique_name = ?", (unique_name,)
            ).fetchone()
        return _row_to_work(row) if row else None

    def list_work(self, job_id: Optional[str] = None) -> List[WorkRequest]:
        with self._lock:
            if job_id is None:
                rows = self._conn.execute(
                    "SELECT * FROM periodic_work ORDER BY next_run_at"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM periodic_work WHERE job_id = ? ORDER BY next_run_at", (job_id,)
                ).fetchall()
        return [_row_to_work(row) for row in rows]

    def claim_due(self, now: Optional[datetime] = None) -> List[WorkRequest]:
        """
        Mark every runnable, due request as running and return it.

        Requests whose constraints are not met stay enqueued and are looked at
        again on the next call.
        """
        now = now or self._clock()
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM periodic_work WHERE state = ? AND next_run_at <= ? ORDER BY next_run_at",
                (STATE_ENQUEUED, to_iso(now)),
            ).fetchall()

        # Constraint checks can block on the network; run them unlocked
        runnable = []
        for row in rows:
            work = _row_to_work(row)
            if not self.constraint_checker.is_satisfied(work.constraints):
                logger.debug("Work %s deferred: constraints not met", work.unique_name)
                continue
            runnable.append(work)

        claimed = []
        with self._lock:
            for work in runnable:
                with self._conn:
                    cur = self._conn.execute(
                        "UPDATE periodic_work SET state = ? WHERE work_id = ? AND state = ?",
                        (STATE_RUNNING, work.work_id, STATE_ENQUEUED),
                    )
                if cur.rowcount:
                    work.state = STATE_RUNNING
                    claimed.append(work)
        return claimed

    def complete(self, work_id: str, result: WorkResult, now: Optional[datetime] = None) -> Optional[WorkRequest]:
        """
        Record a worker's result and schedule the next run.

        SUCCESS and FAILURE move on to the next period. RETRY schedules a
        backoff retry until the retry policy is exhausted, then also moves on
        to the next period. Work cancelled while it was running is left gone.
        """
        now = now or self._clock()
        with self._lock:
            work = self.get_work(work_id)
            if work is None:
                logger.debug("Work %s finished after being cancelled", work_id)
                return None

            attempt = 0
            next_run_at = now + timedelta(minutes=work.interval_minutes)
            if result == WorkResult.RETRY:
                attempt = work.run_attempt + 1
                if self.retry_policy.should_retry(attempt):
                    next_run_at = now + timedelta(seconds=self.retry_policy.delay_for(attempt))
                    logger.info("Work %s retry %d/%d at %s", work.unique_name, attempt,
                                self.retry_policy.max_attempts, next_run_at.isoformat())
                else:
                    logger.warning("Work %s exhausted %d retries; waiting for next period",
                                   work.unique_name, self.retry_policy.max_attempts)
                    attempt = 0

            with self._conn:
                self._conn.execute(
                    "UPDATE periodic_work SET state = ?, run_attempt = ?, next_run_at = ? WHERE work_id = ?",
                    (STATE_ENQUEUED, attempt, to_iso(next_run_at), work_id),
                )
            work.state = STATE_ENQUEUED
            work.run_attempt = attempt
            work.next_run_at = next_run_at
            return work

    def recover_interrupted(self) -> int:
        """Return work left 'running' by a process that died back to the queue."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE periodic_work SET state = ? WHERE state = ?",
                (STATE_ENQUEUED, STATE_RUNNING),
            )
        if cur.rowcount:
            logger.info("Recovered %d interrupted periodic work item(s)", cur.rowcount)
        return cur.rowcount

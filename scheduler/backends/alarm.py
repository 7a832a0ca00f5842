"""
Exact alarm backend for one-shot jobs.

Alarms are held in memory and fired from a single background thread at the
requested wall-clock time, including while the process is otherwise idle.
They are keyed deterministically by job ID, so cancelling needs nothing but
the ID. Alarms do not survive process death; JobManager.reschedule_alarms()
rebuilds them from the job store at start-up.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from scheduler.models import ensure_utc, utcnow

logger = logging.getLogger(__name__)

AlarmReceiver = Callable[[str, int], None]


def alarm_key(job_id: str) -> str:
    """The key an alarm for this job is registered under."""
    return f"cronjob_alarm:{job_id}"


@dataclass
class Alarm:
    job_id: str
    fire_at: datetime
    attempt: int = 0


class AlarmClock:
    """
    Exact timer keyed by job ID.

    set_exact() replaces any alarm already registered for the job. cancel()
    on an unknown job is a no-op. The receiver is called with the job ID and
    the retry attempt the alarm was armed with, on the alarm thread, and must
    return quickly.
    """

    def __init__(self, receiver: Optional[AlarmReceiver] = None, clock: Callable[[], datetime] = utcnow):
        self._receiver = receiver
        self._clock = clock
        self._alarms: Dict[str, Alarm] = {}
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def set_receiver(self, receiver: AlarmReceiver) -> None:
        self._receiver = receiver

    # -------------------------------------------------------------------------
    # Alarm registration
    # -------------------------------------------------------------------------

    def set_exact(self, job_id: str, fire_at: datetime, attempt: int = 0) -> None:
        fire_at = ensure_utc(fire_at)
        with self._cond:
            self._alarms[alarm_key(job_id)] = Alarm(job_id=job_id, fire_at=fire_at, attempt=attempt)
            self._cond.notify_all()
        logger.debug("Alarm set for job %s at %s", job_id, fire_at.isoformat())

    def cancel(self, job_id: str) -> bool:
        with self._cond:
            removed = self._alarms.pop(alarm_key(job_id), None)
            self._cond.notify_all()
        if removed:
            logger.debug("Alarm cancelled for job %s", job_id)
        return removed is not None

    def get(self, job_id: str) -> Optional[Alarm]:
        with self._cond:
            return self._alarms.get(alarm_key(job_id))

    def pending(self) -> List[Alarm]:
        with self._cond:
            return sorted(self._alarms.values(), key=lambda a: a.fire_at)

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Remove every alarm due at `now` and deliver it. Returns the fired job IDs."""
        due = self._pop_due(now or self._clock())
        for alarm in due:
            self._deliver(alarm)
        return [alarm.job_id for alarm in due]

    def _pop_due(self, now: datetime) -> List[Alarm]:
        with self._cond:
            due = [a for a in self._alarms.values() if a.fire_at <= now]
            for alarm in due:
                del self._alarms[alarm_key(alarm.job_id)]
        return sorted(due, key=lambda a: a.fire_at)

    def _deliver(self, alarm: Alarm) -> None:
        if self._receiver is None:
            logger.warning("Alarm for job %s fired with no receiver bound", alarm.job_id)
            return
        try:
            self._receiver(alarm.job_id, alarm.attempt)
        except Exception:
            logger.exception("Alarm receiver failed for job %s", alarm.job_id)

    def _seconds_until_next(self) -> Optional[float]:
        if not self._alarms:
            return None
        earliest = min(a.fire_at for a in self._alarms.values())
        return max(0.0, (earliest - self._clock()).total_seconds())

    def _run(self) -> None:
        logger.info("Alarm thread started")
        while True:
            with self._cond:
                if self._stopping:
                    break
                wait = self._seconds_until_next()
                if wait is None or wait > 0:
                    # Cap the wait so wall-clock jumps are noticed
                    self._cond.wait(timeout=60.0 if wait is None else min(wait, 60.0))
                    continue
            self.fire_due()
        logger.info("Alarm thread stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name="alarm-clock", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

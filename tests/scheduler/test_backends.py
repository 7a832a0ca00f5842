"""Tests for the alarm clock and the persistent periodic work queue."""

import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from scheduler.backends.alarm import AlarmClock, alarm_key
from scheduler.backends.base import ExistingWorkPolicy, RetryPolicy, WorkResult
from scheduler.backends.periodic import (
    STATE_ENQUEUED,
    STATE_RUNNING,
    ConstraintChecker,
    PeriodicWorkQueue,
    unique_work_name,
)
from scheduler.models import Constraints

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class AlwaysSatisfied(ConstraintChecker):
    def is_satisfied(self, constraints):
        return True


# =========================================================================
# Retry policy
# =========================================================================

class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(max_attempts=10, initial_backoff_seconds=30, max_backoff_seconds=100)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]

    def test_should_retry_is_bounded(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_from_config_keeps_defaults(self):
        policy = RetryPolicy.from_config({"max_attempts": 5})
        assert policy.max_attempts == 5
        assert policy.initial_backoff_seconds == 30.0


# =========================================================================
# Alarm clock
# =========================================================================

class TestAlarmClock:
    def test_alarm_key_is_deterministic(self):
        assert alarm_key("abc") == alarm_key("abc") == "cronjob_alarm:abc"

    def test_fire_due_delivers_only_due_alarms(self):
        clock = FakeClock()
        receiver = MagicMock()
        alarms = AlarmClock(receiver, clock=clock)
        alarms.set_exact("soon", NOW + timedelta(minutes=1))
        alarms.set_exact("later", NOW + timedelta(hours=1))

        assert alarms.fire_due() == []
        clock.advance(minutes=2)
        assert alarms.fire_due() == ["soon"]
        receiver.assert_called_once_with("soon", 0)
        assert alarms.get("later") is not None
        assert alarms.get("soon") is None

    def test_set_exact_replaces(self):
        alarms = AlarmClock(clock=FakeClock())
        alarms.set_exact("job", NOW + timedelta(hours=1))
        alarms.set_exact("job", NOW + timedelta(hours=2), attempt=1)
        pending = alarms.pending()
        assert len(pending) == 1
        assert pending[0].fire_at == NOW + timedelta(hours=2)
        assert pending[0].attempt == 1

    def test_cancel_unknown_is_noop(self):
        alarms = AlarmClock(clock=FakeClock())
        assert alarms.cancel("missing") is False

    def test_receiver_errors_do_not_escape(self):
        receiver = MagicMock(side_effect=RuntimeError("boom"))
        alarms = AlarmClock(receiver, clock=FakeClock(NOW + timedelta(days=1)))
        alarms.set_exact("job", NOW)
        assert alarms.fire_due() == ["job"]

    def test_thread_fires_past_alarm(self):
        fired = threading.Event()
        alarms = AlarmClock(lambda job_id, attempt: fired.set())
        alarms.set_exact("job", datetime.now(timezone.utc) - timedelta(seconds=1))
        alarms.start()
        try:
            assert fired.wait(timeout=5)
        finally:
            alarms.stop()


# =========================================================================
# Periodic work queue
# =========================================================================

@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(tmp_path, clock):
    q = PeriodicWorkQueue(
        tmp_path / "work.db",
        retry_policy=RetryPolicy(max_attempts=2, initial_backoff_seconds=30),
        constraint_checker=AlwaysSatisfied(),
        clock=clock,
    )
    yield q
    q.close()


class TestPeriodicWorkQueue:
    def test_first_run_is_one_interval_out(self, queue):
        work = queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 30)
        assert work.next_run_at == NOW + timedelta(minutes=30)
        assert work.state == STATE_ENQUEUED

    def test_replace_keeps_a_single_schedule(self, queue):
        name = unique_work_name("j1")
        first = queue.enqueue_unique_periodic(name, "j1", 30)
        second = queue.enqueue_unique_periodic(name, "j1", 60)
        assert first.work_id != second.work_id
        assert [w.work_id for w in queue.list_work("j1")] == [second.work_id]
        assert queue.get_work(first.work_id) is None

    def test_keep_returns_existing(self, queue):
        name = unique_work_name("j1")
        first = queue.enqueue_unique_periodic(name, "j1", 30)
        again = queue.enqueue_unique_periodic(name, "j1", 60, policy=ExistingWorkPolicy.KEEP)
        assert again.work_id == first.work_id
        assert again.interval_minutes == 30

    def test_claim_due_marks_running(self, queue, clock):
        work = queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        assert queue.claim_due() == []
        clock.advance(minutes=15)
        claimed = queue.claim_due()
        assert [w.work_id for w in claimed] == [work.work_id]
        assert queue.get_work(work.work_id).state == STATE_RUNNING
        # Already claimed
        assert queue.claim_due() == []

    def test_success_moves_to_next_period(self, queue, clock):
        work = queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        clock.advance(minutes=15)
        queue.claim_due()
        done = queue.complete(work.work_id, WorkResult.SUCCESS)
        assert done.state == STATE_ENQUEUED
        assert done.next_run_at == clock() + timedelta(minutes=15)

    def test_retry_backs_off_then_gives_up(self, queue, clock):
        work = queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        clock.advance(minutes=15)

        first = queue.complete(work.work_id, WorkResult.RETRY)
        assert first.run_attempt == 1
        assert first.next_run_at == clock() + timedelta(seconds=30)

        second = queue.complete(work.work_id, WorkResult.RETRY)
        assert second.run_attempt == 2
        assert second.next_run_at == clock() + timedelta(seconds=60)

        exhausted = queue.complete(work.work_id, WorkResult.RETRY)
        assert exhausted.run_attempt == 0
        assert exhausted.next_run_at == clock() + timedelta(minutes=15)

    def test_complete_after_cancel(self, queue):
        work = queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        assert queue.cancel_work_by_id(work.work_id)
        assert queue.complete(work.work_id, WorkResult.SUCCESS) is None

    def test_cancel_unique_work(self, queue):
        queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        assert queue.cancel_unique_work(unique_work_name("j1"))
        assert not queue.cancel_unique_work(unique_work_name("j1"))

    def test_recover_interrupted(self, queue, clock):
        queue.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        clock.advance(minutes=15)
        queue.claim_due()
        assert queue.recover_interrupted() == 1
        assert len(queue.claim_due()) == 1

    def test_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "work.db"
        q1 = PeriodicWorkQueue(path, clock=clock, constraint_checker=AlwaysSatisfied())
        work = q1.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15)
        q1.close()
        q2 = PeriodicWorkQueue(path, clock=clock, constraint_checker=AlwaysSatisfied())
        try:
            assert q2.get_unique_work(unique_work_name("j1")).work_id == work.work_id
        finally:
            q2.close()

    def test_unmet_constraints_defer(self, tmp_path, clock):
        checker = ConstraintChecker()
        q = PeriodicWorkQueue(tmp_path / "work.db", clock=clock, constraint_checker=checker)
        try:
            q.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15, Constraints(requires_network=True))
            clock.advance(minutes=15)
            with patch.object(checker, "network_available", return_value=False):
                assert q.claim_due() == []
            with patch.object(checker, "network_available", return_value=True):
                assert len(q.claim_due()) == 1
        finally:
            q.close()

    def test_constraints_checked_without_holding_the_queue_lock(self, tmp_path, clock):
        seen = []

        class LockSpy(ConstraintChecker):
            def is_satisfied(self, constraints):
                # Another thread must be able to use the queue while constraints are checked
                def try_lock():
                    got = q._lock.acquire(blocking=False)
                    if got:
                        q._lock.release()
                    seen.append(got)

                t = threading.Thread(target=try_lock)
                t.start()
                t.join(timeout=5)
                return True

        q = PeriodicWorkQueue(tmp_path / "work.db", clock=clock, constraint_checker=LockSpy())
        try:
            q.enqueue_unique_periodic(unique_work_name("j1"), "j1", 15, Constraints(requires_network=True))
            clock.advance(minutes=15)
            assert len(q.claim_due()) == 1
            assert seen == [True]
        finally:
            q.close()


class TestConstraintChecker:
    def test_no_battery_counts_as_charging(self):
        with patch("scheduler.backends.periodic.psutil.sensors_battery", return_value=None):
            assert ConstraintChecker().charging()

    def test_on_battery(self):
        battery = SimpleNamespace(power_plugged=False, percent=50)
        with patch("scheduler.backends.periodic.psutil.sensors_battery", return_value=battery):
            checker = ConstraintChecker()
            assert not checker.charging()
            assert not checker.is_satisfied(Constraints(requires_charging=True))
            assert checker.is_satisfied(Constraints())

    def test_network_check_is_cached(self):
        checker = ConstraintChecker()
        with patch("scheduler.backends.periodic.socket.create_connection", side_effect=OSError) as conn:
            assert not checker.network_available()
            assert not checker.network_available()
        assert conn.call_count == 1

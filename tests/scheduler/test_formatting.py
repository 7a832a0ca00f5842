"""Tests for scheduler.formatting -- schedule strings in and out."""

from datetime import datetime, timedelta, timezone

import pytest

from scheduler.errors import ValidationError
from scheduler.formatting import (
    format_cron_expression,
    format_interval_minutes,
    format_schedule,
    parse_duration,
    parse_schedule,
)
from scheduler.models import Conditional, OneTime, Recurring, new_job

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestParseDuration:
    @pytest.mark.parametrize("text,minutes", [("30m", 30), ("2h", 120), ("1d", 1440), ("45 minutes", 45)])
    def test_units(self, text, minutes):
        assert parse_duration(text) == minutes

    def test_garbage(self):
        with pytest.raises(ValidationError):
            parse_duration("soon")


class TestParseSchedule:
    def test_duration_is_one_shot_from_now(self):
        assert parse_schedule("30m", now=lambda: NOW) == OneTime(NOW + timedelta(minutes=30))

    def test_every(self):
        assert parse_schedule("every 2h") == Recurring(interval_minutes=120)

    def test_cron(self):
        assert parse_schedule("0 9 * * 1-5") == Recurring(cron_expression="0 9 * * 1-5")

    def test_invalid_cron(self):
        with pytest.raises(ValidationError):
            parse_schedule("61 9 * * *")

    def test_timestamp_with_offset(self):
        parsed = parse_schedule("2026-03-02T09:00:00+00:00")
        assert parsed == OneTime(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))

    def test_naive_timestamp_is_local_time(self):
        parsed = parse_schedule("2026-03-02T09:00")
        expected = datetime(2026, 3, 2, 9, 0).astimezone().astimezone(timezone.utc)
        assert parsed.execute_at == expected

    def test_conditional(self):
        assert parse_schedule("Conditional") == Conditional()

    def test_unrecognised(self):
        with pytest.raises(ValidationError, match="Invalid schedule"):
            parse_schedule("whenever you like")


class TestFormatting:
    @pytest.mark.parametrize("minutes,text", [
        (30, "Every 30 min"),
        (60, "Every hour"),
        (120, "Every 2 hours"),
        (90, "Every 90 min"),
        (1440, "Every day"),
        (10080, "Every week"),
    ])
    def test_intervals(self, minutes, text):
        assert format_interval_minutes(minutes) == text

    @pytest.mark.parametrize("expr,text", [
        ("* * * * *", "Every minute"),
        ("*/5 * * * *", "Every 5 minutes"),
        ("0 * * * *", "Every hour"),
        ("0 */3 * * *", "Every 3 hours"),
        ("0 9 * * *", "Daily at 9:00 AM"),
        ("30 14 * * *", "Daily at 2:30 PM"),
        ("0 0 * * *", "Daily at 12:00 AM"),
        ("0 9 * * MON", "Every Monday at 9:00 AM"),
        ("0 9 1 * *", "Monthly on the 1st at 9:00 AM"),
        ("0 9 1 6 *", "Yearly on Jun 1 at 9:00 AM"),
    ])
    def test_cron(self, expr, text):
        assert format_cron_expression(expr) == text

    def test_unusual_cron_is_returned_verbatim(self):
        assert format_cron_expression("5,35 9-17 * * 1-5") == "5,35 9-17 * * 1-5"

    def test_format_schedule_for_job(self):
        job = new_job("x", Recurring(interval_minutes=45))
        assert format_schedule(job) == "Every 45 min"
        assert format_schedule(Conditional()) == "Conditional"

    def test_format_one_time_uses_local_time(self):
        local = NOW.astimezone().strftime("%Y-%m-%d %H:%M")
        assert format_schedule(OneTime(NOW)) == f"Once at {local}"

"""
Job schedule tests
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import ConfigurationError
from tasks.triggers import CronSchedule, IntervalSchedule, parse_schedule

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_interval_fires_strictly_after():
    schedule = IntervalSchedule(timedelta(minutes=1))

    assert schedule.next_fire_time(T0) == T0 + timedelta(minutes=1)
    assert schedule.next_fire_time(T0 + timedelta(seconds=30)) == T0 + timedelta(minutes=1)
    assert schedule.next_fire_time(T0 + timedelta(seconds=90)) == T0 + timedelta(minutes=2)


def test_interval_grid_is_independent_of_start_time():
    schedule = IntervalSchedule(timedelta(minutes=15))

    assert schedule.next_fire_time(T0 + timedelta(minutes=7)) == T0 + timedelta(minutes=15)


def test_interval_must_be_positive():
    with pytest.raises(ConfigurationError):
        IntervalSchedule(timedelta(0))


def test_cron_in_timezone_returns_utc():
    schedule = CronSchedule("0 0 * * *", tz="America/New_York")

    fire_time = schedule.next_fire_time(T0)

    assert fire_time == datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc)
    assert fire_time.utcoffset() == timedelta(0)


def test_cron_fires_strictly_after():
    schedule = CronSchedule("0 * * * *")

    assert schedule.next_fire_time(T0) == T0 + timedelta(hours=1)


def test_cron_rejects_unknown_timezone():
    with pytest.raises(ConfigurationError):
        CronSchedule("0 0 * * *", tz="Mars/Olympus_Mons")


def test_cron_rejects_bad_expression():
    with pytest.raises(ConfigurationError):
        CronSchedule("61 * * * *")


@pytest.mark.parametrize("text,expected", [
    ("5 MINUTES", timedelta(minutes=5)),
    ("1 minute", timedelta(minutes=1)),
    ("30 SECONDS", timedelta(seconds=30)),
    ("2 HOURS", timedelta(hours=2)),
])
def test_parse_interval(text, expected):
    schedule = parse_schedule(text)

    assert isinstance(schedule, IntervalSchedule)
    assert schedule.interval == expected


def test_parse_using_cron_with_timezone():
    schedule = parse_schedule("USING CRON 0 2 * * * Europe/Berlin")

    assert isinstance(schedule, CronSchedule)
    assert schedule.expression == "0 2 * * *"
    assert schedule.timezone.key == "Europe/Berlin"


def test_parse_bare_cron_defaults_to_utc():
    schedule = parse_schedule("0 */6 * * *")

    assert isinstance(schedule, CronSchedule)
    assert schedule.next_fire_time(T0) == T0 + timedelta(hours=6)


@pytest.mark.parametrize("text", ["sometimes", "0 0 * *", "0 MINUTES", "USING CRON 0 0 * * * Nowhere/Special"])
def test_parse_rejects_invalid(text):
    with pytest.raises(ConfigurationError):
        parse_schedule(text)

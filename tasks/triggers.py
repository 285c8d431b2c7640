"""
Job schedules.

A schedule is anything with next_fire_time(after) -> datetime. Expressions
are parsed once, at registration time, into APScheduler triggers.

Supported text forms:
    USING CRON 0 0 * * * UTC      cron expression followed by a timezone
    0 */6 * * *                   bare cron expression (UTC)
    5 MINUTES / 30 SECONDS / 1 HOUR
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import re

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.exceptions import ConfigurationError
from core.timeutils import ensure_utc

# Interval grids are anchored here so fire times do not depend on when the
# process started
INTERVAL_ANCHOR = datetime(2000, 1, 1, tzinfo=timezone.utc)

_INTERVAL_PATTERN = re.compile(
    r"^\s*(\d+)\s*(SECOND|SECONDS|MINUTE|MINUTES|HOUR|HOURS)\s*$", re.IGNORECASE
)
_CRON_PATTERN = re.compile(r"^\s*USING\s+CRON\s+(.+?)\s*$", re.IGNORECASE)


class Schedule(ABC):
    """Pluggable schedule capability"""

    @abstractmethod
    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """First fire time strictly after `after` (None when exhausted)"""
        pass


class IntervalSchedule(Schedule):
    """Fires every `interval`, on a grid anchored at INTERVAL_ANCHOR"""

    def __init__(self, interval: timedelta, anchor: datetime = INTERVAL_ANCHOR):
        if interval <= timedelta(0):
            raise ConfigurationError(
                "Interval must be positive", context={"interval": str(interval)}
            )
        self.interval = interval
        self.trigger = IntervalTrigger(
            seconds=interval.total_seconds(),
            start_date=ensure_utc(anchor),
            timezone=timezone.utc
        )

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        # APScheduler returns the first fire time >= now
        now = ensure_utc(after) + timedelta(microseconds=1)
        return self.trigger.get_next_fire_time(None, now)

    def __repr__(self) -> str:
        return f"IntervalSchedule({self.interval})"


class CronSchedule(Schedule):
    """Standard 5-field cron expression evaluated in a timezone"""

    def __init__(self, expression: str, tz: str = "UTC"):
        try:
            self.timezone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(
                f"Unknown timezone '{tz}'", context={"timezone": tz}, original_exception=e
            )
        try:
            self.trigger = CronTrigger.from_crontab(expression, timezone=self.timezone)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid cron expression '{expression}'",
                context={"expression": expression},
                original_exception=e
            )
        self.expression = expression

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        now = ensure_utc(after) + timedelta(microseconds=1)
        fire_time = self.trigger.get_next_fire_time(None, now)
        return fire_time.astimezone(timezone.utc) if fire_time else None

    def __repr__(self) -> str:
        return f"CronSchedule('{self.expression}', {self.timezone.key})"


def parse_schedule(text: str) -> Schedule:
    """
    Parse a schedule expression into a Schedule.

    Raises:
        ConfigurationError: unrecognized expression
    """
    interval = _INTERVAL_PATTERN.match(text)
    if interval:
        amount, unit = int(interval.group(1)), interval.group(2).lower().rstrip("s")
        return IntervalSchedule(timedelta(**{f"{unit}s": amount}))

    cron = _CRON_PATTERN.match(text)
    fields = (cron.group(1) if cron else text).split()
    if len(fields) == 6:
        return CronSchedule(" ".join(fields[:5]), tz=fields[5])
    if len(fields) == 5:
        return CronSchedule(" ".join(fields))

    raise ConfigurationError(
        f"Unrecognized schedule '{text}'", context={"schedule": text}
    )

"""
Scheduled jobs.

Modules:
    triggers: Interval and cron schedules (APScheduler triggers)
    runner: Supervised, non-overlapping execution of due jobs
    jobs: Built-in job actions and construction from configuration
"""

__all__ = [
    "TaskRunner",
    "ScheduledJob",
    "JobOutcome",
    "IntervalSchedule",
    "CronSchedule",
    "parse_schedule",
    "build_job",
]

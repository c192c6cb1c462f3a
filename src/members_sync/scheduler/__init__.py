"""Scheduling for members sync runs."""

from .sync_scheduler import (
    SyncScheduler,
    SchedulerError,
    parse_cron_expression,
    INCREMENTAL_JOB_ID,
    FULL_JOB_ID
)

__all__ = [
    "SyncScheduler",
    "SchedulerError",
    "parse_cron_expression",
    "INCREMENTAL_JOB_ID",
    "FULL_JOB_ID"
]

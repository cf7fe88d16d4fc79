"""Cron-driven background jobs."""

from .config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions
from .runner import JobScheduler

__all__ = ["JobDefinition", "JobScheduler", "RetryPolicy", "ScheduleConfig", "load_job_definitions"]

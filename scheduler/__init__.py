"""
Worktree Job Scheduler

Runs named shell commands against a working directory, on demand or on a
cron schedule, and keeps a history of their runs and output.

Features:
- At most one in-flight run per job
- Graceful stop with escalation to a forceful kill
- Cron-style scheduling (APScheduler), rehydrated on startup
- Persistent job and run history (SQLite)
- Status events for UI observers
"""

from scheduler.service import SchedulerService
from scheduler.coordinator import ExecutionCoordinator
from scheduler.config import SchedulerConfig
from scheduler.events import StatusEvent, StatusEventBus
from scheduler.models import Job, JobRun
from scheduler.process import ProcessSupervisor, parse_command
from scheduler.registry import SchedulerRegistry
from scheduler.store import RunRecordStore
from scheduler.errors import (
    SchedulerError,
    ValidationError,
    NotFoundError,
    AlreadyRunningError,
    NotRunningError,
    SpawnError,
)

__version__ = "0.1.0"
__all__ = [
    "SchedulerService",
    "ExecutionCoordinator",
    "SchedulerConfig",
    "StatusEvent",
    "StatusEventBus",
    "Job",
    "JobRun",
    "ProcessSupervisor",
    "parse_command",
    "SchedulerRegistry",
    "RunRecordStore",
    "SchedulerError",
    "ValidationError",
    "NotFoundError",
    "AlreadyRunningError",
    "NotRunningError",
    "SpawnError",
]

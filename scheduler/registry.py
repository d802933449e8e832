"""
Cron trigger registry backed by APScheduler.

Keeps one recurring trigger per scheduled job. Each tick calls the same run
path as a manual request; errors from a tick are logged and swallowed so one
failed tick never disables future ones.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from scheduler.models import Job

logger = logging.getLogger(__name__)

CRON_FIELDS = ('minute', 'hour', 'day', 'month', 'day_of_week')


def parse_cron_expression(cron_expr: str) -> Dict[str, Any]:
    """
    Parse cron expression into APScheduler kwargs.

    Accepts the standard five fields ("0 2 * * *") or six fields with a
    leading seconds field ("*/10 * * * * *").

    Raises:
        ValueError: If the expression has the wrong number of fields
    """
    parts = (cron_expr or '').split()
    if len(parts) == 5:
        return dict(zip(CRON_FIELDS, parts))
    if len(parts) == 6:
        kwargs = dict(zip(CRON_FIELDS, parts[1:]))
        kwargs['second'] = parts[0]
        return kwargs
    raise ValueError(f"Invalid cron expression: {cron_expr!r} (expected 5 or 6 fields)")


def build_cron_trigger(cron_expr: str, timezone=None) -> CronTrigger:
    """Build a trigger ticking in local time unless a timezone is given"""
    return CronTrigger(timezone=timezone, **parse_cron_expression(cron_expr))


class SchedulerRegistry:
    """Maps jobs to recurring cron triggers"""

    def __init__(
        self,
        on_tick: Callable[[int], Any],
        max_workers: int = 5,
        misfire_grace_time: int = 300,
        timezone=None
    ):
        """
        Initialize the registry.

        Args:
            on_tick: Called with the job id on every tick
            max_workers: Threads available for concurrent ticks
            misfire_grace_time: Seconds a late tick may still fire
            timezone: Trigger timezone (None = local time)
        """
        self.on_tick = on_tick
        self.timezone = timezone
        self._triggers: Dict[int, CronTrigger] = {}
        self._lock = threading.Lock()

        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults={
                'coalesce': True,  # Combine multiple missed runs into one
                'max_instances': 1,
                'misfire_grace_time': misfire_grace_time
            }
        )
        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_error_listener(event):
            logger.error(f"Trigger '{event.job_id}' raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning(f"Trigger '{event.job_id}' missed scheduled run time")

        def job_max_instances_listener(event):
            logger.warning(f"Trigger '{event.job_id}' skipped, previous tick still in progress")

        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

    @staticmethod
    def validate(cron_expr: str) -> bool:
        """Check a cron expression without scheduling anything"""
        try:
            build_cron_trigger(cron_expr)
        except ValueError:
            return False
        return True

    def register(self, job: Job) -> bool:
        """
        Install a recurring trigger for a job.

        An invalid expression is logged, not raised: the job stays usable for
        manual runs.

        Returns:
            True if a trigger is now active for the job
        """
        if not job.cron:
            return False

        try:
            trigger = build_cron_trigger(job.cron, self.timezone)
        except ValueError as e:
            logger.error(f"Invalid cron expression for job {job.id} ('{job.name}'): {e}")
            return False

        with self._lock:
            self.scheduler.add_job(
                self._tick,
                trigger,
                args=[job.id],
                id=str(job.id),
                name=job.name,
                replace_existing=True
            )
            self._triggers[job.id] = trigger

        logger.info(f"Registered job {job.id} ('{job.name}') with cron '{job.cron}'")
        return True

    def unregister(self, job_id: int):
        """Remove a job's trigger. Does nothing if there is none."""
        with self._lock:
            if self._triggers.pop(job_id, None) is None:
                return
            try:
                self.scheduler.remove_job(str(job_id))
            except JobLookupError:
                pass
        logger.info(f"Unregistered job {job_id}")

    def is_registered(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._triggers

    def registered_job_ids(self):
        with self._lock:
            return sorted(self._triggers)

    def next_fire_time(self, job_id: int) -> Optional[datetime]:
        """Next tick of a job's trigger as a naive local datetime"""
        with self._lock:
            trigger = self._triggers.get(job_id)
        if trigger is None:
            return None
        next_time = trigger.get_next_fire_time(None, datetime.now(trigger.timezone))
        if next_time is None:
            return None
        return next_time.astimezone().replace(tzinfo=None)

    def _tick(self, job_id: int):
        logger.info(f"Cron tick for job {job_id}")
        try:
            self.on_tick(job_id)
        except Exception as e:
            logger.error(f"Error executing scheduled job {job_id}: {e}", exc_info=True)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Registry started with {len(self._triggers)} trigger(s)")

    def shutdown(self, wait: bool = False):
        with self._lock:
            self._triggers.clear()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Registry stopped")
        else:
            self.scheduler.remove_all_jobs()

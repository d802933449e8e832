"""
Core scheduler service.

Wires the run record store, process supervisor, execution coordinator,
cron registry and status event bus into one engine with an explicit
start/stop lifecycle. This is the API the UI layer talks to.
"""

import atexit
import json
import logging
import os
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from scheduler.config import SchedulerConfig
from scheduler.coordinator import ExecutionCoordinator
from scheduler.errors import NotFoundError, ValidationError, SchedulerError
from scheduler.events import StatusEvent, StatusEventBus
from scheduler.models import Job, JobRun
from scheduler.process import ProcessSupervisor
from scheduler.registry import SchedulerRegistry
from scheduler.store import RunRecordStore

logger = logging.getLogger(__name__)


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running(config: SchedulerConfig) -> Tuple[bool, Optional[int]]:
    """
    Check if a scheduler is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = config.pid_file

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        else:
            # Stale PID file, clean it up
            pid_file.unlink()
            return False, None
    except (ValueError, OSError):
        return False, None


def get_scheduler_info(config: SchedulerConfig) -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler.

    Returns:
        Dict with scheduler info or None if not running.
    """
    running, pid = is_scheduler_running(config)
    if not running:
        return None

    try:
        with open(config.info_file, 'r') as f:
            info = json.load(f)
    except (json.JSONDecodeError, OSError):
        info = {'data_dir': str(config.data_dir)}
    info['running'] = True
    info['pid'] = pid
    return info


class SchedulerService:
    """
    Job scheduling and execution engine.

    Collaborators are created from the configuration unless injected.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        store: Optional[RunRecordStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        bus: Optional[StatusEventBus] = None
    ):
        self.config = config or SchedulerConfig()
        execution = self.config.execution

        self.store = store or RunRecordStore(self.config.db_path)
        self.bus = bus or StatusEventBus()
        self.registry = SchedulerRegistry(
            on_tick=self._run_scheduled,
            max_workers=execution.max_workers,
            misfire_grace_time=execution.misfire_grace_time
        )
        self.coordinator = ExecutionCoordinator(
            self.store,
            supervisor or ProcessSupervisor(),
            self.bus,
            grace_period=execution.grace_period_seconds,
            max_output_chars=execution.max_output_chars,
            next_run_resolver=self.registry.next_fire_time
        )
        self._started = False
        self._owns_pid_file = False

    # Job management

    def create_job(self, worktree_path: str, name: str, command: str, cron: Optional[str] = None) -> Job:
        """
        Create a job and, if it has a cron expression, schedule it.

        An invalid cron expression does not fail creation: the job is kept for
        manual runs and the problem is reported on the event bus.

        Raises:
            ValidationError: If name, command or worktree path is empty
        """
        for label, value in (('worktree path', worktree_path), ('name', name), ('command', command)):
            if not value or not value.strip():
                raise ValidationError(f"Job {label} cannot be empty")

        cron = cron.strip() if cron and cron.strip() else None
        job = self.store.create_job(worktree_path, name, command, cron)
        logger.info(f"Created job {job.id} ('{name}') in {worktree_path}")

        if cron:
            job = self._schedule(job)
        return job

    def delete_job(self, job_id: int):
        """
        Delete a job, its runs, its schedule and any in-flight execution.

        Raises:
            NotFoundError: If the job does not exist
        """
        if self.store.get_job(job_id) is None:
            raise NotFoundError(f"Job not found: {job_id}")

        self.registry.unregister(job_id)
        self.coordinator.cancel(job_id)
        self.store.delete_job(job_id)
        logger.info(f"Deleted job {job_id}")

    def run_job(self, job_id: int) -> "Future[JobRun]":
        """Run a job now. See ExecutionCoordinator.run_job."""
        return self.coordinator.run_job(job_id)

    def stop_job(self, job_id: int):
        """Stop a job's in-flight run. See ExecutionCoordinator.stop_job."""
        self.coordinator.stop_job(job_id)

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.store.get_job(job_id)

    def list_jobs(self, worktree_path: Optional[str] = None) -> List[Job]:
        return self.store.list_jobs(worktree_path)

    def get_job_runs(self, job_id: int, limit: Optional[int] = 10) -> List[JobRun]:
        return self.store.get_job_runs(job_id, limit)

    def get_live_output(self, job_id: int) -> Optional[Tuple[str, str]]:
        return self.coordinator.get_live_output(job_id)

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        """Subscribe to status events. Returns an unsubscribe function."""
        return self.bus.subscribe(callback)

    def _schedule(self, job: Job) -> Job:
        if self.registry.register(job):
            return self.store.update_job(job.id, next_run=self.registry.next_fire_time(job.id))

        message = f"Invalid cron expression '{job.cron}': job {job.id} will only run manually"
        self.bus.publish(StatusEvent(job, None, message))
        return job

    def _run_scheduled(self, job_id: int):
        """Tick handler: same path as a manual run."""
        try:
            self.coordinator.run_job(job_id)
        except SchedulerError as e:
            logger.warning(f"Scheduled run of job {job_id} skipped: {e}")

    # Lifecycle

    def start(self, write_pid_file: bool = True):
        """
        Start the engine.

        Fails runs left over from an unclean shutdown, re-registers the cron
        triggers of all persisted jobs and starts ticking.
        """
        if self._started:
            logger.warning("Scheduler is already running")
            return

        if write_pid_file:
            running, pid = is_scheduler_running(self.config)
            if running and pid != os.getpid():
                logger.warning(f"Another scheduler is already running (PID: {pid})")

        logger.info("Starting scheduler...")
        self.coordinator.reconcile_interrupted()

        scheduled = 0
        for job in self.store.list_jobs():
            if job.cron:
                self._schedule(job)
                scheduled += 1

        self.registry.start()
        self._started = True

        if write_pid_file:
            self._write_pid_file()

        logger.info(f"Scheduler started with {scheduled} scheduled job(s)")

    def stop(self, wait: bool = True):
        """
        Stop the engine.

        Args:
            wait: If True, wait for killed runs to be recorded
        """
        logger.info("Stopping scheduler...")
        self.registry.shutdown()
        self.coordinator.shutdown(wait=wait)
        self.bus.close()
        self.store.close()
        self._remove_pid_file()
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._started

    def _write_pid_file(self):
        """Write the current process PID and scheduler info files."""
        pid_file = self.config.pid_file
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        self._owns_pid_file = True
        logger.debug(f"Wrote PID file: {pid_file}")

        scheduler_info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'config_path': str(self.config.config_path),
            'data_dir': str(self.config.data_dir),
            'db_path': str(self.config.db_path),
            'log_file': str(self.config.log_file),
            'working_directory': os.getcwd(),
        }

        try:
            with open(self.config.info_file, 'w') as f:
                json.dump(scheduler_info, f, indent=2)
            logger.debug(f"Wrote scheduler info file: {self.config.info_file}")
        except OSError as e:
            logger.warning(f"Failed to write scheduler info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files if this instance wrote them."""
        if not self._owns_pid_file:
            return
        self._owns_pid_file = False

        for path in (self.config.pid_file, self.config.info_file):
            try:
                if path.exists():
                    path.unlink()
                    logger.debug(f"Removed {path}")
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")

"""
Execution coordination for job runs.

The coordinator is the single source of truth for "is job X running". It
owns the state machine of one execution attempt:

    CREATED -> RUNNING -> SUCCESS | FAILED

All bookkeeping (the in-flight map and the termination timers) is guarded by
one lock. Process exit arrives on a supervisor thread and is handled as a
callback, never as a blocking wait.
"""

import logging
import threading
from concurrent.futures import Future, wait as wait_futures
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from scheduler.errors import AlreadyRunningError, NotFoundError, NotRunningError, SpawnError
from scheduler.events import StatusEvent, StatusEventBus
from scheduler.models import Job, JobRun, FAILED, RUNNING, SCHEDULED, SUCCESS
from scheduler.process import ProcessHandle, ProcessSupervisor
from scheduler.store import RunRecordStore

logger = logging.getLogger(__name__)

TERMINATION_GRACE_SECONDS = 5.0

INTERRUPTED_NOTE = "[run interrupted: the scheduler stopped before the process finished]"


class OutputBuffer:
    """Accumulates decoded process output, optionally capped"""

    def __init__(self, max_chars: Optional[int] = None):
        self.max_chars = max_chars
        self.truncated = False
        self._chunks: List[str] = []
        self._size = 0
        self._lock = threading.Lock()

    def append(self, text: str):
        with self._lock:
            if self.max_chars is not None:
                room = self.max_chars - self._size
                if room <= 0:
                    self.truncated = True
                    return
                if len(text) > room:
                    text = text[:room]
                    self.truncated = True
            self._chunks.append(text)
            self._size += len(text)

    def getvalue(self) -> str:
        with self._lock:
            value = ''.join(self._chunks)
            if self.truncated:
                value += f"\n[output truncated after {self.max_chars} characters]"
            return value


@dataclass
class ActiveRun:
    """Bookkeeping for one in-flight run"""
    job: Job
    run: JobRun
    stdout: OutputBuffer
    stderr: OutputBuffer
    future: Future = field(default_factory=Future)
    handle: Optional[ProcessHandle] = None
    cancelled: bool = False

    @property
    def log_prefix(self) -> str:
        return f"[{self.job.name}:{self.run.id}] "


class ExecutionCoordinator:
    """Runs jobs, enforcing at most one in-flight run per job"""

    def __init__(
        self,
        store: RunRecordStore,
        supervisor: ProcessSupervisor,
        bus: StatusEventBus,
        grace_period: float = TERMINATION_GRACE_SECONDS,
        max_output_chars: Optional[int] = None,
        next_run_resolver: Optional[Callable[[int], Optional[datetime]]] = None
    ):
        """
        Initialize the coordinator.

        Args:
            store: Run record store
            supervisor: Process supervisor used to spawn commands
            bus: Event bus for status notifications
            grace_period: Seconds between SIGTERM and SIGKILL on stop
            max_output_chars: Per-stream output cap (None = unbounded)
            next_run_resolver: Returns the next scheduled time of a job, used
                to refresh next_run after a run of a cron job
        """
        self.store = store
        self.supervisor = supervisor
        self.bus = bus
        self.grace_period = grace_period
        self.max_output_chars = max_output_chars
        self.next_run_resolver = next_run_resolver

        self._lock = threading.RLock()
        self._active: Dict[int, ActiveRun] = {}
        self._timers: Dict[int, threading.Timer] = {}  # keyed by run id

    def run_job(self, job_id: int) -> "Future[JobRun]":
        """
        Start a run of a job.

        Returns:
            Future resolving to the finalized JobRun once the process exits,
            or failing with SpawnError if the process could not be launched

        Raises:
            NotFoundError: If the job does not exist
            AlreadyRunningError: If the job already has a run in flight, here
                or in another process sharing the database
        """
        with self._lock:
            job = self.store.get_job(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if job_id in self._active:
                raise AlreadyRunningError(f"Job is already running: {job_id}")

            run = self.store.create_job_run(job_id, exclusive=True)
            job = self.store.update_job(job_id, status=RUNNING)
            active = ActiveRun(
                job=job,
                run=run,
                stdout=OutputBuffer(self.max_output_chars),
                stderr=OutputBuffer(self.max_output_chars)
            )
            self._active[job_id] = active
            self.bus.publish(StatusEvent(job, run))
            logger.info(f"{active.log_prefix}Starting job run")

            try:
                active.handle = self.supervisor.spawn(
                    job.command,
                    job.worktree_path,
                    on_stdout=active.stdout.append,
                    on_stderr=active.stderr.append,
                    on_exit=partial(self._on_exit, active),
                    log_prefix=active.log_prefix
                )
            except SpawnError as e:
                logger.error(f"{active.log_prefix}Spawn failed: {e}")
                final_run = self._finalize(active, None, error=str(e))
                active.future.set_exception(SpawnError(str(e), run=final_run))

            return active.future

    def stop_job(self, job_id: int):
        """
        Ask a running job to terminate.

        Sends the graceful signal now; if the same run is still in flight once
        the grace period elapses, sends the forceful one. Returns without
        waiting for the process to exit.

        Raises:
            NotRunningError: If the job has no run in flight
        """
        with self._lock:
            active = self._active.get(job_id)
            if active is None or active.handle is None:
                raise NotRunningError(f"Job is not running: {job_id}")

            logger.info(f"{active.log_prefix}Stopping job (grace period {self.grace_period}s)")
            active.handle.terminate()

            run_id = active.run.id
            if run_id not in self._timers:
                timer = threading.Timer(self.grace_period, self._escalate, args=(job_id, run_id))
                timer.daemon = True
                self._timers[run_id] = timer
                timer.start()

    def cancel(self, job_id: int) -> bool:
        """
        Forget a job's in-flight run and kill its process.

        Used when the job is being deleted: the finalized run is not persisted
        and no status event is published for it.

        Returns:
            True if a run was in flight
        """
        with self._lock:
            active = self._active.pop(job_id, None)
            if active is None:
                return False
            active.cancelled = True
            self._cancel_timer(active.run.id)
            if active.handle is not None:
                active.handle.kill()
        logger.info(f"{active.log_prefix}Cancelled in-flight run")
        return True

    def is_running(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._active

    def running_job_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._active)

    def get_live_output(self, job_id: int) -> Optional[Tuple[str, str]]:
        """(stdout, stderr) accumulated so far by the job's in-flight run"""
        with self._lock:
            active = self._active.get(job_id)
        if active is None:
            return None
        return active.stdout.getvalue(), active.stderr.getvalue()

    def reconcile_interrupted(self) -> int:
        """
        Fail runs left 'running' by a previous, uncleanly stopped process.

        Returns:
            Number of runs marked failed
        """
        with self._lock:
            live_runs = {active.run.id for active in self._active.values()}
            live_jobs = set(self._active)

        count = 0
        for run in self.store.list_running_runs():
            if run.id in live_runs:
                continue
            stderr = f"{run.stderr}\n{INTERRUPTED_NOTE}" if run.stderr else INTERRUPTED_NOTE
            self.store.update_job_run(run.id, stderr=stderr, exit_code=-1, status=FAILED)
            count += 1

        for job in self.store.list_jobs():
            if job.status == RUNNING and job.id not in live_jobs:
                self.store.update_job(job.id, status=SCHEDULED if job.cron else FAILED)

        if count:
            logger.warning(f"Marked {count} interrupted run(s) as failed")
        return count

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 10.0):
        """Kill every in-flight process and optionally wait for finalization"""
        with self._lock:
            for run_id in list(self._timers):
                self._cancel_timer(run_id)
            actives = list(self._active.values())
            for active in actives:
                if active.handle is not None:
                    active.handle.kill()

        if actives:
            logger.info(f"Killed {len(actives)} running job(s)")
            if wait:
                wait_futures([active.future for active in actives], timeout=timeout)

    def _escalate(self, job_id: int, run_id: int):
        with self._lock:
            self._timers.pop(run_id, None)
            active = self._active.get(job_id)
            if active is None or active.run.id != run_id:
                return
            if active.handle.kill():
                logger.warning(f"{active.log_prefix}Still running after {self.grace_period}s, killed")

    def _cancel_timer(self, run_id: int):
        timer = self._timers.pop(run_id, None)
        if timer is not None:
            timer.cancel()

    def _on_exit(self, active: ActiveRun, exit_code: Optional[int], signal_name: Optional[str]):
        try:
            final_run = self._finalize(active, exit_code)
        except Exception as e:
            logger.error(f"{active.log_prefix}Failed to finalize run: {e}", exc_info=True)
            active.future.set_exception(e)
            return
        active.future.set_result(final_run)

    def _finalize(self, active: ActiveRun, exit_code: Optional[int], error: Optional[str] = None) -> JobRun:
        """Record the outcome of a run and publish it"""
        job_id = active.job.id
        status = SUCCESS if exit_code == 0 else FAILED
        code = exit_code if exit_code is not None else -1

        with self._lock:
            if self._active.get(job_id) is active:
                del self._active[job_id]
            self._cancel_timer(active.run.id)

            stdout = active.stdout.getvalue()
            stderr = active.stderr.getvalue()
            if error:
                stderr = f"{stderr}\n{error}" if stderr else error

            def unrecorded() -> JobRun:
                return replace(
                    active.run,
                    finished_at=datetime.now(),
                    exit_code=code,
                    stdout=stdout,
                    stderr=stderr,
                    status=status
                )

            if active.cancelled:
                # The job was deleted; its records are gone
                return unrecorded()

            stored = self.store.get_job_run(active.run.id)
            if stored is None or stored.is_finished:
                # Another process already finalized this run; never revert it
                logger.warning(
                    f"{active.log_prefix}Run was already finalized elsewhere, "
                    f"discarding exit code {code}"
                )
                return stored or unrecorded()

            run = self.store.update_job_run(
                active.run.id,
                stdout=stdout,
                stderr=stderr,
                exit_code=code,
                status=status
            )

            updates = {
                'status': SCHEDULED if active.job.cron else status,
                'last_run': run.finished_at,
            }
            if active.job.cron and self.next_run_resolver is not None:
                updates['next_run'] = self.next_run_resolver(job_id)
            job = self.store.update_job(job_id, **updates)

            self.bus.publish(StatusEvent(job, run))

        logger.info(f"{active.log_prefix}Finished with status '{status}' (exit code {code})")
        return run

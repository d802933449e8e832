import time
from datetime import datetime

import pytest

from scheduler.coordinator import ExecutionCoordinator
from scheduler.events import StatusEventBus
from scheduler.models import Job
from scheduler.process import ProcessSupervisor
from scheduler.store import RunRecordStore


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll until predicate() is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def make_job(job_id=1, status='running', cron=None):
    """Build an in-memory Job without touching a store."""
    now = datetime.now()
    return Job(
        id=job_id, worktree_path="/repo", name=f"job-{job_id}", command="true",
        cron=cron, status=status, last_run=None, next_run=None,
        created_at=now, updated_at=now
    )


class FakeHandle:
    """Stands in for a ProcessHandle and records the signals it receives."""

    def __init__(self):
        self.signals = []
        self.exited = False

    def terminate(self):
        if self.exited:
            return False
        self.signals.append('SIGTERM')
        return True

    def kill(self):
        if self.exited:
            return False
        self.signals.append('SIGKILL')
        return True


class FakeSupervisor:
    """Spawns nothing; the test drives output and exit by hand."""

    def __init__(self):
        self.spawned = []

    def spawn(self, command, cwd, on_stdout, on_stderr, on_exit, log_prefix=""):
        handle = FakeHandle()

        def finish(exit_code, signal_name=None):
            handle.exited = True
            on_exit(exit_code, signal_name)

        handle.finish = finish
        handle.write_stdout = on_stdout
        handle.write_stderr = on_stderr
        self.spawned.append((command, cwd, handle))
        return handle


@pytest.fixture
def store(tmp_path):
    store = RunRecordStore(tmp_path / "jobs.db")
    yield store
    store.close()


@pytest.fixture
def bus():
    bus = StatusEventBus()
    yield bus
    bus.close()


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / "worktree"
    path.mkdir()
    return str(path)


@pytest.fixture
def coordinator(store, bus):
    coordinator = ExecutionCoordinator(store, ProcessSupervisor(), bus)
    yield coordinator
    coordinator.shutdown(wait=True, timeout=5)


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()

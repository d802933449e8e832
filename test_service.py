import threading

import pytest

from scheduler.config import SchedulerConfig
from scheduler.errors import AlreadyRunningError, NotFoundError, ValidationError
from scheduler.service import SchedulerService, get_scheduler_info, is_scheduler_running
from scheduler.store import RunRecordStore


@pytest.fixture
def config(tmp_path):
    return SchedulerConfig(str(tmp_path / "config.json"), data_dir=str(tmp_path / "data"))


@pytest.fixture
def service(config):
    service = SchedulerService(config)
    yield service
    service.stop()


def test_create_manual_job(service, worktree):
    job = service.create_job(worktree, "build", "make build")

    assert job.status == 'pending'
    assert job.cron is None
    assert not service.registry.is_registered(job.id)
    assert service.list_jobs(worktree) == [job]


def test_create_cron_job_registers_trigger(service, worktree):
    job = service.create_job(worktree, "nightly", "make test", "0 2 * * *")

    assert job.status == 'scheduled'
    assert service.registry.is_registered(job.id)
    assert job.next_run is not None
    assert (job.next_run.hour, job.next_run.minute) == (2, 0)


def test_invalid_cron_creates_unscheduled_job_and_reports(service, worktree):
    events = []
    service.subscribe(events.append)

    job = service.create_job(worktree, "broken", "make", "every day at noon")

    assert service.get_job(job.id) is not None
    assert not service.registry.is_registered(job.id)
    assert service.bus.drain(5)
    assert len(events) == 1
    assert events[0].run is None
    assert "every day at noon" in events[0].message
    assert service.get_job(job.id).next_run is None


@pytest.mark.parametrize("worktree_path, name, command", [
    ("/repo", "", "make"),
    ("/repo", "build", "   "),
    ("", "build", "make"),
])
def test_create_job_requires_name_command_and_worktree(service, worktree_path, name, command):
    with pytest.raises(ValidationError):
        service.create_job(worktree_path, name, command)


def test_delete_job_removes_runs_and_schedule(service, worktree):
    job = service.create_job(worktree, "nightly", "echo hi", "0 2 * * *")
    service.run_job(job.id).result(timeout=10)
    assert len(service.get_job_runs(job.id, 10)) == 1

    service.delete_job(job.id)

    assert service.get_job(job.id) is None
    assert service.get_job_runs(job.id, 10) == []
    assert not service.registry.is_registered(job.id)
    with pytest.raises(NotFoundError):
        service.delete_job(job.id)


def test_delete_job_cancels_in_flight_run(service, worktree):
    job = service.create_job(worktree, "slow", "sleep 30")
    future = service.run_job(job.id)

    service.delete_job(job.id)

    run = future.result(timeout=10)
    assert run.status == 'failed'
    assert service.get_job(job.id) is None
    assert not service.coordinator.is_running(job.id)


def test_stop_job_through_service(service, worktree):
    job = service.create_job(worktree, "slow", "sleep 30")
    future = service.run_job(job.id)

    service.stop_job(job.id)

    run = future.result(timeout=10)
    assert run.status == 'failed'
    assert service.get_job(job.id).status == 'failed'


def test_start_rehydrates_triggers_and_reconciles(config, worktree):
    store = RunRecordStore(config.db_path)
    nightly = store.create_job(worktree, "nightly", "make", "0 2 * * *")
    manual = store.create_job(worktree, "manual", "make")
    broken = store.create_job(worktree, "broken", "make", "bogus")
    orphan = store.create_job_run(manual.id)
    store.update_job(manual.id, status='running')
    store.close()

    service = SchedulerService(config)
    try:
        service.start()

        assert service.running
        assert service.registry.is_registered(nightly.id)
        assert not service.registry.is_registered(manual.id)
        assert not service.registry.is_registered(broken.id)
        assert service.get_job(nightly.id).next_run is not None
        assert service.store.get_job_run(orphan.id).status == 'failed'
        assert service.get_job(manual.id).status == 'failed'
    finally:
        service.stop()


def test_start_writes_and_stop_removes_pid_file(config):
    service = SchedulerService(config)
    service.start()
    try:
        running, pid = is_scheduler_running(config)
        assert running
        info = get_scheduler_info(config)
        assert info['db_path'] == str(config.db_path)
    finally:
        service.stop()

    assert not config.pid_file.exists()
    assert is_scheduler_running(config) == (False, None)


def test_stale_pid_file_is_cleaned_up(config):
    config.pid_file.parent.mkdir(parents=True, exist_ok=True)
    config.pid_file.write_text("999999999")

    assert is_scheduler_running(config) == (False, None)
    assert not config.pid_file.exists()


def test_cron_tick_runs_job_and_returns_to_scheduled(config, worktree):
    service = SchedulerService(config)
    finished = threading.Event()
    service.subscribe(lambda event: event.run is not None and event.run.is_finished and finished.set())

    job = service.create_job(worktree, "every-second", "echo tick", "* * * * * *")
    service.start(write_pid_file=False)
    try:
        assert finished.wait(10)
        runs = service.get_job_runs(job.id, 10)
        assert any(run.status == 'success' and "tick" in run.stdout for run in runs)
        assert service.registry.is_registered(job.id)
    finally:
        service.stop()

    store = RunRecordStore(config.db_path)
    try:
        assert store.get_job(job.id).status == 'scheduled'
    finally:
        store.close()


def test_two_engines_on_one_database_share_the_in_flight_guard(config, worktree):
    first = SchedulerService(config)
    second = SchedulerService(config)
    try:
        job = first.create_job(worktree, "slow", "sleep 30")
        future = first.run_job(job.id)

        with pytest.raises(AlreadyRunningError):
            second.run_job(job.id)

        running = [r for r in first.get_job_runs(job.id, 10) if r.status == 'running']
        assert len(running) == 1

        first.stop_job(job.id)
        assert future.result(timeout=10).status == 'failed'
    finally:
        second.stop()
        first.stop()

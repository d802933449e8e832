import json
import logging
import os
from pathlib import Path

import pytest

from scheduler.cli import build_parser, main


@pytest.fixture
def cli(tmp_path):
    """Run the CLI against a throwaway config and data dir."""
    base = ['-c', str(tmp_path / "config.json"), '-d', str(tmp_path / "data")]
    root = logging.getLogger()
    handlers = list(root.handlers)

    def run(*argv):
        main(base + list(argv))

    yield run

    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)


def read_json(capsys):
    return json.loads(capsys.readouterr().out)


def test_add_list_run_history(cli, capsys, worktree):
    cli('add', 'greet', '--command', 'echo hello from cli', '--worktree', worktree)
    capsys.readouterr()

    cli('list', '--json')
    jobs = read_json(capsys)
    assert len(jobs) == 1
    assert jobs[0]['name'] == 'greet'
    assert jobs[0]['worktree_path'] == str(Path(worktree).resolve())
    assert jobs[0]['status'] == 'pending'

    with pytest.raises(SystemExit) as excinfo:
        cli('run', str(jobs[0]['id']))
    assert excinfo.value.code == 0
    assert "hello from cli" in capsys.readouterr().out

    cli('history', str(jobs[0]['id']), '--json')
    runs = read_json(capsys)
    assert len(runs) == 1
    assert runs[0]['status'] == 'success'
    assert runs[0]['exit_code'] == 0


def test_run_failing_job_exits_nonzero(cli, capsys, worktree):
    cli('add', 'fail', '-C', 'exit 3', '-w', worktree)

    with pytest.raises(SystemExit) as excinfo:
        cli('run', '1')

    assert excinfo.value.code == 1
    assert "exit code 3" in capsys.readouterr().out


def test_list_filters_by_worktree(cli, capsys, tmp_path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    cli('add', 'a', '-C', 'true', '-w', str(first))
    cli('add', 'b', '-C', 'true', '-w', str(second), '--cron', '0 2 * * *')
    capsys.readouterr()

    cli('list', '--json', '--worktree', str(second))
    jobs = read_json(capsys)

    assert [job['name'] for job in jobs] == ['b']
    assert jobs[0]['cron'] == '0 2 * * *'
    assert jobs[0]['status'] == 'scheduled'


def test_remove_job(cli, capsys, worktree):
    cli('add', 'doomed', '-C', 'true', '-w', worktree)
    cli('remove', '1')
    capsys.readouterr()

    cli('list', '--json')
    assert read_json(capsys) == []

    with pytest.raises(SystemExit) as excinfo:
        cli('remove', '1')
    assert excinfo.value.code == 1


def test_history_of_unknown_job(cli, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli('history', '42')

    assert excinfo.value.code == 1
    assert "Job not found: 42" in capsys.readouterr().out


def test_status_when_not_running(cli, capsys):
    cli('status')

    assert "Not Running" in capsys.readouterr().out


def test_init_writes_config(cli, tmp_path):
    cli('init')

    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved['execution']['grace_period_seconds'] == 5.0
    assert saved['data_dir'] == str(tmp_path / "data")


def test_add_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['add', 'name-only'])


def test_remove_hints_restart_when_scheduler_is_running(cli, caplog, tmp_path, worktree):
    cli('add', 'nightly', '-C', 'true', '-w', worktree, '--cron', '0 2 * * *')
    pid_file = tmp_path / "data" / "scheduler.pid"
    pid_file.write_text(str(os.getpid()))

    with caplog.at_level(logging.INFO):
        cli('remove', '1')

    assert "Removed job 1" in caplog.text
    assert "Restart scheduler" in caplog.text

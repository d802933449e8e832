import threading

import pytest

from conftest import wait_for
from scheduler.errors import SpawnError
from scheduler.process import ProcessSupervisor, build_shell_line, parse_command


class Collector:
    def __init__(self):
        self.stdout = []
        self.stderr = []
        self.exit = None
        self.done = threading.Event()

    def on_exit(self, exit_code, signal_name):
        self.exit = (exit_code, signal_name)
        self.done.set()

    def spawn(self, supervisor, command, cwd):
        return supervisor.spawn(
            command, cwd,
            on_stdout=self.stdout.append,
            on_stderr=self.stderr.append,
            on_exit=self.on_exit
        )


@pytest.mark.parametrize("command, expected", [
    ("echo hello", ["echo", "hello"]),
    ("  npm   run  build ", ["npm", "run", "build"]),
    ('git commit -m "fix the build"', ["git", "commit", "-m", "fix the build"]),
    ("echo 'single quoted' \"double\"", ["echo", "single quoted", "double"]),
    ("echo \"it's\"", ["echo", "it's"]),
    ("echo pre'fix 'post", ["echo", "prefix post"]),
    ("echo 'unterminated quote", ["echo", "unterminated quote"]),
    ("echo '' x", ["echo", "x"]),
    ("", []),
])
def test_parse_command(command, expected):
    assert parse_command(command) == expected


def test_backslash_is_not_an_escape():
    assert parse_command(r'echo a\ b') == ["echo", "a\\", "b"]


@pytest.mark.parametrize("command, expected", [
    ('grep "two words" file.txt | wc -l > out.txt', 'grep "two words" file.txt | wc -l > out.txt'),
    ('grep "foo|bar" f', 'grep "foo|bar" f'),
    ("echo  pre'fix 'post", "echo pre'fix 'post"),
    ("echo 'open", "echo 'open'"),
    ('echo "a\\b"', 'echo "a\\\\b"'),
    ("echo '' x", "echo x"),
])
def test_build_shell_line_keeps_quoted_groups(command, expected):
    assert build_shell_line(command) == expected


@pytest.mark.parametrize("command, expected", [
    ('echo "a|b"', "a|b\n"),
    ('echo "it\'s"', "it's\n"),
    ("echo '$FORCE_COLOR' \"$FORCE_COLOR\"", "$FORCE_COLOR 1\n"),
    ('echo "x > y"', "x > y\n"),
])
def test_metacharacters_inside_quotes_stay_literal(worktree, command, expected):
    collector = Collector()
    collector.spawn(ProcessSupervisor(), command, worktree)

    assert collector.done.wait(10)
    assert ''.join(collector.stdout) == expected
    assert collector.exit == (0, None)


def test_spawn_streams_stdout_and_exit_code(worktree):
    collector = Collector()
    collector.spawn(ProcessSupervisor(), "echo hello", worktree)

    assert collector.done.wait(10)
    assert ''.join(collector.stdout) == "hello\n"
    assert collector.exit == (0, None)


def test_spawn_reports_nonzero_exit_and_stderr(worktree):
    collector = Collector()
    collector.spawn(ProcessSupervisor(), "echo oops >&2; exit 3", worktree)

    assert collector.done.wait(10)
    assert "oops" in ''.join(collector.stderr)
    assert collector.exit == (3, None)


def test_spawn_runs_in_worktree_with_color_hints(worktree):
    collector = Collector()
    collector.spawn(ProcessSupervisor(), "pwd; echo $FORCE_COLOR $TERM", worktree)

    assert collector.done.wait(10)
    lines = ''.join(collector.stdout).splitlines()
    assert lines[0].endswith("worktree")
    assert lines[1] == "1 xterm-256color"


def test_quoted_group_keeps_its_whitespace(worktree):
    collector = Collector()
    collector.spawn(ProcessSupervisor(), 'echo "a   b"', worktree)

    assert collector.done.wait(10)
    assert ''.join(collector.stdout) == "a   b\n"


def test_spawn_in_missing_directory_raises(tmp_path):
    with pytest.raises(SpawnError):
        Collector().spawn(ProcessSupervisor(), "echo hello", str(tmp_path / "missing"))


def test_spawn_empty_command_raises(worktree):
    with pytest.raises(SpawnError, match="empty"):
        Collector().spawn(ProcessSupervisor(), "   ", worktree)


def test_terminate_and_kill_after_exit_are_noops(worktree):
    collector = Collector()
    handle = collector.spawn(ProcessSupervisor(), "sleep 30", worktree)

    assert handle.is_running()
    assert handle.terminate() is True
    assert collector.done.wait(10)
    assert collector.exit == (None, 'SIGTERM')

    assert handle.terminate() is False
    assert handle.kill() is False


def test_kill_sends_sigkill(worktree):
    collector = Collector()
    handle = collector.spawn(ProcessSupervisor(), "sleep 30", worktree)

    assert handle.kill() is True
    assert collector.done.wait(10)
    assert collector.exit == (None, 'SIGKILL')


def test_backgrounded_child_keeps_group_alive_and_is_signalled(worktree):
    collector = Collector()
    handle = collector.spawn(ProcessSupervisor(), "sleep 30 & echo started", worktree)

    assert wait_for(lambda: handle.process.poll() is not None)
    assert handle.returncode == 0
    assert not collector.done.is_set()
    assert handle.is_running()

    assert handle.terminate() is True
    assert collector.done.wait(10)
    assert collector.exit == (0, None)
    assert "started" in ''.join(collector.stdout)
    assert not handle.is_running()
    assert handle.kill() is False

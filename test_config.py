"""
Tests for scheduler configuration loading, saving and validation.
"""

import json
from pathlib import Path

from scheduler.config import SchedulerConfig, get_default_data_dir


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("WORKTREE_JOBS_DATA_DIR", raising=False)
    config = SchedulerConfig(str(tmp_path / "config.json"))

    assert config.data_dir == Path.home() / ".worktree_jobs"
    assert config.db_path == config.data_dir / "jobs.db"
    assert config.log_file == config.data_dir / "logs" / "scheduler.log"
    assert config.execution.grace_period_seconds == 5.0
    assert config.execution.max_output_chars is None
    assert config.logging.level == "INFO"
    assert config.validate() == []


def test_data_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("WORKTREE_JOBS_DATA_DIR", str(tmp_path / "from-env"))

    assert get_default_data_dir() == tmp_path / "from-env"
    config = SchedulerConfig(str(tmp_path / "config.json"))
    assert config.pid_file == tmp_path / "from-env" / "scheduler.pid"

    explicit = SchedulerConfig(str(tmp_path / "config.json"), data_dir=str(tmp_path / "explicit"))
    assert explicit.data_dir == tmp_path / "explicit"


def test_config_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("WORKTREE_JOBS_CONFIG", str(tmp_path / "custom.json"))

    assert SchedulerConfig().config_path == tmp_path / "custom.json"


def test_save_and_load(tmp_path):
    path = tmp_path / "config.json"
    config = SchedulerConfig(str(path), data_dir=str(tmp_path / "data"))
    config.execution.grace_period_seconds = 1.5
    config.execution.max_output_chars = 4096
    config.logging.level = "DEBUG"
    config.save()

    saved = json.loads(path.read_text())
    assert saved['data_dir'] == str(tmp_path / "data")

    loaded = SchedulerConfig(str(path))
    assert loaded.data_dir == tmp_path / "data"
    assert loaded.execution.grace_period_seconds == 1.5
    assert loaded.execution.max_output_chars == 4096
    assert loaded.logging.level == "DEBUG"


def test_validate_reports_each_problem(tmp_path):
    config = SchedulerConfig(str(tmp_path / "config.json"))
    config.logging.level = "LOUD"
    config.execution.grace_period_seconds = -1
    config.execution.max_output_chars = 0
    config.execution.max_workers = 0

    errors = config.validate()

    assert len(errors) == 4
    assert any("LOUD" in error for error in errors)
    assert any("grace_period_seconds" in error for error in errors)

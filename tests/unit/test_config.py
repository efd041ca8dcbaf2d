"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from crossflow.config import CrossflowConfig, RunnerConfig, load_config
from crossflow.persistence import InMemoryRepository, SQLiteRepository, get_repository


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "crossflow.yaml"
    config_path.write_text(
        """
log_level: DEBUG
dispatcher:
  batch_size: 25
  lease_seconds: 45
  retry:
    max_attempts: 8
runner:
  action_timeout: 5
  emit_lifecycle_events: false
"""
    )
    monkeypatch.setenv("CROSSFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.log_level == "DEBUG"
    assert config.dispatcher.batch_size == 25
    assert config.dispatcher.lease_seconds == 45
    assert config.dispatcher.retry.max_attempts == 8
    assert config.runner.action_timeout == 5
    assert not config.runner.emit_lifecycle_events
    assert config.scheduler.poll_interval == 5.0


def test_defaults_without_file(tmp_path):
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config == CrossflowConfig()
    assert config.dispatcher.retry.max_attempts == 5


def test_database_url_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("CROSSFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'cf.db'}")
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.database_url.startswith("sqlite://")
    assert isinstance(get_repository(config=config), SQLiteRepository)


def test_action_timeout_must_be_shorter_than_lease():
    with pytest.raises(ValidationError):
        RunnerConfig(action_timeout=60, lease_seconds=30)


def test_get_repository_defaults_to_memory(tmp_path):
    repo = get_repository(config=load_config(str(tmp_path / "missing.yaml")))
    assert isinstance(repo, InMemoryRepository)
    assert get_repository() is repo


def test_get_repository_rejects_unknown_backend():
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")

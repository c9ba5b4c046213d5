"""Tests for configuration loading."""

import sys

import pytest

import stepwise.persistence as persistence
from stepwise.config import StepwiseConfig, load_config
from stepwise.engine import WorkflowEngine
from stepwise.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    open_repository,
    resolve_database_url,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("STEPWISE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite://wf.db
engine:
  max_concurrent_runs: 4
  backoff_base_ms: 50
triggers:
  poll_interval: 0.5
logging:
  level: debug
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite://wf.db"
    assert config.engine.max_concurrent_runs == 4
    assert config.engine.backoff_base_ms == 50
    assert config.engine.default_max_attempts == 3
    assert config.triggers.poll_interval == 0.5
    assert config.logging.level == "debug"


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "absent.yaml"))
    config = load_config()
    assert config.database_url is None
    assert config.engine.max_concurrent_runs is None
    assert config.triggers.signature_header == "x-webhook-signature"


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))
    monkeypatch.setenv("STEPWISE_DATABASE_URL", "sqlite://from-env.db")

    assert load_config().database_url == "sqlite://from-env.db"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "absent.yaml"))
    assert isinstance(get_repository(), InMemoryWorkflowRepository)

    repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert get_repository() is repo

    with pytest.raises(ValueError):
        get_repository("mysql://nope")


def test_open_repository_dispatches_on_scheme(tmp_path):
    assert isinstance(open_repository(None), InMemoryWorkflowRepository)
    assert isinstance(open_repository(""), InMemoryWorkflowRepository)
    assert isinstance(
        open_repository(f"SQLITE://{tmp_path / 'wf.db'}"), SQLiteWorkflowRepository
    )
    with pytest.raises(ValueError, match="Unsupported database backend"):
        open_repository("wf.db")


def test_postgres_without_asyncpg_is_a_clear_error(monkeypatch):
    monkeypatch.setitem(sys.modules, "stepwise.persistence.postgres", None)
    with pytest.raises(RuntimeError, match="asyncpg"):
        open_repository("postgresql://localhost/stepwise")


def test_explicit_url_wins_over_environment(monkeypatch):
    monkeypatch.setenv("STEPWISE_DATABASE_URL", "sqlite://env.db")
    assert resolve_database_url("sqlite://arg.db") == "sqlite://arg.db"
    assert resolve_database_url(config=StepwiseConfig()) == "sqlite://env.db"

    monkeypatch.delenv("STEPWISE_DATABASE_URL")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/app")
    assert resolve_database_url(config=StepwiseConfig()) == "postgresql://db/app"

    monkeypatch.delenv("DATABASE_URL")
    config = StepwiseConfig(database_url="sqlite://config.db")
    assert resolve_database_url(config=config) == "sqlite://config.db"


def test_engine_from_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("engine:\n  backoff_base_ms: 10\n  default_max_attempts: 5\n")
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))

    repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine.from_config(load_config(), repository=repo)
    assert engine.repository is repo
    assert engine._backoff_base_ms == 10
    assert engine._default_max_attempts == 5

"""
Unit tests for controller configuration: environment settings and CLI overrides.
"""

import argparse

from mt_controller.__main__ import get_database_path, get_settings, get_testlab_project
from mt_controller.settings import OrchestratorSettings


def cli_args(**overrides) -> argparse.Namespace:
    values = {
        "db_path": None,
        "testlab_project": None,
        "poll_interval": None,
        "interval": None,
        "log_level": "INFO",
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestOrchestratorSettings:
    def test_defaults(self):
        settings = OrchestratorSettings()

        assert settings.poll_interval == 30
        assert settings.initial_delay == 10
        assert settings.retry_backoff == 60
        assert settings.job_timeout == 900
        assert settings.matrix_timeout == 600
        assert settings.timeout_reason == "Test timed out after 15 minutes"

    def test_timeout_reason_in_seconds(self):
        assert (
            OrchestratorSettings(job_timeout=90).timeout_reason
            == "Test timed out after 90 seconds"
        )

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MT_POLL_INTERVAL", "5")
        monkeypatch.setenv("MT_JOB_TIMEOUT", "120")
        monkeypatch.setenv("MT_MATRIX_TIMEOUT", "300")

        settings = OrchestratorSettings.from_env()

        assert settings.poll_interval == 5
        assert settings.job_timeout == 120
        assert settings.matrix_timeout == 300
        assert settings.retry_backoff == 60

    def test_invalid_values_fall_back(self, monkeypatch, caplog):
        monkeypatch.setenv("MT_POLL_INTERVAL", "often")
        monkeypatch.setenv("MT_RETRY_BACKOFF", "-1")

        settings = OrchestratorSettings.from_env()

        assert settings.poll_interval == 30
        assert settings.retry_backoff == 60
        assert "Invalid MT_POLL_INTERVAL" in caplog.text


class TestControllerArgs:
    def test_cli_overrides_environment(self, monkeypatch):
        monkeypatch.setenv("MT_POLL_INTERVAL", "5")

        settings = get_settings(cli_args(poll_interval=12.0, interval=2.0))

        assert settings.poll_interval == 12
        assert settings.reconcile_interval == 2

    def test_non_positive_override_is_ignored(self, monkeypatch):
        monkeypatch.delenv("MT_POLL_INTERVAL", raising=False)

        assert get_settings(cli_args(poll_interval=0.0)).poll_interval == 30

    def test_database_path(self, monkeypatch):
        monkeypatch.setenv("MT_DB_PATH", "/tmp/env.db")

        assert get_database_path(cli_args()) == "/tmp/env.db"
        assert get_database_path(cli_args(db_path="/tmp/cli.db")) == "/tmp/cli.db"

    def test_testlab_project(self, monkeypatch):
        monkeypatch.setenv("MT_TESTLAB_PROJECT_ID", "")

        assert get_testlab_project(cli_args()) is None
        assert get_testlab_project(cli_args(testlab_project="demo")) == "demo"

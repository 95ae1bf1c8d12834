from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from agent_team.config import LockSettings, MonitorSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.state_dir == Path(".omc/state")
    assert settings.lock.stale_seconds == 30
    assert settings.messaging.notify_attempts == 6
    assert settings.monitor.max_unresponsive_ticks == 3
    assert settings.trusted_cli_dirs == ()
    assert settings.keep_panes_on_shutdown is False
    settings.validate()


def test_from_env_reads_overrides(clean_env, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TEAM_STATE_DIR", "/tmp/team-state")
    monkeypatch.setenv("AGENT_TEAM_LOCK_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("AGENT_TEAM_NOTIFY_ATTEMPTS", "2")
    monkeypatch.setenv("AGENT_TEAM_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("AGENT_TEAM_TASK_MAX_RETRIES", "4")
    monkeypatch.setenv("AGENT_TEAM_KEEP_PANES", "yes")
    monkeypatch.setenv(
        "AGENT_TEAM_TRUSTED_CLI_DIRS",
        os.pathsep.join(["/opt/bin", " /opt/bin ", "", "/usr/local/bin"]),
    )

    settings = Settings.from_env()

    assert settings.state_dir == Path("/tmp/team-state")
    assert settings.lock.timeout_seconds == 0
    assert settings.messaging.notify_attempts == 2
    assert settings.monitor.poll_interval_seconds == 0.5
    assert settings.task_max_retries == 4
    assert settings.keep_panes_on_shutdown is True
    assert settings.trusted_cli_dirs == ("/opt/bin", "/usr/local/bin")


def test_explicit_state_dir_wins_over_env(clean_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_TEAM_STATE_DIR", "/ignored")

    assert Settings.from_env(state_dir=tmp_path).state_dir == tmp_path


def test_invalid_boolean_env_is_rejected(clean_env, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TEAM_KEEP_PANES", "maybe")

    with pytest.raises(ValueError, match="AGENT_TEAM_KEEP_PANES"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(lock=LockSettings(stale_seconds=0)), "LOCK_STALE_SECONDS"),
        (Settings(lock=LockSettings(timeout_seconds=-1)), "LOCK_TIMEOUT_SECONDS"),
        (Settings(monitor=MonitorSettings(poll_interval_seconds=0)), "POLL_INTERVAL_SECONDS"),
        (Settings(monitor=MonitorSettings(max_unresponsive_ticks=0)), "MAX_UNRESPONSIVE_TICKS"),
        (Settings(task_max_retries=-1), "TASK_MAX_RETRIES"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()

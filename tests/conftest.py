"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from agent_team.config import LockSettings, MessagingSettings, MonitorSettings, Settings
from agent_team.team.paths import TeamPaths
from agent_team.team.tmux import TmuxClient, TmuxResult


class FakeTmux:
    """Scriptable stand-in for the tmux binary that records every call."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.dead_panes: set[str] = set()
        self.copy_mode_panes: set[str] = set()
        self.failing: set[str] = set()
        self.captures: dict[str, str] = {}
        self.window_width = 200
        self.on_send: Callable[[str, str], None] | None = None
        self._next_pane = 1

    def __call__(self, args: Sequence[str]) -> TmuxResult:
        args = list(args)
        self.calls.append(args)
        command = args[0]
        if command in self.failing:
            return TmuxResult(returncode=1, stderr=f"{command} failed")
        if command == "send-keys":
            if self.on_send is not None:
                self.on_send(args[2], args[-1])
            return TmuxResult(returncode=0)
        if command == "split-window":
            pane_id = f"%{self._next_pane}"
            self._next_pane += 1
            return TmuxResult(returncode=0, stdout=f"{pane_id}\n")
        if command == "new-session":
            return TmuxResult(returncode=0, stdout=f"{args[3]}:0 %0\n")
        if command == "capture-pane":
            return TmuxResult(returncode=0, stdout=self.captures.get(args[2], "> "))
        if command == "display-message":
            return TmuxResult(returncode=0, stdout=self._display(args))
        return TmuxResult(returncode=0)

    def commands(self, name: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == name]

    def literal_sends(self) -> list[tuple[str, str]]:
        return [(call[2], call[-1]) for call in self.commands("send-keys") if "-l" in call]

    def _display(self, args: list[str]) -> str:
        fmt = args[-1]
        pane_id = args[args.index("-t") + 1]
        if fmt == "#{pane_dead}":
            return "1" if pane_id in self.dead_panes else "0"
        if fmt == "#{pane_in_mode}":
            return "1" if pane_id in self.copy_mode_panes else "0"
        if fmt == "#{window_width}":
            return str(self.window_width)
        return f"leader:1 {pane_id}"


@pytest.fixture()
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture()
def tmux_client(fake_tmux: FakeTmux) -> TmuxClient:
    return TmuxClient(runner=fake_tmux)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with short timings suited to in-process tests."""

    return Settings(
        state_dir=tmp_path / "state",
        lock=LockSettings(stale_seconds=30, retry_delay_seconds=0.01, timeout_seconds=1),
        messaging=MessagingSettings(notify_attempts=3, notify_retry_delay_seconds=0),
        monitor=MonitorSettings(
            poll_interval_seconds=1,
            watchdog_interval_seconds=1,
            heartbeat_max_age_seconds=60,
            max_unresponsive_ticks=2,
            layout_debounce_seconds=0.15,
            pane_ready_timeout_seconds=1,
        ),
        task_max_retries=1,
    )


@pytest.fixture()
def team_paths(settings: Settings) -> TeamPaths:
    return TeamPaths.for_team(settings.state_dir, "alpha")


@pytest.fixture()
def clean_env(monkeypatch) -> None:
    """Remove AGENT_TEAM_* variables so Settings.from_env sees defaults."""

    import os

    for name in list(os.environ):
        if name.startswith("AGENT_TEAM_"):
            monkeypatch.delenv(name, raising=False)

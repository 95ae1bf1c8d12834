"""Runtime configuration for team coordination and pipeline state."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LockSettings:
    """Advisory file lock tunables."""

    stale_seconds: float = 30.0
    retry_delay_seconds: float = 0.05
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class MessagingSettings:
    """Trigger delivery tunables."""

    notify_attempts: int = 6
    notify_retry_delay_seconds: float = 0.35


@dataclass(slots=True)
class MonitorSettings:
    """Leader-side polling and worker watchdog settings."""

    poll_interval_seconds: float = 5.0
    watchdog_interval_seconds: float = 1.0
    heartbeat_max_age_seconds: float = 60.0
    max_unresponsive_ticks: int = 3
    layout_debounce_seconds: float = 0.15
    pane_ready_timeout_seconds: float = 8.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir: Path = Path(".omc/state")
    lock: LockSettings = field(default_factory=LockSettings)
    messaging: MessagingSettings = field(default_factory=MessagingSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    trusted_cli_dirs: tuple[str, ...] = ()
    task_max_retries: int = 2
    keep_panes_on_shutdown: bool = False

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a local checkout."""

        return cls(
            state_dir=state_dir or Path(os.getenv("AGENT_TEAM_STATE_DIR", ".omc/state")),
            lock=LockSettings(
                stale_seconds=float(os.getenv("AGENT_TEAM_LOCK_STALE_SECONDS", "30")),
                retry_delay_seconds=float(
                    os.getenv("AGENT_TEAM_LOCK_RETRY_DELAY_SECONDS", "0.05"),
                ),
                timeout_seconds=float(os.getenv("AGENT_TEAM_LOCK_TIMEOUT_SECONDS", "5")),
            ),
            messaging=MessagingSettings(
                notify_attempts=int(os.getenv("AGENT_TEAM_NOTIFY_ATTEMPTS", "6")),
                notify_retry_delay_seconds=float(
                    os.getenv("AGENT_TEAM_NOTIFY_RETRY_DELAY_SECONDS", "0.35"),
                ),
            ),
            monitor=MonitorSettings(
                poll_interval_seconds=float(
                    os.getenv("AGENT_TEAM_POLL_INTERVAL_SECONDS", "5"),
                ),
                watchdog_interval_seconds=float(
                    os.getenv("AGENT_TEAM_WATCHDOG_INTERVAL_SECONDS", "1"),
                ),
                heartbeat_max_age_seconds=float(
                    os.getenv("AGENT_TEAM_HEARTBEAT_MAX_AGE_SECONDS", "60"),
                ),
                max_unresponsive_ticks=int(os.getenv("AGENT_TEAM_MAX_UNRESPONSIVE_TICKS", "3")),
                layout_debounce_seconds=float(
                    os.getenv("AGENT_TEAM_LAYOUT_DEBOUNCE_SECONDS", "0.15"),
                ),
                pane_ready_timeout_seconds=float(
                    os.getenv("AGENT_TEAM_PANE_READY_TIMEOUT_SECONDS", "8"),
                ),
            ),
            trusted_cli_dirs=_collect_paths("AGENT_TEAM_TRUSTED_CLI_DIRS"),
            task_max_retries=int(os.getenv("AGENT_TEAM_TASK_MAX_RETRIES", "2")),
            keep_panes_on_shutdown=_env_bool("AGENT_TEAM_KEEP_PANES", default=False),
        )

    def validate(self) -> None:
        """Raise configuration error if any tunable is out of range."""

        if self.lock.stale_seconds <= 0:
            raise ValueError("AGENT_TEAM_LOCK_STALE_SECONDS must be > 0.")
        if self.lock.retry_delay_seconds <= 0:
            raise ValueError("AGENT_TEAM_LOCK_RETRY_DELAY_SECONDS must be > 0.")
        if self.lock.timeout_seconds < 0:
            raise ValueError("AGENT_TEAM_LOCK_TIMEOUT_SECONDS must be >= 0.")
        if self.messaging.notify_attempts < 1:
            raise ValueError("AGENT_TEAM_NOTIFY_ATTEMPTS must be >= 1.")
        if self.monitor.poll_interval_seconds <= 0:
            raise ValueError("AGENT_TEAM_POLL_INTERVAL_SECONDS must be > 0.")
        if self.monitor.heartbeat_max_age_seconds <= 0:
            raise ValueError("AGENT_TEAM_HEARTBEAT_MAX_AGE_SECONDS must be > 0.")
        if self.monitor.max_unresponsive_ticks < 1:
            raise ValueError("AGENT_TEAM_MAX_UNRESPONSIVE_TICKS must be >= 1.")
        if self.monitor.layout_debounce_seconds < 0:
            raise ValueError("AGENT_TEAM_LAYOUT_DEBOUNCE_SECONDS must be >= 0.")
        if self.task_max_retries < 0:
            raise ValueError("AGENT_TEAM_TASK_MAX_RETRIES must be >= 0.")


def _collect_paths(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(os.pathsep):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

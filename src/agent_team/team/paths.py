"""On-disk layout of one team's shared state."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from agent_team.errors import InvalidNameError
from agent_team.team.contracts import validate_team_name, validate_worker_name

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_task_id(task_id: str) -> str:
    if not TASK_ID_PATTERN.match(task_id) or task_id in {".", ".."}:
        raise InvalidNameError(f"Invalid task id: {task_id!r}")
    return task_id


@dataclass(slots=True, frozen=True)
class TeamPaths:
    """Paths under ``<state_dir>/team/<team_name>``."""

    team_name: str
    root: Path

    @classmethod
    def for_team(cls, state_dir: Path, team_name: str) -> TeamPaths:
        validate_team_name(team_name)
        return cls(team_name=team_name, root=state_dir / "team" / team_name)

    @property
    def config(self) -> Path:
        return self.root / "config.json"

    @property
    def phase_cache(self) -> Path:
        return self.root / "phase.json"

    @property
    def workers_registry(self) -> Path:
        return self.root / "workers.json"

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    @property
    def archive_dir(self) -> Path:
        return self.tasks_dir / "archive"

    def task(self, task_id: str) -> Path:
        return self.tasks_dir / f"{validate_task_id(task_id)}.json"

    def task_lock_resource(self, task_id: str) -> Path:
        """Resource whose ``.lock`` marker guards transitions of ``task_id``."""

        return self.tasks_dir / validate_task_id(task_id)

    @property
    def mailbox_dir(self) -> Path:
        return self.root / "mailbox"

    def mailbox(self, worker_name: str) -> Path:
        validate_worker_name(worker_name)
        return self.mailbox_dir / f"{worker_name}.jsonl"

    def worker_dir(self, worker_name: str) -> Path:
        validate_worker_name(worker_name)
        return self.root / "workers" / worker_name

    def inbox(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / "inbox.md"

    def heartbeat(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / "heartbeat.json"

    def done(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / "done.json"

    def ready(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / ".ready"

    def overlay(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / "AGENTS.md"

    def shutdown_ack(self, worker_name: str) -> Path:
        return self.worker_dir(worker_name) / "shutdown-ack.json"

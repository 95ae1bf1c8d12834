"""Per-worker state files: overlay, heartbeat, done signal and shutdown ack."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent_team.common import from_iso, utc_now, utc_now_iso
from agent_team.errors import ValidationFailedError
from agent_team.state.io import atomic_write_json, atomic_write_text, load_json
from agent_team.team.messaging import sanitize_prompt_content
from agent_team.team.paths import TeamPaths
from agent_team.team.tasks import TaskRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Heartbeat:
    """Last-alive record a worker rewrites while it runs."""

    worker_name: str
    status: str
    updated_at: str
    current_task_id: str | None = None

    def age_seconds(self, now: datetime | None = None) -> float | None:
        try:
            updated = from_iso(self.updated_at)
        except ValueError:
            return None
        return ((now or utc_now()) - updated).total_seconds()


@dataclass(slots=True)
class DoneSignal:
    """Completion report a worker writes when it finishes a task."""

    task_id: str
    status: str
    summary: str
    completed_at: str

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


@dataclass(slots=True)
class WorkerHandle:
    """Leader-side view of one spawned worker."""

    name: str
    agent_type: str
    pane_id: str
    prompt_mode: bool = False
    current_task_id: str | None = None
    unresponsive_ticks: int = 0
    alive: bool = True


class WorkerFiles:
    """Reads and writes the files under ``workers/<name>``."""

    def __init__(self, paths: TeamPaths) -> None:
        self._paths = paths

    def write_heartbeat(
        self,
        worker_name: str,
        *,
        status: str,
        current_task_id: str | None = None,
    ) -> None:
        atomic_write_json(
            self._paths.heartbeat(worker_name),
            {
                "workerName": worker_name,
                "status": status,
                "updatedAt": utc_now_iso(),
                "currentTaskId": current_task_id,
            },
        )

    def read_heartbeat(self, worker_name: str) -> Heartbeat | None:
        path = self._paths.heartbeat(worker_name)
        if not path.exists():
            return None
        payload = load_json(path)
        return Heartbeat(
            worker_name=str(payload.get("workerName", worker_name)),
            status=str(payload.get("status", "unknown")),
            updated_at=str(payload.get("updatedAt", "")),
            current_task_id=_optional_str(payload.get("currentTaskId")),
        )

    def is_stalled(
        self,
        worker_name: str,
        *,
        max_age_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """Heartbeat exists but is older than ``max_age_seconds`` (or unparsable)."""

        try:
            heartbeat = self.read_heartbeat(worker_name)
        except ValidationFailedError as error:
            logger.warning("Unreadable heartbeat for %s: %s", worker_name, error)
            return True
        if heartbeat is None:
            return False
        age = heartbeat.age_seconds(now)
        return age is None or age > max_age_seconds

    def consume_done(self, worker_name: str) -> DoneSignal | None:
        """Read and remove ``done.json``; a partially written file is left for the next tick."""

        done = self.read_done(worker_name)
        if done is not None:
            self.discard_done(worker_name)
        return done

    def discard_done(self, worker_name: str) -> None:
        self._paths.done(worker_name).unlink(missing_ok=True)

    def read_done(self, worker_name: str) -> DoneSignal | None:
        """Parse ``done.json`` without removing it.

        A file that does not parse yet is kept; one without a ``taskId`` is dropped.
        """

        path = self._paths.done(worker_name)
        if not path.exists():
            return None
        try:
            payload = load_json(path)
        except ValidationFailedError as error:
            logger.warning("Unreadable done signal from %s: %s", worker_name, error)
            return None
        task_id = _optional_str(payload.get("taskId"))
        if task_id is None:
            logger.warning("Done signal from %s has no taskId", worker_name)
            path.unlink(missing_ok=True)
            return None
        status = str(payload.get("status", "completed"))
        return DoneSignal(
            task_id=task_id,
            status=status if status in {"completed", "failed"} else "failed",
            summary=str(payload.get("summary", "")),
            completed_at=str(payload.get("completedAt", "")),
        )

    def clear_markers(self, worker_name: str) -> None:
        """Drop heartbeat and ready files left by a previous occupant of this slot."""

        self._paths.heartbeat(worker_name).unlink(missing_ok=True)
        self._paths.ready(worker_name).unlink(missing_ok=True)

    def is_ready(self, worker_name: str) -> bool:
        return self._paths.ready(worker_name).exists()

    def has_shutdown_ack(self, worker_name: str) -> bool:
        return self._paths.shutdown_ack(worker_name).exists()

    def write_shutdown_request(self, reason: str) -> None:
        atomic_write_json(
            self._paths.root / "shutdown.json",
            {"reason": reason, "requestedAt": utc_now_iso()},
        )

    def write_overlay(
        self,
        worker_name: str,
        *,
        agent_type: str,
        tasks: Sequence[TaskRecord],
    ) -> None:
        self._paths.worker_dir(worker_name).mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self._paths.overlay(worker_name),
            render_worker_overlay(
                self._paths,
                worker_name=worker_name,
                agent_type=agent_type,
                tasks=tasks,
            ),
        )


def render_worker_overlay(
    paths: TeamPaths,
    *,
    worker_name: str,
    agent_type: str,
    tasks: Sequence[TaskRecord],
) -> str:
    """Protocol document telling a worker where its files live."""

    task_lines = "\n".join(
        f"- **Task {task.id}**: {sanitize_prompt_content(task.subject)}" for task in tasks
    ) or "- No tasks assigned yet. Check your inbox for assignments."
    done_example = (
        '{"taskId":"<id>","status":"completed","summary":"done",'
        '"completedAt":"<ISO timestamp>"}'
    )
    heartbeat_example = (
        f'{{"workerName":"{worker_name}","status":"working",'
        '"updatedAt":"<ISO timestamp>","currentTaskId":"<id or null>"}'
    )
    return (
        "# Team Worker Protocol\n\n"
        "## First action\n"
        f"Create the ready sentinel: `{paths.ready(worker_name)}`\n\n"
        "## Identity\n"
        f"- Team: {paths.team_name}\n"
        f"- Worker: {worker_name}\n"
        f"- Agent type: {agent_type}\n\n"
        "## Tasks\n"
        f"{task_lines}\n\n"
        "## Files\n"
        f"- Inbox: `{paths.inbox(worker_name)}`\n"
        f"- Task files: `{paths.tasks_dir}/<id>.json`\n"
        f"- Heartbeat: `{paths.heartbeat(worker_name)}` as `{heartbeat_example}`\n"
        f"- Done signal: `{paths.done(worker_name)}` as `{done_example}`\n"
        "  Use status `failed` when the task could not be finished.\n\n"
        "## Shutdown\n"
        f"When `{paths.root / 'shutdown.json'}` appears, finish or abandon the current task, "
        f"write `{paths.shutdown_ack(worker_name)}` and exit.\n"
    )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

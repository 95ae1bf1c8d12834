"""Task records and lock-guarded task transitions."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_team.common import utc_now_iso
from agent_team.config import LockSettings
from agent_team.errors import TaskPermanentlyFailedError, ValidationFailedError
from agent_team.state.io import ensure_valid_payload, read_state, write_state
from agent_team.state.locking import guarded
from agent_team.team.paths import TeamPaths
from agent_team.team.phase import TaskSnapshot, coerce_count

logger = logging.getLogger(__name__)

_STATE_MODE = "team-task"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TaskSpec:
    """Leader-supplied description of one unit of work."""

    subject: str
    description: str


@dataclass(slots=True)
class TaskRecord:
    """Persisted task document."""

    id: str
    subject: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    owner: str | None = None
    result: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def retry_count(self) -> int:
        return coerce_count(self.metadata.get("retryCount"))

    @property
    def max_retries(self) -> int:
        return coerce_count(self.metadata.get("maxRetries"))

    @property
    def permanently_failed(self) -> bool:
        return self.metadata.get("permanentlyFailed") is True

    @property
    def is_terminal(self) -> bool:
        if self.status is TaskStatus.COMPLETED:
            return True
        return self.status is TaskStatus.FAILED and (
            self.permanently_failed or self.retry_count >= self.max_retries
        )

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            status=self.status.value,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            permanently_failed=self.permanently_failed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "owner": self.owner,
            "result": self.result,
            "error": self.error,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskRecord:
        metadata = payload.get("metadata")
        return cls(
            id=str(payload["id"]),
            subject=str(payload.get("subject", "")),
            description=str(payload.get("description", "")),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            owner=payload.get("owner"),
            result=payload.get("result"),
            error=payload.get("error"),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            created_at=str(payload.get("createdAt", "")),
            updated_at=str(payload.get("updatedAt", "")),
        )


class TaskStore:
    """Read and transition task files under ``<team>/tasks``."""

    def __init__(
        self,
        paths: TeamPaths,
        *,
        lock_settings: LockSettings | None = None,
        max_retries: int = 2,
    ) -> None:
        self._paths = paths
        self._lock = lock_settings or LockSettings()
        self._max_retries = max_retries

    def create_tasks(self, specs: Sequence[TaskSpec]) -> list[TaskRecord]:
        """Write one pending task file per spec, numbered from 1."""

        created: list[TaskRecord] = []
        for index, spec in enumerate(specs, start=1):
            now = utc_now_iso()
            record = TaskRecord(
                id=str(index),
                subject=spec.subject,
                description=spec.description,
                metadata={"retryCount": 0, "maxRetries": self._max_retries},
                created_at=now,
                updated_at=now,
            )
            with guarded(self._paths.task_lock_resource(record.id), self._lock):
                self._write(record)
            created.append(record)
        return created

    def read(self, task_id: str) -> TaskRecord | None:
        path = self._paths.task(task_id)
        payload = read_state(path)
        if payload is None:
            return None
        try:
            return TaskRecord.from_dict(payload)
        except (KeyError, ValueError, TypeError) as error:
            raise ValidationFailedError(path, f"malformed task record: {error}") from error

    def list_tasks(self) -> list[TaskRecord]:
        if not self._paths.tasks_dir.exists():
            return []
        records: list[TaskRecord] = []
        for path in self._paths.tasks_dir.glob("*.json"):
            record = self.read(path.stem)
            if record is not None:
                records.append(record)
        return sorted(records, key=_task_sort_key)

    def snapshots(self) -> list[TaskSnapshot]:
        return [record.snapshot() for record in self.list_tasks()]

    def claim(self, task_id: str, worker_name: str) -> TaskRecord | None:
        """Move a pending task to in_progress for ``worker_name``; ``None`` if not pending."""

        def _claim(record: TaskRecord) -> bool:
            if record.status is not TaskStatus.PENDING or record.permanently_failed:
                return False
            record.status = TaskStatus.IN_PROGRESS
            record.owner = worker_name
            return True

        return self._transition(task_id, _claim)

    def complete(self, task_id: str, summary: str | None = None) -> TaskRecord | None:
        def _complete(record: TaskRecord) -> bool:
            if record.status is TaskStatus.COMPLETED:
                return False
            record.status = TaskStatus.COMPLETED
            record.result = summary
            record.error = None
            return True

        return self._transition(task_id, _complete)

    def fail(self, task_id: str, error: str) -> TaskRecord | None:
        """Mark failed; flag permanently failed once retries are used up."""

        def _fail(record: TaskRecord) -> bool:
            if record.status is TaskStatus.COMPLETED:
                return False
            record.status = TaskStatus.FAILED
            record.error = error
            if record.retry_count >= record.max_retries:
                record.metadata["permanentlyFailed"] = True
            return True

        return self._transition(task_id, _fail)

    def retry(self, task_id: str) -> TaskRecord | None:
        """Requeue a failed task, spending one retry."""

        def _retry(record: TaskRecord) -> bool:
            if record.status is not TaskStatus.FAILED:
                return False
            if record.permanently_failed or record.retry_count >= record.max_retries:
                raise TaskPermanentlyFailedError(record.id)
            record.metadata["retryCount"] = record.retry_count + 1
            record.status = TaskStatus.PENDING
            record.owner = None
            return True

        return self._transition(task_id, _retry)

    def reset_to_pending(self, task_id: str) -> TaskRecord | None:
        """Return an in-progress task to the backlog after its worker disappeared."""

        def _reset(record: TaskRecord) -> bool:
            if record.status is not TaskStatus.IN_PROGRESS:
                return False
            record.status = TaskStatus.PENDING
            record.owner = None
            return True

        return self._transition(task_id, _reset)

    def archive(self, task_id: str) -> None:
        """Move a task file out of the live set; tasks are never deleted."""

        with guarded(self._paths.task_lock_resource(task_id), self._lock):
            source = self._paths.task(task_id)
            if not source.exists():
                return
            self._paths.archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(self._paths.archive_dir / source.name))
        logger.info("Archived task %s", task_id)

    def _transition(
        self,
        task_id: str,
        mutate: Callable[[TaskRecord], bool],
    ) -> TaskRecord | None:
        with guarded(self._paths.task_lock_resource(task_id), self._lock):
            record = self.read(task_id)
            if record is None or not mutate(record):
                return None
            record.updated_at = utc_now_iso()
            self._write(record)
        return record

    def _write(self, record: TaskRecord) -> None:
        path = self._paths.task(record.id)
        payload = record.to_dict()
        ensure_valid_payload(path, payload)
        write_state(path, payload, mode=_STATE_MODE)


def _task_sort_key(record: TaskRecord) -> tuple[int, int | str]:
    if record.id.isdigit():
        return (0, int(record.id))
    return (1, record.id)

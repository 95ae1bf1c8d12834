"""Error taxonomy for team coordination."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class ResourceBusyError(RuntimeError):
    """Lock is held by a live, non-stale owner."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"Failed to acquire file lock: {path}")
        self.path = path


class AgentUnavailableError(RuntimeError):
    """Worker CLI binary is missing or cannot be executed."""

    def __init__(self, agent_type: str, binary: str, install_hint: str) -> None:
        super().__init__(f"CLI agent '{agent_type}' not found ({binary}). {install_hint}")
        self.agent_type = agent_type
        self.binary = binary
        self.install_hint = install_hint


class ValidationFailedError(RuntimeError):
    """Persisted state or payload failed validation."""

    def __init__(self, path: Path | None, reason: str) -> None:
        location = f"{path}: " if path is not None else ""
        super().__init__(f"{location}{reason}")
        self.path = path
        self.reason = reason


class TaskPermanentlyFailedError(RuntimeError):
    """Task exhausted its retries and cannot be requeued."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is permanently failed; retries exhausted.")
        self.task_id = task_id


class InvalidNameError(ValueError):
    """Team, worker or task identifier does not match the allowed pattern."""


@dataclass(slots=True, frozen=True)
class DeliveryResult:
    """Outcome of a best-effort trigger delivery."""

    delivered: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.delivered

    @classmethod
    def ok(cls) -> DeliveryResult:
        return cls(delivered=True)

    @classmethod
    def failed(cls, reason: str) -> DeliveryResult:
        return cls(delivered=False, reason=reason)

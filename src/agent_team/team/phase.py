"""Collective team phase derived from a snapshot of task states.

Rules are evaluated in order and the first match wins:

1. no tasks -> initializing
2. any task in progress -> executing
3. every task pending -> planning
4. only completed and pending tasks -> executing
5. a task counts as failed when its status is ``failed`` or its metadata marks it
   permanently failed, whatever its status string says
6. any failed task with retries remaining -> fixing
7. every task failed and no retries remain -> failed
8. every task completed and none permanently failed -> completed
9. anything else -> executing
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any


class TeamPhase(str, Enum):
    """Projection of task states used for display and stop decisions."""

    INITIALIZING = "initializing"
    PLANNING = "planning"
    EXECUTING = "executing"
    FIXING = "fixing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({TeamPhase.COMPLETED, TeamPhase.FAILED})


@dataclass(slots=True, frozen=True)
class TaskSnapshot:
    """The fields of a task record that phase inference reads."""

    status: str
    retry_count: int = 0
    max_retries: int = 0
    permanently_failed: bool = False

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> TaskSnapshot:
        """Build a snapshot from a raw task document, tolerating junk values."""

        metadata = payload.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        status = payload.get("status")
        return cls(
            status=status if isinstance(status, str) else "",
            retry_count=coerce_count(metadata.get("retryCount")),
            max_retries=coerce_count(metadata.get("maxRetries")),
            permanently_failed=metadata.get("permanentlyFailed") is True,
        )

    @property
    def is_failed(self) -> bool:
        return self.status == "failed" or self.permanently_failed

    @property
    def has_retries_left(self) -> bool:
        if not self.is_failed or self.permanently_failed:
            return False
        return self.retry_count < self.max_retries

    @property
    def is_completed(self) -> bool:
        return self.status == "completed" and not self.permanently_failed

    @property
    def is_pending(self) -> bool:
        return self.status == "pending" and not self.permanently_failed

    @property
    def is_in_progress(self) -> bool:
        return self.status == "in_progress" and not self.permanently_failed


@dataclass(slots=True, frozen=True)
class PhaseDecision:
    """Inferred phase and the number of the rule that produced it."""

    phase: TeamPhase
    rule: int


def explain_phase(tasks: Iterable[TaskSnapshot | Mapping[str, Any]]) -> PhaseDecision:
    snapshots = [_coerce(task) for task in tasks]
    if not snapshots:
        return PhaseDecision(TeamPhase.INITIALIZING, 1)
    if any(task.is_in_progress for task in snapshots):
        return PhaseDecision(TeamPhase.EXECUTING, 2)
    if all(task.is_pending for task in snapshots):
        return PhaseDecision(TeamPhase.PLANNING, 3)

    has_completed = any(task.is_completed for task in snapshots)
    has_pending = any(task.is_pending for task in snapshots)
    only_completed_or_pending = all(task.is_completed or task.is_pending for task in snapshots)
    if has_completed and has_pending and only_completed_or_pending:
        return PhaseDecision(TeamPhase.EXECUTING, 4)

    failed = [task for task in snapshots if task.is_failed]
    if any(task.has_retries_left for task in failed):
        return PhaseDecision(TeamPhase.FIXING, 6)
    if len(failed) == len(snapshots):
        return PhaseDecision(TeamPhase.FAILED, 7)
    if all(task.is_completed for task in snapshots):
        return PhaseDecision(TeamPhase.COMPLETED, 8)
    return PhaseDecision(TeamPhase.EXECUTING, 9)


def infer_phase(tasks: Iterable[TaskSnapshot | Mapping[str, Any]]) -> TeamPhase:
    """Deterministic, side-effect-free phase for a task snapshot."""

    return explain_phase(tasks).phase


def is_terminal_phase(phase: TeamPhase | str) -> bool:
    try:
        return TeamPhase(phase) in TERMINAL_PHASES
    except ValueError:
        return False


def phase_transition_log(previous: TeamPhase | None, current: TeamPhase) -> str:
    if previous is None:
        return f"Team phase: {current.value}"
    if previous is current:
        return f"Team phase unchanged: {current.value}"
    return f"Team phase: {previous.value} -> {current.value}"


def _coerce(task: TaskSnapshot | Mapping[str, Any]) -> TaskSnapshot:
    if isinstance(task, TaskSnapshot):
        return task
    if isinstance(task, Mapping):
        return TaskSnapshot.from_mapping(task)
    return TaskSnapshot(status="")


def coerce_count(value: Any) -> int:
    """Integer metadata value, or 0 for anything that is not a whole number."""

    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0

"""Pipeline configuration, stage identifiers and persisted tracking state."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_team.common import utc_now_iso


class StageId(str, Enum):
    """Canonical pipeline stages in execution order."""

    PLAN = "plan"
    EXECUTE = "execute"
    FIX = "fix"
    QA = "qa"


STAGE_ORDER: tuple[StageId, ...] = (StageId.PLAN, StageId.EXECUTE, StageId.FIX, StageId.QA)

LEGACY_STAGE_ALIASES: Mapping[str, StageId] = {
    "ralplan": StageId.PLAN,
    "planning": StageId.PLAN,
    "execution": StageId.EXECUTE,
    "ralph": StageId.FIX,
    "verify": StageId.FIX,
    "verification": StageId.FIX,
    "ultraqa": StageId.QA,
}


def normalize_stage_id(value: str | StageId) -> StageId:
    """Map current or legacy stage names to the canonical identifier."""

    if isinstance(value, StageId):
        return value
    normalized = value.strip().lower()
    alias = LEGACY_STAGE_ALIASES.get(normalized)
    if alias is not None:
        return alias
    try:
        return StageId(normalized)
    except ValueError as error:
        raise ValueError(f"Unknown pipeline stage: {value!r}") from error


class StageStatus(str, Enum):
    """Per-stage lifecycle."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


class PlanningMode(str, Enum):
    """How the plan stage produces its plan."""

    RALPLAN = "ralplan"
    DIRECT = "direct"


class ExecutionMode(str, Enum):
    """Single agent or a team of workers for the execute stage."""

    SOLO = "solo"
    TEAM = "team"


@dataclass(slots=True)
class VerificationConfig:
    """Fix/verify loop settings."""

    engine: str = "ralph"
    max_iterations: int = 100


@dataclass(slots=True)
class PipelineConfig:
    """Which stages run and how. ``None`` planning or verification disables that stage."""

    planning: PlanningMode | None = PlanningMode.RALPLAN
    execution: ExecutionMode = ExecutionMode.SOLO
    verification: VerificationConfig | None = field(default_factory=VerificationConfig)
    qa: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "planning": self.planning.value if self.planning is not None else False,
            "execution": self.execution.value,
            "verification": (
                {
                    "engine": self.verification.engine,
                    "maxIterations": self.verification.max_iterations,
                }
                if self.verification is not None
                else False
            ),
            "qa": self.qa,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PipelineConfig:
        config = cls()
        config.apply(payload)
        return config

    def apply(self, overrides: Mapping[str, Any]) -> None:
        """Overlay user-supplied keys; unknown keys are ignored."""

        if "planning" in overrides:
            planning = overrides["planning"]
            if planning in (False, None):
                self.planning = None
            elif planning is True:
                self.planning = PlanningMode.RALPLAN
            else:
                self.planning = PlanningMode(str(planning))
        if "execution" in overrides:
            self.execution = ExecutionMode(str(overrides["execution"]))
        if "verification" in overrides:
            verification = overrides["verification"]
            if verification in (False, None):
                self.verification = None
            elif verification is True:
                self.verification = VerificationConfig()
            elif isinstance(verification, Mapping):
                self.verification = VerificationConfig(
                    engine=str(verification.get("engine", "ralph")),
                    max_iterations=int(
                        verification.get(
                            "maxIterations",
                            verification.get("max_iterations", 100),
                        ),
                    ),
                )
            else:
                raise ValueError(f"Invalid verification config: {verification!r}")
        if "qa" in overrides:
            self.qa = bool(overrides["qa"])


@dataclass(slots=True)
class StageState:
    """Tracking record for one stage."""

    id: StageId
    status: StageStatus = StageStatus.PENDING
    iterations: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id.value,
            "status": self.status.value,
            "iterations": self.iterations,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StageState:
        return cls(
            id=normalize_stage_id(str(payload["id"])),
            status=StageStatus(str(payload.get("status", StageStatus.PENDING.value))),
            iterations=int(payload.get("iterations", 0)),
            started_at=payload.get("startedAt"),
            completed_at=payload.get("completedAt"),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class PipelineState:
    """Persisted pipeline record: config, stage statuses and the current index."""

    idea: str
    config: PipelineConfig
    stages: list[StageState]
    current_index: int = 0
    started_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def current(self) -> StageState | None:
        if 0 <= self.current_index < len(self.stages):
            return self.stages[self.current_index]
        return None

    @property
    def is_complete(self) -> bool:
        return self.current_index >= len(self.stages)

    @property
    def has_failed(self) -> bool:
        return any(stage.status is StageStatus.FAILED for stage in self.stages)

    def stage(self, stage_id: str | StageId) -> StageState:
        wanted = normalize_stage_id(stage_id)
        for stage in self.stages:
            if stage.id is wanted:
                return stage
        raise KeyError(wanted.value)

    def to_dict(self) -> dict[str, Any]:
        current = self.current
        return {
            "idea": self.idea,
            "config": self.config.to_dict(),
            "stages": [stage.to_dict() for stage in self.stages],
            "currentStageIndex": self.current_index,
            "currentStage": current.id.value if current is not None else None,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PipelineState:
        """Rebuild state, accepting legacy stage names anywhere a stage id appears."""

        config_payload = payload.get("config")
        stages = [StageState.from_dict(stage) for stage in payload.get("stages", [])]
        index = payload.get("currentStageIndex")
        if not isinstance(index, int):
            current_name = payload.get("currentStage")
            index = len(stages)
            if isinstance(current_name, str):
                wanted = normalize_stage_id(current_name)
                index = next(
                    (position for position, stage in enumerate(stages) if stage.id is wanted),
                    len(stages),
                )
        return cls(
            idea=str(payload.get("idea", "")),
            config=PipelineConfig.from_dict(
                config_payload if isinstance(config_payload, Mapping) else {},
            ),
            stages=stages,
            current_index=index,
            started_at=str(payload.get("startedAt", utc_now_iso())),
            updated_at=str(payload.get("updatedAt", utc_now_iso())),
        )

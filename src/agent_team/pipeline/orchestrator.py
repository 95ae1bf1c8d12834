"""Pipeline orchestrator: advance one agent session through ordered stages."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from agent_team.common import utc_now_iso
from agent_team.config import LockSettings
from agent_team.errors import ValidationFailedError
from agent_team.pipeline.adapters import (
    ADAPTERS,
    DEFAULT_PLAN_PATH,
    DEFAULT_SPEC_PATH,
    PIPELINE_COMPLETE_SIGNAL,
    StageContext,
)
from agent_team.pipeline.models import (
    STAGE_ORDER,
    PipelineConfig,
    PipelineState,
    StageId,
    StageState,
    StageStatus,
)
from agent_team.state.io import read_state, write_state
from agent_team.state.locking import guarded

logger = logging.getLogger(__name__)

_STATE_MODE = "pipeline"

DEPRECATED_MODE_ALIASES: Mapping[str, Mapping[str, Any]] = {
    "ultrawork": {"execution": "team"},
    "ultrapilot": {"execution": "team"},
}


class TickKind(str, Enum):
    """What a tick did."""

    WAITING = "waiting"
    ADVANCED = "advanced"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class TickResult:
    """Outcome of one tick and the prompt to hand to the agent, if any."""

    kind: TickKind
    stage: StageId | None
    prompt: str | None
    completed_stage: StageId | None = None


@dataclass(slots=True, frozen=True)
class PipelineStatus:
    """Summary of stage progress."""

    current_stage: StageId | None
    completed_stages: list[StageId]
    pending_stages: list[StageId]
    skipped_stages: list[StageId]
    failed_stages: list[StageId]
    is_complete: bool
    progress: str


def resolve_pipeline_config(
    overrides: Mapping[str, Any] | None = None,
    deprecated_mode: str | None = None,
) -> PipelineConfig:
    """Defaults, then the deprecated mode alias, then explicit overrides."""

    config = PipelineConfig()
    if deprecated_mode is not None:
        alias = DEPRECATED_MODE_ALIASES.get(deprecated_mode.strip().lower())
        if alias is not None:
            config.apply(alias)
    if overrides:
        config.apply(overrides)
    return config


def deprecation_warning(mode: str) -> str | None:
    normalized = mode.strip().lower()
    if normalized not in DEPRECATED_MODE_ALIASES:
        return None
    return (
        f"Mode '{normalized}' is deprecated; use the pipeline with "
        "execution='team' instead."
    )


def build_pipeline_state(idea: str, config: PipelineConfig) -> PipelineState:
    """Fresh tracking record with skipped stages marked up front."""

    stages = [
        StageState(
            id=stage_id,
            status=(
                StageStatus.SKIPPED
                if ADAPTERS[stage_id].should_skip(config)
                else StageStatus.PENDING
            ),
        )
        for stage_id in STAGE_ORDER
    ]
    first = next(
        (index for index, stage in enumerate(stages) if stage.status is StageStatus.PENDING),
        len(stages),
    )
    return PipelineState(idea=idea, config=config, stages=stages, current_index=first)


def transition_prompt(from_stage: StageId, to_stage: StageId | None) -> str:
    if to_stage is None:
        return (
            "## PIPELINE COMPLETE\n\n"
            "All pipeline stages have completed successfully!\n\n"
            f"Signal: {PIPELINE_COMPLETE_SIGNAL}\n"
        )
    return (
        f"## PIPELINE STAGE TRANSITION: {from_stage.value.upper()} -> "
        f"{to_stage.value.upper()}\n\n"
        f"The {from_stage.value} stage is complete. "
        f"Transitioning to: **{ADAPTERS[to_stage].name}**\n\n"
    )


def pipeline_status(state: PipelineState) -> PipelineStatus:
    by_status: dict[StageStatus, list[StageId]] = {status: [] for status in StageStatus}
    for stage in state.stages:
        by_status[stage.status].append(stage.id)
    active = by_status[StageStatus.ACTIVE]
    runnable = [stage for stage in state.stages if stage.status is not StageStatus.SKIPPED]
    completed = by_status[StageStatus.COMPLETE]
    return PipelineStatus(
        current_stage=active[0] if active else None,
        completed_stages=completed,
        pending_stages=by_status[StageStatus.PENDING],
        skipped_stages=by_status[StageStatus.SKIPPED],
        failed_stages=by_status[StageStatus.FAILED],
        is_complete=not active and not by_status[StageStatus.PENDING] and not state.has_failed,
        progress=f"{len(completed)}/{len(runnable)} stages",
    )


_HUD_MARKERS = {
    StageStatus.COMPLETE: "[OK]",
    StageStatus.ACTIVE: "[>>]",
    StageStatus.PENDING: "[..]",
    StageStatus.SKIPPED: "[--]",
    StageStatus.FAILED: "[!!]",
}


def format_pipeline_hud(state: PipelineState) -> str:
    parts = []
    for stage in state.stages:
        label = f"{_HUD_MARKERS[stage.status]} {ADAPTERS[stage.id].name}"
        if stage.status is StageStatus.ACTIVE:
            label += f" (iter {stage.iterations})"
        parts.append(label)
    return f"Pipeline {pipeline_status(state).progress}: {' | '.join(parts)}"


class PipelineOrchestrator:
    """Lock-guarded, persisted stage machine for one agent session."""

    def __init__(
        self,
        state_path: Path,
        *,
        lock_settings: LockSettings | None = None,
        spec_path: Path = DEFAULT_SPEC_PATH,
        plan_path: Path = DEFAULT_PLAN_PATH,
    ) -> None:
        self._state_path = state_path
        self._lock = lock_settings or LockSettings()
        self._spec_path = spec_path
        self._plan_path = plan_path

    @property
    def state_path(self) -> Path:
        return self._state_path

    def load(self) -> PipelineState | None:
        payload = read_state(self._state_path)
        if payload is None:
            return None
        try:
            return PipelineState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise ValidationFailedError(
                self._state_path,
                f"malformed pipeline state: {error}",
            ) from error

    def start(self, idea: str, config: PipelineConfig) -> TickResult:
        """Replace any existing state with a fresh pipeline and emit the first prompt."""

        with guarded(self._state_path, self._lock):
            state = build_pipeline_state(idea, config)
            result = self._evaluate(state, output=None)
            self._save(state)
        logger.info("Pipeline started at stage %s", result.stage.value if result.stage else "-")
        return result

    def tick(
        self,
        output: str | None = None,
        *,
        idea: str = "",
        config: PipelineConfig | None = None,
    ) -> TickResult:
        """Load state (initializing if absent), consume ``output``, persist, report."""

        with guarded(self._state_path, self._lock):
            state = self.load()
            if state is None:
                state = build_pipeline_state(idea, config or PipelineConfig())
            result = self._evaluate(state, output)
            self._save(state)
        if result.completed_stage is not None:
            logger.info(
                "Pipeline stage %s complete; now %s",
                result.completed_stage.value,
                result.stage.value if result.stage else "done",
            )
        return result

    def fail_current_stage(self, error: str) -> PipelineState | None:
        with guarded(self._state_path, self._lock):
            state = self.load()
            if state is None or state.current is None:
                return state
            _fail_stage(state.current, error)
            self._save(state)
        logger.warning("Pipeline stage %s failed: %s", state.current.id.value, error)
        return state

    def increment_stage_iteration(self) -> int | None:
        with guarded(self._state_path, self._lock):
            state = self.load()
            if state is None or state.current is None:
                return None
            state.current.iterations += 1
            self._save(state)
            return state.current.iterations

    def completion_signal(self) -> str | None:
        """Signal the agent must print to finish the current stage."""

        state = self.load()
        if state is None or state.current is None:
            return None
        return ADAPTERS[state.current.id].completion_signal

    def _evaluate(self, state: PipelineState, output: str | None) -> TickResult:
        if state.has_failed:
            failed = next(stage for stage in state.stages if stage.status is StageStatus.FAILED)
            return TickResult(kind=TickKind.FAILED, stage=failed.id, prompt=None)

        stage = state.current
        if stage is not None and stage.status is StageStatus.ACTIVE and output is not None:
            adapter = ADAPTERS[stage.id]
            if adapter.detects_completion(output):
                stage.status = StageStatus.COMPLETE
                stage.completed_at = utc_now_iso()
                state.current_index += 1
                following = self._activate_next(state)
                if following is None:
                    return TickResult(
                        kind=TickKind.COMPLETE,
                        stage=None,
                        prompt=transition_prompt(stage.id, None),
                        completed_stage=stage.id,
                    )
                return TickResult(
                    kind=TickKind.ADVANCED,
                    stage=following.id,
                    prompt=transition_prompt(stage.id, following.id)
                    + self._prompt_for(state, following),
                    completed_stage=stage.id,
                )
            stage.iterations += 1
            limit = _iteration_limit(state, stage)
            if limit is not None and stage.iterations >= limit:
                _fail_stage(stage, f"maximum iterations ({limit}) reached")
                return TickResult(kind=TickKind.FAILED, stage=stage.id, prompt=None)
            return TickResult(
                kind=TickKind.WAITING,
                stage=stage.id,
                prompt=self._prompt_for(state, stage),
            )

        following = self._activate_next(state)
        if following is None:
            return TickResult(kind=TickKind.COMPLETE, stage=None, prompt=None)
        return TickResult(
            kind=TickKind.WAITING,
            stage=following.id,
            prompt=self._prompt_for(state, following),
        )

    def _activate_next(self, state: PipelineState) -> StageState | None:
        while not state.is_complete:
            stage = state.stages[state.current_index]
            if stage.status is StageStatus.ACTIVE:
                return stage
            if stage.status is StageStatus.PENDING and ADAPTERS[stage.id].should_skip(state.config):
                stage.status = StageStatus.SKIPPED
                logger.info("Skipping pipeline stage %s", stage.id.value)
            if stage.status is StageStatus.PENDING:
                stage.status = StageStatus.ACTIVE
                stage.started_at = utc_now_iso()
                return stage
            state.current_index += 1
        return None

    def _prompt_for(self, state: PipelineState, stage: StageState) -> str:
        return ADAPTERS[stage.id].get_prompt(
            StageContext(
                idea=state.idea,
                config=state.config,
                spec_path=self._spec_path,
                plan_path=self._plan_path,
                iteration=stage.iterations,
            ),
        )

    def _save(self, state: PipelineState) -> None:
        state.updated_at = utc_now_iso()
        write_state(self._state_path, state.to_dict(), mode=_STATE_MODE)


def _fail_stage(stage: StageState, error: str) -> None:
    stage.status = StageStatus.FAILED
    stage.error = error
    stage.completed_at = utc_now_iso()


def _iteration_limit(state: PipelineState, stage: StageState) -> int | None:
    if stage.id is StageId.FIX and state.config.verification is not None:
        return state.config.verification.max_iterations
    return None

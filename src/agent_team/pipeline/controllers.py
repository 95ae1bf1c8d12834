"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_team.config import Settings
from agent_team.pipeline.orchestrator import (
    PipelineOrchestrator,
    TickResult,
    deprecation_warning,
    format_pipeline_hud,
    pipeline_status,
    resolve_pipeline_config,
)

PIPELINE_STATE_FILE = "pipeline-state.json"


@dataclass(slots=True)
class PipelineStartCommand:
    """CLI input for starting a pipeline."""

    idea: str
    config_json: str | None = None
    mode: str | None = None
    state_dir: Path | None = None


@dataclass(slots=True)
class PipelineTickCommand:
    """CLI input for feeding agent output into the pipeline."""

    output: str | None
    state_dir: Path | None = None


@dataclass(slots=True)
class PipelineStatusCommand:
    """CLI input for pipeline status."""

    state_dir: Path | None = None


class PipelineCliController:
    """Coordinates pipeline start, tick and status CLI operations."""

    def start(self, command: PipelineStartCommand) -> list[str]:
        overrides = _parse_overrides(command.config_json)
        config = resolve_pipeline_config(overrides, deprecated_mode=command.mode)
        lines: list[str] = []
        if command.mode:
            warning = deprecation_warning(command.mode)
            if warning:
                lines.append(f"Warning: {warning}")
        result = _orchestrator(command.state_dir).start(command.idea, config)
        lines.extend(_render_tick(result))
        return lines

    def tick(self, command: PipelineTickCommand) -> list[str]:
        orchestrator = _orchestrator(command.state_dir)
        if orchestrator.load() is None:
            return [f"No pipeline state at {orchestrator.state_path}"]
        return _render_tick(orchestrator.tick(command.output))

    def status(self, command: PipelineStatusCommand) -> list[str]:
        orchestrator = _orchestrator(command.state_dir)
        state = orchestrator.load()
        if state is None:
            return [f"No pipeline state at {orchestrator.state_path}"]
        status = pipeline_status(state)
        lines = [
            format_pipeline_hud(state),
            f"Idea: {state.idea}",
            f"Current: {status.current_stage.value if status.current_stage else '-'}",
        ]
        for stage in state.stages:
            suffix = f" error={stage.error}" if stage.error else ""
            lines.append(
                f"  {stage.id.value} status={stage.status.value} "
                f"iterations={stage.iterations}{suffix}",
            )
        signal = orchestrator.completion_signal()
        if signal:
            lines.append(f"Completion signal: {signal}")
        return lines


def _orchestrator(state_dir: Path | None) -> PipelineOrchestrator:
    settings = Settings.from_env(state_dir=state_dir)
    return PipelineOrchestrator(
        settings.state_dir / PIPELINE_STATE_FILE,
        lock_settings=settings.lock,
    )


def _parse_overrides(config_json: str | None) -> dict[str, Any] | None:
    if not config_json:
        return None
    try:
        overrides = json.loads(config_json)
    except ValueError as error:
        raise ValueError(f"Invalid pipeline config JSON: {error}") from error
    if not isinstance(overrides, dict):
        raise ValueError("Pipeline config must be a JSON object")
    return overrides


def _render_tick(result: TickResult) -> list[str]:
    lines = [f"Tick: {result.kind.value} stage={result.stage.value if result.stage else '-'}"]
    if result.completed_stage is not None:
        lines.append(f"Completed: {result.completed_stage.value}")
    if result.prompt:
        lines.append("")
        lines.extend(result.prompt.splitlines())
    return lines

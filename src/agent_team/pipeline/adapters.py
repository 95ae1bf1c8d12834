"""Stage adapters: skip rule, prompt and completion signal for each stage."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from agent_team.pipeline.models import (
    STAGE_ORDER,
    ExecutionMode,
    PipelineConfig,
    PlanningMode,
    StageId,
    normalize_stage_id,
)

DEFAULT_SPEC_PATH = Path(".omc/autopilot/spec.md")
DEFAULT_PLAN_PATH = Path(".omc/plans/autopilot-impl.md")
PIPELINE_COMPLETE_SIGNAL = "AUTOPILOT_COMPLETE"


@dataclass(slots=True, frozen=True)
class StageContext:
    """Inputs available to a stage prompt."""

    idea: str
    config: PipelineConfig
    spec_path: Path = DEFAULT_SPEC_PATH
    plan_path: Path = DEFAULT_PLAN_PATH
    iteration: int = 0


@dataclass(slots=True, frozen=True)
class StageAdapter:
    """One pluggable pipeline stage."""

    id: StageId
    name: str
    completion_signal: str
    should_skip: Callable[[PipelineConfig], bool]
    get_prompt: Callable[[StageContext], str]
    legacy_signals: tuple[str, ...] = ()

    def detects_completion(self, output: str) -> bool:
        return any(signal in output for signal in (self.completion_signal, *self.legacy_signals))


def _plan_prompt(context: StageContext) -> str:
    if context.config.planning is PlanningMode.DIRECT:
        approach = (
            "Write the implementation plan directly from the idea; "
            "no separate review round is needed."
        )
    else:
        approach = (
            "Draft the plan, critique it as a reviewer would, and revise until the "
            "plan is concrete enough to execute step by step."
        )
    return (
        "## PIPELINE STAGE: PLAN\n\n"
        f"Idea: {context.idea}\n\n"
        f"{approach}\n\n"
        f"- Write the expanded specification to `{context.spec_path}`\n"
        f"- Write the implementation plan to `{context.plan_path}`\n\n"
        "### Completion\n\n"
        "When both files are written:\n\n"
        "Signal: PIPELINE_PLAN_COMPLETE\n"
    )


def _execute_prompt(context: StageContext) -> str:
    if context.config.execution is ExecutionMode.TEAM:
        mode = (
            "Split the plan into independent tasks and run them with a worker team; "
            "integrate their results when every task is done."
        )
    else:
        mode = "Implement the plan yourself, one step at a time, in order."
    return (
        "## PIPELINE STAGE: EXECUTE\n\n"
        f"Follow the plan at `{context.plan_path}`.\n\n"
        f"{mode}\n\n"
        "### Completion\n\n"
        "When every plan step is implemented:\n\n"
        "Signal: PIPELINE_EXECUTE_COMPLETE\n"
    )


def _fix_prompt(context: StageContext) -> str:
    verification = context.config.verification
    max_iterations = verification.max_iterations if verification is not None else 0
    return (
        "## PIPELINE STAGE: FIX / VERIFY\n\n"
        f"Verify the implementation against `{context.spec_path}` and fix every gap you find.\n"
        f"Iteration {context.iteration + 1} of at most {max_iterations}.\n\n"
        "### Completion\n\n"
        "When the implementation satisfies the specification:\n\n"
        "Signal: PIPELINE_FIX_COMPLETE\n"
    )


def _qa_prompt(context: StageContext) -> str:
    return (
        "## PIPELINE STAGE: QA (Quality Assurance)\n\n"
        "Run build, lint and tests. Fix failures and repeat until every check passes.\n\n"
        "### Completion\n\n"
        "When all QA checks pass:\n\n"
        "Signal: PIPELINE_QA_COMPLETE\n"
    )


ADAPTERS: Mapping[StageId, StageAdapter] = MappingProxyType(
    {
        StageId.PLAN: StageAdapter(
            id=StageId.PLAN,
            name="Planning",
            completion_signal="PIPELINE_PLAN_COMPLETE",
            should_skip=lambda config: config.planning is None,
            get_prompt=_plan_prompt,
            legacy_signals=("PIPELINE_RALPLAN_COMPLETE",),
        ),
        StageId.EXECUTE: StageAdapter(
            id=StageId.EXECUTE,
            name="Execution",
            completion_signal="PIPELINE_EXECUTE_COMPLETE",
            should_skip=lambda config: False,
            get_prompt=_execute_prompt,
            legacy_signals=("PIPELINE_EXECUTION_COMPLETE",),
        ),
        StageId.FIX: StageAdapter(
            id=StageId.FIX,
            name="Fix / Verify",
            completion_signal="PIPELINE_FIX_COMPLETE",
            should_skip=lambda config: config.verification is None,
            get_prompt=_fix_prompt,
            legacy_signals=("PIPELINE_RALPH_COMPLETE",),
        ),
        StageId.QA: StageAdapter(
            id=StageId.QA,
            name="Quality Assurance",
            completion_signal="PIPELINE_QA_COMPLETE",
            should_skip=lambda config: not config.qa,
            get_prompt=_qa_prompt,
        ),
    },
)


def get_adapter(stage_id: str | StageId) -> StageAdapter:
    return ADAPTERS[normalize_stage_id(stage_id)]


def active_adapters(config: PipelineConfig) -> list[StageAdapter]:
    """Adapters that will run for ``config``, in order."""

    return [ADAPTERS[stage] for stage in STAGE_ORDER if not ADAPTERS[stage].should_skip(config)]


def signal_to_stage_map() -> dict[str, StageId]:
    mapping: dict[str, StageId] = {}
    for adapter in ADAPTERS.values():
        mapping[adapter.completion_signal] = adapter.id
        for signal in adapter.legacy_signals:
            mapping[signal] = adapter.id
    return mapping

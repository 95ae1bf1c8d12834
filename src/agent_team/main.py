"""CLI entrypoint for agent-team."""

import json
import logging
import sys
from pathlib import Path
from typing import TextIO

import rich_click as click

from agent_team import __version__
from agent_team.errors import (
    AgentUnavailableError,
    InvalidNameError,
    ResourceBusyError,
    ValidationFailedError,
)
from agent_team.pipeline.controllers import (
    PipelineCliController,
    PipelineStartCommand,
    PipelineStatusCommand,
    PipelineTickCommand,
)
from agent_team.team.controllers import (
    RuntimeCommand,
    TeamCliController,
    TeamMailboxCommand,
    TeamSendCommand,
    TeamStatusCommand,
)
from agent_team.team.runtime import TeamStartError

click.rich_click.USE_MARKDOWN = True
TEAM_CONTROLLER = TeamCliController()
PIPELINE_CONTROLLER = PipelineCliController()

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="State directory (defaults to AGENT_TEAM_STATE_DIR or .omc/state).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-team")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity; logs go to stderr.",
)
def agent_team(log_level: str) -> None:
    """Coordinate teams of CLI coding agents in tmux panes."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@agent_team.command("runtime")
@_STATE_DIR_OPTION
def runtime(state_dir: Path | None) -> None:
    """Run one team to completion.

    Reads the team payload as JSON from stdin, for example:

    `{"teamName": "demo", "agentTypes": ["claude"], "tasks": [{"subject": "..."}], "cwd": "."}`

    Prints the result JSON on stdout and exits 0 only when every task completed.
    """

    try:
        result = TEAM_CONTROLLER.run_runtime(
            RuntimeCommand(payload_text=sys.stdin.read(), state_dir=state_dir),
        )
    except ValueError as error:
        click.echo(str(error), err=True)
        sys.exit(1)
    except (AgentUnavailableError, TeamStartError, ResourceBusyError) as error:
        click.echo(f"Team start failed: {error}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result.to_dict()))
    sys.exit(result.exit_code)


@agent_team.group()
def team() -> None:
    """Team inspection and messaging commands."""


@team.command("status")
@click.argument("team_name")
@_STATE_DIR_OPTION
def team_status(team_name: str, state_dir: Path | None) -> None:
    """Show task states, inferred phase and live workers of a team."""

    try:
        lines = TEAM_CONTROLLER.status(TeamStatusCommand(team_name=team_name, state_dir=state_dir))
    except (ValidationFailedError, InvalidNameError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@team.command("send")
@click.argument("team_name")
@click.argument("recipient")
@click.argument("body")
@click.option("--from", "sender", default="leader", show_default=True, help="Sender name.")
@_STATE_DIR_OPTION
def team_send(
    team_name: str,
    recipient: str,
    body: str,
    sender: str,
    state_dir: Path | None,
) -> None:
    """Write a message to a worker mailbox, then nudge its pane.

    Use `broadcast` as RECIPIENT to message every worker.
    """

    try:
        lines = TEAM_CONTROLLER.send(
            TeamSendCommand(
                team_name=team_name,
                sender=sender,
                recipient=recipient,
                body=body,
                state_dir=state_dir,
            ),
        )
    except (ValidationFailedError, InvalidNameError, ResourceBusyError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@team.command("mailbox")
@click.argument("team_name")
@click.argument("worker_name")
@click.option("--since", "cursor", default=None, help="Message id or ISO timestamp cursor.")
@_STATE_DIR_OPTION
def team_mailbox(
    team_name: str,
    worker_name: str,
    cursor: str | None,
    state_dir: Path | None,
) -> None:
    """Print mailbox messages after an optional cursor."""

    try:
        lines = TEAM_CONTROLLER.mailbox(
            TeamMailboxCommand(
                team_name=team_name,
                worker_name=worker_name,
                cursor=cursor,
                state_dir=state_dir,
            ),
        )
    except (ValidationFailedError, InvalidNameError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_team.group()
def pipeline() -> None:
    """Staged plan/execute/fix/qa pipeline commands."""


@pipeline.command("start")
@click.argument("idea")
@click.option(
    "--config",
    "config_json",
    default=None,
    help='JSON overrides, for example `{"qa": false, "execution": "team"}`.',
)
@click.option("--mode", default=None, help="Deprecated mode name (ultrawork, ultrapilot).")
@_STATE_DIR_OPTION
def pipeline_start(
    idea: str,
    config_json: str | None,
    mode: str | None,
    state_dir: Path | None,
) -> None:
    """Start a fresh pipeline and print the first stage prompt."""

    try:
        lines = PIPELINE_CONTROLLER.start(
            PipelineStartCommand(
                idea=idea,
                config_json=config_json,
                mode=mode,
                state_dir=state_dir,
            ),
        )
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--config") from error
    _emit_lines(lines)


@pipeline.command("tick")
@click.option(
    "--output-file",
    type=click.File("r", encoding="utf-8"),
    default=None,
    help="File holding the latest agent output; `-` reads stdin.",
)
@_STATE_DIR_OPTION
def pipeline_tick(output_file: TextIO | None, state_dir: Path | None) -> None:
    """Feed agent output to the pipeline and print the next prompt."""

    output = output_file.read() if output_file is not None else None
    try:
        lines = PIPELINE_CONTROLLER.tick(PipelineTickCommand(output=output, state_dir=state_dir))
    except (ValidationFailedError, ResourceBusyError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@pipeline.command("status")
@_STATE_DIR_OPTION
def pipeline_status(state_dir: Path | None) -> None:
    """Show pipeline progress."""

    try:
        lines = PIPELINE_CONTROLLER.status(PipelineStatusCommand(state_dir=state_dir))
    except ValidationFailedError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_team()

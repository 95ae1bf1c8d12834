"""Controllers for team CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_team.config import Settings
from agent_team.errors import DeliveryResult, ValidationFailedError
from agent_team.state.io import read_state
from agent_team.team.messaging import BROADCAST, MessagingChannel
from agent_team.team.paths import TeamPaths
from agent_team.team.phase import explain_phase
from agent_team.team.runtime import RuntimeResult, TeamConfig, TeamRuntime
from agent_team.team.tasks import TaskStore
from agent_team.team.tmux import TmuxClient


@dataclass(slots=True)
class RuntimeCommand:
    """CLI input for one blocking team run."""

    payload_text: str
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamStatusCommand:
    """CLI input for team status."""

    team_name: str
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamSendCommand:
    """CLI input for a direct or broadcast message."""

    team_name: str
    sender: str
    recipient: str
    body: str
    state_dir: Path | None = None


@dataclass(slots=True)
class TeamMailboxCommand:
    """CLI input for reading a worker mailbox."""

    team_name: str
    worker_name: str
    cursor: str | None = None
    state_dir: Path | None = None


class TeamCliController:
    """Coordinates team runtime and messaging CLI operations."""

    def __init__(self, tmux: TmuxClient | None = None) -> None:
        self._tmux = tmux

    def run_runtime(self, command: RuntimeCommand) -> RuntimeResult:
        """Parse the stdin payload and block until the team stops.

        Raises ``ValueError`` when the payload is not a JSON object or lacks
        required fields.
        """

        try:
            payload = json.loads(command.payload_text)
        except ValueError as error:
            raise ValueError(f"Invalid JSON payload: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object")

        settings = Settings.from_env(state_dir=command.state_dir)
        settings.validate()
        config = TeamConfig.from_payload(payload)
        if not payload.get("pollIntervalMs"):
            config.poll_interval_seconds = settings.monitor.poll_interval_seconds
        runtime = TeamRuntime(config, settings=settings, tmux=self._tmux)
        return runtime.run()

    def status(self, command: TeamStatusCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        paths = TeamPaths.for_team(settings.state_dir, command.team_name)
        if not paths.config.exists():
            return [f"Team not found: {command.team_name} ({paths.root})"]

        store = TaskStore(paths, lock_settings=settings.lock)
        records = store.list_tasks()
        decision = explain_phase(record.snapshot() for record in records)
        workers = _load_worker_registry(paths)
        lines = [
            f"Team: {command.team_name}",
            f"Phase: {decision.phase.value} (rule {decision.rule})",
            f"Tasks: {len(records)}",
        ]
        for record in records:
            retries = f"retry={record.retry_count}/{record.max_retries}"
            if record.permanently_failed:
                retries += " permanent"
            lines.append(
                f"  {record.id} status={record.status.value} owner={record.owner or '-'} "
                f"{retries} subject={record.subject}",
            )
        lines.append(f"Workers: {len(workers)}")
        for name, entry in sorted(workers.items()):
            lines.append(
                f"  {name} agent={entry.get('agentType', '-')} pane={entry.get('paneId', '-')} "
                f"task={entry.get('taskId') or '-'}",
            )
        return lines

    def send(self, command: TeamSendCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        paths = TeamPaths.for_team(settings.state_dir, command.team_name)
        channel = MessagingChannel(
            paths,
            tmux=self._tmux or TmuxClient(),
            lock_settings=settings.lock,
            messaging_settings=settings.messaging,
        )
        panes = {
            name: str(entry.get("paneId", ""))
            for name, entry in _load_worker_registry(paths).items()
        }

        if command.recipient == BROADCAST:
            results = channel.queue_broadcast_message(command.sender, command.body, panes)
            lines = [f"Broadcast queued for {len(results)} worker(s)"]
            for worker, queued in sorted(results.items()):
                lines.append(f"  {worker} id={queued.entry.id} {_delivery_label(queued.delivery)}")
            return lines

        pane_id = panes.get(command.recipient)
        if not pane_id:
            return [f"Unknown worker: {command.recipient}"]
        queued = channel.queue_direct_message(
            command.sender,
            command.recipient,
            command.body,
            pane_id,
        )
        return [
            f"Message queued: id={queued.entry.id} to={command.recipient} "
            f"{_delivery_label(queued.delivery)}",
        ]

    def mailbox(self, command: TeamMailboxCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        paths = TeamPaths.for_team(settings.state_dir, command.team_name)
        channel = MessagingChannel(
            paths,
            tmux=self._tmux or TmuxClient(),
            lock_settings=settings.lock,
            messaging_settings=settings.messaging,
        )
        entries = channel.read_mailbox(command.worker_name, command.cursor)
        lines = [f"Messages: {len(entries)}"]
        for entry in entries:
            marker = "notified" if entry.notified else "pending"
            lines.append(f"  {entry.id} {entry.created_at} from={entry.sender} [{marker}]")
            lines.extend(f"    {line}" for line in entry.body.splitlines())
        return lines


def _load_worker_registry(paths: TeamPaths) -> dict[str, dict[str, Any]]:
    try:
        payload = read_state(paths.workers_registry)
    except ValidationFailedError:
        return {}
    workers = (payload or {}).get("workers")
    if not isinstance(workers, dict):
        return {}
    return {str(name): entry for name, entry in workers.items() if isinstance(entry, dict)}


def _delivery_label(delivery: DeliveryResult) -> str:
    return "delivered" if delivery else f"undelivered ({delivery.reason})"

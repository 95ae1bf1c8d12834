"""Team runtime: start workers, watch them, infer phase, shut down.

The leader runs one polling loop. Each iteration runs a watchdog tick (done
signals, dead panes, stalled heartbeats, backlog dispatch) and, every poll
interval, recomputes the team phase from task files to decide whether to stop.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_team.config import Settings
from agent_team.errors import ResourceBusyError, ValidationFailedError
from agent_team.state.io import atomic_write_json, load_json, write_state
from agent_team.team.contracts import (
    build_worker_argv,
    build_worker_command,
    build_worker_env,
    get_contract,
    get_prompt_mode_args,
    validate_cli_available,
    validate_team_name,
)
from agent_team.team.layout import LayoutStabilizer
from agent_team.team.messaging import MessagingChannel
from agent_team.team.paths import TeamPaths
from agent_team.team.phase import TeamPhase, explain_phase, phase_transition_log
from agent_team.team.tasks import TaskRecord, TaskSpec, TaskStatus, TaskStore
from agent_team.team.tmux import SessionTarget, TmuxClient, TmuxError, pane_looks_ready
from agent_team.team.workers import WorkerFiles, WorkerHandle

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("teamName", "agentTypes", "tasks", "cwd")


class TeamStartError(RuntimeError):
    """Team could not be brought up."""


@dataclass(slots=True)
class TeamConfig:
    """Validated runtime input payload."""

    team_name: str
    agent_types: list[str]
    tasks: list[TaskSpec]
    cwd: Path
    worker_count: int
    poll_interval_seconds: float = 5.0
    model: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TeamConfig:
        """Parse the stdin payload, naming every missing field at once."""

        missing = [name for name in _REQUIRED_FIELDS if not payload.get(name)]
        if "agentTypes" not in missing and not isinstance(payload["agentTypes"], list):
            missing.append("agentTypes")
        if "tasks" not in missing and not isinstance(payload["tasks"], list):
            missing.append("tasks")
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        agent_types = [get_contract(str(agent)).agent_type.value for agent in payload["agentTypes"]]
        tasks: list[TaskSpec] = []
        for index, raw in enumerate(payload["tasks"], start=1):
            if not isinstance(raw, Mapping) or not raw.get("subject"):
                raise ValueError(f"Task #{index} requires a subject")
            tasks.append(
                TaskSpec(subject=str(raw["subject"]), description=str(raw.get("description", ""))),
            )
        team_name = str(payload["teamName"])
        validate_team_name(team_name)
        worker_count = int(payload.get("workerCount") or len(agent_types))
        if worker_count < 1:
            raise ValueError("workerCount must be >= 1")
        poll_interval_ms = payload.get("pollIntervalMs")
        return cls(
            team_name=team_name,
            agent_types=agent_types,
            tasks=tasks,
            cwd=Path(str(payload["cwd"])),
            worker_count=worker_count,
            poll_interval_seconds=(
                float(poll_interval_ms) / 1000.0 if poll_interval_ms else 5.0
            ),
            model=str(payload["model"]) if payload.get("model") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "teamName": self.team_name,
            "agentTypes": list(self.agent_types),
            "tasks": [
                {"subject": task.subject, "description": task.description} for task in self.tasks
            ],
            "cwd": str(self.cwd),
            "workerCount": self.worker_count,
            "pollIntervalMs": int(self.poll_interval_seconds * 1000),
            "model": self.model,
        }

    def agent_for(self, worker_index: int) -> str:
        return self.agent_types[worker_index % len(self.agent_types)]


@dataclass(slots=True)
class TaskResult:
    """Final state of one task in the runtime output."""

    task_id: str
    status: str
    summary: str

    def to_dict(self) -> dict[str, str]:
        return {"taskId": self.task_id, "status": self.status, "summary": self.summary}


@dataclass(slots=True)
class RuntimeResult:
    """Structured payload written to stdout when the runtime stops."""

    status: str
    team_name: str
    task_results: list[TaskResult] = field(default_factory=list)
    duration: float = 0.0
    worker_count: int = 0

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "completed" else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "teamName": self.team_name,
            "taskResults": [result.to_dict() for result in self.task_results],
            "duration": round(self.duration, 3),
            "workerCount": self.worker_count,
        }


@dataclass(slots=True)
class MonitorSnapshot:
    """Leader view of the team at one poll."""

    phase: TeamPhase
    rule: int
    task_counts: dict[str, int]
    active_workers: list[str]
    dead_workers: list[str]

    @property
    def outstanding(self) -> int:
        return self.task_counts["pending"] + self.task_counts["in_progress"]


class TeamRuntime:
    """Owns one team session from start to shutdown."""

    def __init__(  # noqa: PLR0913
        self,
        config: TeamConfig,
        *,
        settings: Settings,
        tmux: TmuxClient | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        check_agent: Callable[..., None] = validate_cli_available,
        worker_argv: Callable[..., list[str]] = build_worker_argv,
    ) -> None:
        self.config = config
        self._settings = settings
        self._tmux = tmux or TmuxClient()
        self._environ = os.environ if environ is None else environ
        self._clock = clock
        self._sleep = sleep
        self._check_agent = check_agent
        self._worker_argv = worker_argv
        state_dir = settings.state_dir
        if not state_dir.is_absolute():
            state_dir = config.cwd / state_dir
        self.paths = TeamPaths.for_team(state_dir, config.team_name)
        self.tasks = TaskStore(
            self.paths,
            lock_settings=settings.lock,
            max_retries=settings.task_max_retries,
        )
        self.files = WorkerFiles(self.paths)
        self.channel = MessagingChannel(
            self.paths,
            tmux=self._tmux,
            lock_settings=settings.lock,
            messaging_settings=settings.messaging,
            cwd=config.cwd,
            sleep=sleep,
        )
        self.workers: dict[str, WorkerHandle] = {}
        self.session: SessionTarget | None = None
        self.layout: LayoutStabilizer | None = None
        self._started_at = clock()
        self._last_phase: TeamPhase | None = None
        self._stop_status: str | None = None

    def start(self) -> None:
        """Validate agents, persist config and tasks, open the session, spawn workers."""

        for agent_type in dict.fromkeys(self.config.agent_types):
            self._check_agent(agent_type, trusted_dirs=self._settings.trusted_cli_dirs)

        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.paths.mailbox_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_json(self.paths.config, self.config.to_dict())
        records = self.tasks.create_tasks(self.config.tasks)
        for index in range(self.config.worker_count):
            self.files.write_overlay(
                worker_name(index),
                agent_type=self.config.agent_for(index),
                tasks=records,
            )

        self.session = self._open_session()
        self.layout = LayoutStabilizer(
            tmux=self._tmux,
            session_target=self.session.target,
            leader_pane_id=self.session.leader_pane_id,
            debounce_seconds=self._settings.monitor.layout_debounce_seconds,
        )
        logger.info(
            "Team %s started in %s with %d task(s)",
            self.config.team_name,
            self.session.target,
            len(records),
        )
        self.dispatch_pending()

    def request_stop(self, status: str = "failed") -> None:
        if self._stop_status is None:
            self._stop_status = status

    def run(self) -> RuntimeResult:
        """Start the team and poll until it completes, fails, or is stopped."""

        self.start()
        poll_interval = self.config.poll_interval_seconds
        next_poll = self._clock() + poll_interval
        try:
            with self._signal_handlers():
                while self._stop_status is None:
                    self._sleep(self._settings.monitor.watchdog_interval_seconds)
                    if self._stop_status is not None:
                        break
                    self.watchdog_tick()
                    if self._clock() < next_poll:
                        continue
                    next_poll = self._clock() + poll_interval
                    verdict = self.evaluate(self.monitor())
                    if verdict is not None:
                        self.request_stop(verdict)
        except BaseException:
            logger.exception("Team %s monitor loop aborted", self.config.team_name)
            self.shutdown("failed")
            raise
        return self.shutdown(self._stop_status or "failed")

    def evaluate(self, snapshot: MonitorSnapshot) -> str | None:
        """Final status implied by ``snapshot``, or ``None`` to keep polling."""

        if snapshot.phase is TeamPhase.COMPLETED:
            return "completed"
        if snapshot.phase is TeamPhase.FAILED:
            return "failed"
        if snapshot.outstanding == 0 and snapshot.phase is not TeamPhase.FIXING:
            # every task is terminal but some ended permanently failed
            return "failed"
        if snapshot.outstanding > 0 and not snapshot.active_workers:
            logger.warning("No live workers left with %d task(s) outstanding", snapshot.outstanding)
            return "failed"
        return None

    def monitor(self) -> MonitorSnapshot:
        records = self.tasks.list_tasks()
        decision = explain_phase(record.snapshot() for record in records)
        counts = {status.value: 0 for status in TaskStatus}
        for record in records:
            counts[record.status.value] += 1
        dead = [
            name
            for name, handle in self.workers.items()
            if not self._tmux.is_pane_alive(handle.pane_id)
        ]
        if decision.phase is not self._last_phase:
            logger.info(phase_transition_log(self._last_phase, decision.phase))
            self._last_phase = decision.phase
        write_state(
            self.paths.phase_cache,
            {"phase": decision.phase.value, "rule": decision.rule, "taskCounts": counts},
            mode="team-phase",
        )
        return MonitorSnapshot(
            phase=decision.phase,
            rule=decision.rule,
            task_counts=counts,
            active_workers=[name for name in self.workers if name not in dead],
            dead_workers=dead,
        )

    def watchdog_tick(self) -> None:
        """Process done signals, dead panes and stalled heartbeats, then refill workers.

        A worker whose task lock is busy is left as is and looked at again next tick.
        """

        for name, handle in list(self.workers.items()):
            try:
                self._watch_worker(name, handle)
            except ResourceBusyError as error:
                logger.warning("Deferring checks for %s to the next tick: %s", name, error)

        try:
            self._requeue_retryable()
            self.dispatch_pending()
        except ResourceBusyError as error:
            logger.warning("Deferring dispatch to the next tick: %s", error)
        if self.layout is not None:
            self.layout.flush()

    def _watch_worker(self, name: str, handle: WorkerHandle) -> None:
        monitor = self._settings.monitor
        done = self.files.read_done(name)
        if done is not None:
            task_id = done.task_id or handle.current_task_id
            if task_id is not None:
                if done.succeeded:
                    self.tasks.complete(task_id, done.summary)
                else:
                    self.tasks.fail(task_id, done.summary or "worker reported failure")
            self.files.discard_done(name)
            logger.info("Worker %s finished task %s (%s)", name, task_id, done.status)
            self._retire(handle)
            return
        if not self._tmux.is_pane_alive(handle.pane_id):
            logger.warning("Worker %s pane %s is dead", name, handle.pane_id)
            if handle.current_task_id is not None:
                self.tasks.fail(handle.current_task_id, f"worker {name} pane died")
            self._retire(handle)
            return
        if self.files.is_stalled(name, max_age_seconds=monitor.heartbeat_max_age_seconds):
            handle.unresponsive_ticks += 1
            if handle.unresponsive_ticks < monitor.max_unresponsive_ticks:
                logger.warning(
                    "Worker %s unresponsive (%d/%d)",
                    name,
                    handle.unresponsive_ticks,
                    monitor.max_unresponsive_ticks,
                )
                return
            logger.warning("Killing unresponsive worker %s", name)
            if handle.current_task_id is not None:
                self.tasks.fail(handle.current_task_id, f"worker {name} unresponsive")
            self._retire(handle)
            return
        handle.unresponsive_ticks = 0

    def dispatch_pending(self) -> list[WorkerHandle]:
        """Give pending tasks to free worker slots."""

        spawned: list[WorkerHandle] = []
        for index in range(self.config.worker_count):
            name = worker_name(index)
            if name in self.workers:
                continue
            task = next(
                (
                    record
                    for record in self.tasks.list_tasks()
                    if record.status is TaskStatus.PENDING
                ),
                None,
            )
            if task is None:
                break
            handle = self.spawn_worker(index, task)
            if handle is not None:
                spawned.append(handle)
        return spawned

    def spawn_worker(self, index: int, task: TaskRecord) -> WorkerHandle | None:
        """Claim ``task`` for worker ``index`` and launch it in a new pane."""

        if self.session is None:
            raise TeamStartError("Team session is not open; call start() first")
        name = worker_name(index)
        if self.tasks.claim(task.id, name) is None:
            return None
        self.files.clear_markers(name)
        agent_type = self.config.agent_for(index)
        instruction = build_task_instruction(self.paths, worker_name=name, task=task)
        prompt_mode = get_contract(agent_type).supports_prompt_mode
        argv = self._worker_argv(
            agent_type,
            model=self.config.model,
            trusted_dirs=self._settings.trusted_cli_dirs,
        )
        if prompt_mode:
            self.channel.write_inbox_instruction(name, instruction)
            argv = [*argv, *get_prompt_mode_args(agent_type, instruction)]
        env = build_worker_env(self.config.team_name, name, agent_type, base_env=self._environ)

        try:
            pane_id = self._tmux.split_window(
                self.session.target,
                cwd=str(self.config.cwd),
                command=build_worker_command(argv, env),
            )
        except TmuxError as error:
            logger.warning("Failed to open pane for %s: %s", name, error)
            self.tasks.reset_to_pending(task.id)
            return None

        handle = WorkerHandle(
            name=name,
            agent_type=agent_type,
            pane_id=pane_id,
            prompt_mode=prompt_mode,
            current_task_id=task.id,
        )
        self.workers[name] = handle
        self._write_worker_registry()
        if self.layout is not None:
            self.layout.request_layout()
        logger.info("Spawned %s (%s) in %s for task %s", name, agent_type, pane_id, task.id)

        if not prompt_mode:
            if not self._wait_for_pane_ready(pane_id):
                logger.warning("Worker %s pane never became ready", name)
                self._retire(handle)
                self.tasks.reset_to_pending(task.id)
                return None
            delivery = self.channel.queue_inbox_instruction(name, instruction, pane_id)
            if not delivery:
                logger.warning("Initial trigger for %s not delivered: %s", name, delivery.reason)
                self._retire(handle)
                self.tasks.reset_to_pending(task.id)
                return None
        return handle

    def shutdown(self, status: str) -> RuntimeResult:
        """Stop workers and report; state files are kept for auditing."""

        if self.layout is not None:
            self.layout.dispose()
        self.files.write_shutdown_request(status)
        if not self._settings.keep_panes_on_shutdown:
            for handle in list(self.workers.values()):
                self._tmux.kill_pane(handle.pane_id)
            if self.session is not None and self.session.created:
                self._tmux.kill_session(self.session.target.split(":", 1)[0])
            self.workers.clear()
            self._write_worker_registry()
        result = RuntimeResult(
            status=status,
            team_name=self.config.team_name,
            task_results=collect_task_results(self.paths),
            duration=self._clock() - self._started_at,
            worker_count=self.config.worker_count,
        )
        logger.info("Team %s stopped: %s", self.config.team_name, status)
        return result

    def _requeue_retryable(self) -> None:
        for record in self.tasks.list_tasks():
            if record.status is TaskStatus.FAILED and not record.is_terminal:
                self.tasks.retry(record.id)
                logger.info(
                    "Requeued task %s (retry %d/%d)",
                    record.id,
                    record.retry_count + 1,
                    record.max_retries,
                )

    def _retire(self, handle: WorkerHandle) -> None:
        handle.alive = False
        self._tmux.kill_pane(handle.pane_id)
        self.workers.pop(handle.name, None)
        self._write_worker_registry()
        if self.layout is not None:
            self.layout.request_layout()

    def _write_worker_registry(self) -> None:
        write_state(
            self.paths.workers_registry,
            {
                "workers": {
                    name: {
                        "paneId": handle.pane_id,
                        "agentType": handle.agent_type,
                        "taskId": handle.current_task_id,
                    }
                    for name, handle in self.workers.items()
                },
            },
            mode="team-workers",
        )

    def _wait_for_pane_ready(self, pane_id: str) -> bool:
        deadline = self._clock() + self._settings.monitor.pane_ready_timeout_seconds
        while True:
            if pane_looks_ready(self._tmux.capture_pane(pane_id)):
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(0.5)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, shutting down team %s", name, self.config.team_name)
            self.request_stop("failed")

        originals: dict[int, Any] = {}
        try:
            for signum in (signal.SIGINT, signal.SIGTERM):
                originals[signum] = signal.signal(signum, _handler)
        except ValueError:
            # handlers can only be installed from the main thread
            logger.debug("Signal handlers not installed outside the main thread")
        try:
            yield
        finally:
            for signum, original in originals.items():
                signal.signal(signum, original)

    def _open_session(self) -> SessionTarget:
        current_pane = self._environ.get("TMUX_PANE") if self._environ.get("TMUX") else None
        try:
            if current_pane:
                return self._tmux.current_session(current_pane)
            return self._tmux.new_session(
                f"omc-team-{self.config.team_name}",
                cwd=str(self.config.cwd),
            )
        except TmuxError as error:
            raise TeamStartError(f"Failed to open tmux session: {error}") from error


def worker_name(index: int) -> str:
    return f"worker-{index + 1}"


def build_task_instruction(paths: TeamPaths, *, worker_name: str, task: TaskRecord) -> str:
    """Instruction text for one assigned task."""

    return "\n".join(
        [
            "## Task Assignment",
            f"Task ID: {task.id}",
            f"Worker: {worker_name}",
            f"Subject: {task.subject}",
            "",
            f"First, create the ready sentinel: {paths.ready(worker_name)}",
            "",
            task.description,
            "",
            f"When finished, write {paths.done(worker_name)} as JSON:",
            f'{{"taskId":"{task.id}","status":"completed","summary":"<one line>",'
            '"completedAt":"<ISO timestamp>"}',
            'Use status "failed" with the error as summary if the task cannot be done.',
            "Work only on this task, then exit.",
        ],
    )


def collect_task_results(paths: TeamPaths) -> list[TaskResult]:
    """Read every task file, reporting unreadable ones as ``unknown``."""

    if not paths.tasks_dir.exists():
        return []
    results: list[TaskResult] = []
    for path in sorted(paths.tasks_dir.glob("*.json"), key=_numeric_stem):
        try:
            payload = load_json(path)
        except ValidationFailedError as error:
            logger.warning("Unreadable task file %s: %s", path, error)
            results.append(TaskResult(task_id=path.stem, status="unknown", summary=""))
            continue
        results.append(
            TaskResult(
                task_id=str(payload.get("id", path.stem)),
                status=str(payload.get("status", "unknown")),
                summary=str(payload.get("result") or payload.get("error") or ""),
            ),
        )
    return results


def _numeric_stem(path: Path) -> tuple[int, int | str]:
    return (0, int(path.stem)) if path.stem.isdigit() else (1, path.stem)

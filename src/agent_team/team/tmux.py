"""Thin wrapper over the tmux command line used by the leader process."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TMUX_TIMEOUT_SECONDS = 5.0
_PROMPT_LINE = re.compile(r"^\s*>\s*")
_CODEX_HINT = re.compile(r"\bgpt-[\w.-]+\b|\b\d+% left\b", re.IGNORECASE)


class TmuxError(RuntimeError):
    """tmux command failed, timed out, or tmux is not installed."""


@dataclass(slots=True, frozen=True)
class TmuxResult:
    """Captured outcome of one tmux invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""


TmuxRunner = Callable[[Sequence[str]], TmuxResult]


def subprocess_runner(args: Sequence[str]) -> TmuxResult:
    """Run ``tmux <args>`` with a bounded timeout."""

    try:
        completed = subprocess.run(  # noqa: S603
            ["tmux", *args],  # noqa: S607
            capture_output=True,
            text=True,
            timeout=TMUX_TIMEOUT_SECONDS,
            check=False,
        )
    except FileNotFoundError as error:
        raise TmuxError("tmux binary not found") from error
    except subprocess.TimeoutExpired as error:
        raise TmuxError(f"tmux {' '.join(args[:1])} timed out") from error
    return TmuxResult(
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


@dataclass(slots=True, frozen=True)
class SessionTarget:
    """Window target plus the leader pane that owns it."""

    target: str
    leader_pane_id: str
    created: bool


class TmuxClient:
    """Pane, layout and keystroke operations against one tmux server."""

    def __init__(self, runner: TmuxRunner | None = None) -> None:
        self._runner = runner or subprocess_runner

    def run(self, *args: str) -> str:
        """Run a tmux command and return stripped stdout, raising on failure."""

        result = self._runner(list(args))
        if result.returncode != 0:
            raise TmuxError(
                f"tmux {args[0] if args else ''} failed ({result.returncode}): "
                f"{result.stderr.strip()}",
            )
        return result.stdout.strip()

    def send_literal(self, pane_id: str, text: str) -> None:
        # -l keeps control sequences in text from being interpreted as key names
        self.run("send-keys", "-t", pane_id, "-l", "--", text)

    def send_key(self, pane_id: str, key: str) -> None:
        self.run("send-keys", "-t", pane_id, key)

    def is_pane_alive(self, pane_id: str) -> bool:
        try:
            return self.run("display-message", "-t", pane_id, "-p", "#{pane_dead}") == "0"
        except TmuxError:
            return False

    def pane_in_copy_mode(self, pane_id: str) -> bool:
        try:
            return self.run("display-message", "-t", pane_id, "-p", "#{pane_in_mode}") == "1"
        except TmuxError:
            return False

    def capture_pane(self, pane_id: str, *, lines: int = 80) -> str:
        try:
            return self.run("capture-pane", "-t", pane_id, "-p", "-S", f"-{lines}")
        except TmuxError:
            return ""

    def select_layout(self, target: str, layout: str) -> None:
        self.run("select-layout", "-t", target, layout)

    def window_width(self, target: str) -> int | None:
        raw = self.run("display-message", "-p", "-t", target, "#{window_width}")
        try:
            return int(raw)
        except ValueError:
            return None

    def set_main_pane_width(self, target: str, width: int) -> None:
        self.run("set-window-option", "-t", target, "main-pane-width", str(width))

    def select_pane(self, pane_id: str) -> None:
        self.run("select-pane", "-t", pane_id)

    def split_window(self, target: str, *, cwd: str, command: str) -> str:
        """Open a detached pane running ``command`` and return its pane id."""

        return self.run(
            "split-window",
            "-t",
            target,
            "-h",
            "-d",
            "-P",
            "-F",
            "#{pane_id}",
            "-c",
            cwd,
            command,
        )

    def new_session(self, name: str, *, cwd: str) -> SessionTarget:
        raw = self.run(
            "new-session",
            "-d",
            "-s",
            name,
            "-c",
            cwd,
            "-P",
            "-F",
            "#{session_name}:#{window_index} #{pane_id}",
        )
        target, _, pane_id = raw.partition(" ")
        return SessionTarget(target=target, leader_pane_id=pane_id, created=True)

    def current_session(self, pane_id: str) -> SessionTarget:
        raw = self.run(
            "display-message",
            "-p",
            "-t",
            pane_id,
            "#{session_name}:#{window_index} #{pane_id}",
        )
        target, _, leader = raw.partition(" ")
        return SessionTarget(target=target, leader_pane_id=leader or pane_id, created=False)

    def kill_pane(self, pane_id: str) -> None:
        try:
            self.run("kill-pane", "-t", pane_id)
        except TmuxError as error:
            logger.warning("Failed to kill pane %s: %s", pane_id, error)

    def kill_session(self, name: str) -> None:
        try:
            self.run("kill-session", "-t", name)
        except TmuxError as error:
            logger.warning("Failed to kill session %s: %s", name, error)


def pane_looks_ready(captured: str) -> bool:
    """Heuristic: the agent is showing an input prompt."""

    lines = [line.replace("\r", "").strip() for line in captured.splitlines()]
    tail = [line for line in lines if line][-20:]
    if not tail:
        return False
    if any(_PROMPT_LINE.match(line) for line in tail):
        return True
    return any(_CODEX_HINT.search(line) for line in tail)

"""Debounced, serialized tmux layout recomputation.

The stabilizer is an explicit state machine over ``idle``, ``pending`` and
``running``. Requests during ``pending`` restart the quiet period, requests during
``running`` set a single queued flag that re-arms the timer once the run ends.
All transitions happen under one condition variable.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from agent_team.team.tmux import TmuxClient, TmuxError

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.15
MIN_WIDTH_FOR_SPLIT = 40
MAIN_LAYOUT = "main-vertical"


class LayoutState(str, Enum):
    """Stabilizer lifecycle states."""

    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class _Timer(Protocol):
    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[..., Any], tuple[Any, ...]], _Timer]


def _thread_timer(interval: float, function: Callable[..., Any], args: tuple[Any, ...]) -> _Timer:
    return threading.Timer(interval, function, args=args)


class LayoutStabilizer:
    """Coalesce layout requests into one recomputation per quiet burst."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tmux: TmuxClient,
        session_target: str,
        leader_pane_id: str,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        timer_factory: TimerFactory = _thread_timer,
    ) -> None:
        self._tmux = tmux
        self._target = session_target
        self._leader_pane_id = leader_pane_id
        self._debounce = debounce_seconds
        self._timer_factory = timer_factory
        self._cond = threading.Condition()
        self._run_lock = threading.Lock()
        self._state = LayoutState.IDLE
        self._timer: _Timer | None = None
        self._generation = 0
        self._queued = False
        self._disposed = False
        self.run_count = 0

    @property
    def state(self) -> LayoutState:
        with self._cond:
            return self._state

    @property
    def is_pending(self) -> bool:
        return self.state is LayoutState.PENDING

    @property
    def is_running(self) -> bool:
        return self.state is LayoutState.RUNNING

    @property
    def is_disposed(self) -> bool:
        with self._cond:
            return self._disposed

    def request_layout(self) -> None:
        """Non-blocking request; no-op after :meth:`dispose`."""

        with self._cond:
            if self._disposed:
                return
            if self._state is LayoutState.RUNNING:
                self._queued = True
                return
            self._arm_timer_locked()

    def flush(self) -> None:
        """Skip the debounce, wait out any in-flight run, then recompute now."""

        with self._cond:
            while True:
                if self._disposed:
                    return
                self._cancel_timer_locked()
                if self._state is not LayoutState.RUNNING:
                    break
                self._queued = False
                self._cond.wait()
            self._state = LayoutState.RUNNING
            self._queued = False
        self._run()

    def dispose(self) -> None:
        """Cancel pending work and release any waiting :meth:`flush` callers."""

        with self._cond:
            self._disposed = True
            self._queued = False
            self._cancel_timer_locked()
            self._cond.notify_all()

    def _arm_timer_locked(self) -> None:
        self._cancel_timer_locked()
        self._generation += 1
        timer = self._timer_factory(self._debounce, self._on_timer, (self._generation,))
        timer.daemon = True
        self._timer = timer
        self._state = LayoutState.PENDING
        timer.start()

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._generation += 1
        if self._state is LayoutState.PENDING:
            self._state = LayoutState.IDLE

    def _on_timer(self, generation: int) -> None:
        with self._cond:
            if (
                self._disposed
                or generation != self._generation
                or self._state is not LayoutState.PENDING
            ):
                return
            self._timer = None
            self._state = LayoutState.RUNNING
        self._run()

    def _run(self) -> None:
        try:
            with self._run_lock:
                self._apply_layout()
        finally:
            with self._cond:
                self._state = LayoutState.IDLE
                requeue = self._queued and not self._disposed
                self._queued = False
                if requeue:
                    self._arm_timer_locked()
                self._cond.notify_all()

    def _apply_layout(self) -> None:
        self.run_count += 1
        try:
            self._tmux.select_layout(self._target, MAIN_LAYOUT)
            width = self._tmux.window_width(self._target)
            if width is not None and width >= MIN_WIDTH_FOR_SPLIT:
                self._tmux.set_main_pane_width(self._target, width // 2)
                self._tmux.select_layout(self._target, MAIN_LAYOUT)
        except TmuxError as error:
            logger.warning("Layout recomputation for %s failed: %s", self._target, error)
        try:
            # tmux may move focus while rearranging panes
            self._tmux.select_pane(self._leader_pane_id)
        except TmuxError as error:
            logger.warning("Failed to refocus leader pane %s: %s", self._leader_pane_id, error)

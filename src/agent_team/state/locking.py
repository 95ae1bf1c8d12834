"""Advisory cross-process file lock built on exclusive file creation.

A lock for resource ``path`` is the marker file ``path + ".lock"`` holding the
owner's pid and acquisition timestamp. Creation uses ``O_CREAT | O_EXCL`` so the
filesystem decides the single winner. A marker is stale when its owner pid is no
longer alive or its age exceeds the TTL; a stale marker is removed and creation is
retried exactly once per attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import AbstractContextManager, asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_team.common import is_process_alive
from agent_team.config import LockSettings
from agent_team.errors import ResourceBusyError

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = 30.0
DEFAULT_RETRY_DELAY_SECONDS = 0.05
LOCK_SUFFIX = ".lock"


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Proof of ownership for one acquired lock marker."""

    lock_path: Path
    pid: int
    timestamp_ms: int
    reclaimed: bool = False


def lock_path_for(path: Path) -> Path:
    """Marker path guarding ``path``."""

    return path.with_name(path.name + LOCK_SUFFIX)


def acquire(
    path: Path,
    *,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    timeout: float = 0.0,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> LockHandle | None:
    """Acquire the lock for ``path``, blocking up to ``timeout`` seconds.

    Returns ``None`` when the lock stays busy. ``timeout=0`` makes a single attempt.
    """

    lock_path = lock_path_for(path)
    deadline = time.monotonic() + max(timeout, 0.0)
    while True:
        handle = _try_acquire(lock_path, stale_seconds=stale_seconds)
        if handle is not None:
            return handle
        if time.monotonic() >= deadline:
            return None
        time.sleep(retry_delay)


async def acquire_async(
    path: Path,
    *,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    timeout: float = 0.0,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> LockHandle | None:
    """Suspend until the lock for ``path`` is acquired or ``timeout`` elapses."""

    lock_path = lock_path_for(path)
    deadline = time.monotonic() + max(timeout, 0.0)
    while True:
        handle = _try_acquire(lock_path, stale_seconds=stale_seconds)
        if handle is not None:
            return handle
        if time.monotonic() >= deadline:
            return None
        await asyncio.sleep(retry_delay)


def release(handle: LockHandle) -> None:
    """Remove the marker if it still belongs to ``handle``."""

    payload = _read_marker(handle.lock_path)
    if payload is None:
        if handle.lock_path.exists():
            logger.warning("Leaving unreadable lock marker in place: %s", handle.lock_path)
        return
    if payload.get("pid") != handle.pid or payload.get("timestamp") != handle.timestamp_ms:
        logger.warning("Lock %s was reclaimed by another owner; not removing", handle.lock_path)
        return
    handle.lock_path.unlink(missing_ok=True)


@contextmanager
def file_lock(
    path: Path,
    *,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    timeout: float = 0.0,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> Iterator[LockHandle]:
    """Hold the lock for ``path`` for the duration of the block."""

    handle = acquire(path, stale_seconds=stale_seconds, timeout=timeout, retry_delay=retry_delay)
    if handle is None:
        raise ResourceBusyError(lock_path_for(path))
    try:
        yield handle
    finally:
        release(handle)


@asynccontextmanager
async def async_file_lock(
    path: Path,
    *,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    timeout: float = 0.0,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> AsyncIterator[LockHandle]:
    """Async counterpart of :func:`file_lock`."""

    handle = await acquire_async(
        path,
        stale_seconds=stale_seconds,
        timeout=timeout,
        retry_delay=retry_delay,
    )
    if handle is None:
        raise ResourceBusyError(lock_path_for(path))
    try:
        yield handle
    finally:
        release(handle)


def guarded(path: Path, settings: LockSettings) -> AbstractContextManager[LockHandle]:
    """``file_lock`` configured from settings; used for one read-modify-write cycle."""

    return file_lock(
        path,
        stale_seconds=settings.stale_seconds,
        timeout=settings.timeout_seconds,
        retry_delay=settings.retry_delay_seconds,
    )


def is_stale(lock_path: Path, *, stale_seconds: float, now: float | None = None) -> bool:
    """Whether the marker at ``lock_path`` may be reclaimed."""

    try:
        mtime = lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    current = time.time() if now is None else now
    payload = _read_marker(lock_path)
    if payload is None:
        return current - mtime >= stale_seconds

    pid = payload.get("pid")
    if not isinstance(pid, int) or not is_process_alive(pid):
        return True
    timestamp_ms = payload.get("timestamp")
    acquired_at = timestamp_ms / 1000.0 if isinstance(timestamp_ms, int | float) else mtime
    return current - acquired_at >= stale_seconds


def _try_acquire(lock_path: Path, *, stale_seconds: float) -> LockHandle | None:
    handle = _create_marker(lock_path)
    if handle is not None:
        return handle
    observed = _marker_identity(lock_path)
    if observed is None:
        # released between our create and the stat
        return _create_marker(lock_path)
    if not is_stale(lock_path, stale_seconds=stale_seconds):
        return None
    current = _marker_identity(lock_path)
    if current is None:
        return _create_marker(lock_path)
    if current != observed:
        # another owner replaced the marker that was judged stale
        return None
    logger.warning("Reclaiming stale lock: %s", lock_path)
    lock_path.unlink(missing_ok=True)
    handle = _create_marker(lock_path)
    if handle is None:
        return None
    return LockHandle(
        lock_path=handle.lock_path,
        pid=handle.pid,
        timestamp_ms=handle.timestamp_ms,
        reclaimed=True,
    )


def _create_marker(lock_path: Path) -> LockHandle | None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return None
    pid = os.getpid()
    timestamp_ms = int(time.time() * 1000)
    try:
        os.write(fd, json.dumps({"pid": pid, "timestamp": timestamp_ms}).encode("utf-8"))
    except OSError:
        os.close(fd)
        lock_path.unlink(missing_ok=True)
        raise
    os.close(fd)
    return LockHandle(lock_path=lock_path, pid=pid, timestamp_ms=timestamp_ms)


def _read_marker(lock_path: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads(lock_path.read_text("utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _marker_identity(lock_path: Path) -> tuple[int, int] | None:
    try:
        stat = lock_path.stat()
    except FileNotFoundError:
        return None
    return stat.st_ino, stat.st_mtime_ns

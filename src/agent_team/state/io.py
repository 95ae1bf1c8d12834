"""Atomic JSON documents with a bookkeeping envelope and payload limits."""

from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_team.common import utc_now_iso
from agent_team.errors import ValidationFailedError

META_KEY = "_meta"


@dataclass(slots=True, frozen=True)
class PayloadLimits:
    """Upper bounds for persisted JSON payloads."""

    max_payload_bytes: int = 1024 * 1024
    max_nesting_depth: int = 10
    max_top_level_keys: int = 100


@dataclass(slots=True, frozen=True)
class PayloadValidation:
    """Result of payload limit checks."""

    valid: bool
    error: str | None = None


DEFAULT_LIMITS = PayloadLimits()


def dumps(payload: Any) -> str:
    """Serialize JSON payload using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` so readers never observe a partial document."""

    atomic_write_text(path, dumps(payload))


def atomic_write_text(path: Path, content: str) -> None:
    """Write to a sibling temp file, fsync, then rename over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp.{uuid4().hex}")
    fd = os.open(temp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValidationFailedError(path, f"invalid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationFailedError(path, "expected JSON object")
    return payload


def write_state(path: Path, payload: dict[str, Any], *, mode: str) -> None:
    """Persist ``payload`` wrapped with ``_meta`` bookkeeping."""

    envelope = {key: value for key, value in payload.items() if key != META_KEY}
    envelope[META_KEY] = {"written_at": utc_now_iso(), "mode": mode}
    atomic_write_json(path, envelope)


def read_state(path: Path) -> dict[str, Any] | None:
    """Load a state document, dropping ``_meta`` when present.

    Returns ``None`` when the file does not exist. Documents written before the
    envelope was introduced are returned unchanged.
    """

    if not path.exists():
        return None
    payload = load_json(path)
    payload.pop(META_KEY, None)
    return payload


def read_state_meta(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    meta = load_json(path).get(META_KEY)
    return meta if isinstance(meta, dict) else None


def validate_payload(payload: Any, limits: PayloadLimits = DEFAULT_LIMITS) -> PayloadValidation:
    """Check serialized size, nesting depth and top-level key count."""

    try:
        serialized = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError) as error:
        return PayloadValidation(valid=False, error=f"Payload is not JSON serializable: {error}")
    size = len(serialized.encode("utf-8"))
    if size > limits.max_payload_bytes:
        return PayloadValidation(
            valid=False,
            error=f"Payload size {size} bytes exceeds limit of {limits.max_payload_bytes} bytes",
        )
    depth = _nesting_depth(payload)
    if depth > limits.max_nesting_depth:
        return PayloadValidation(
            valid=False,
            error=f"Payload nesting depth {depth} exceeds limit of {limits.max_nesting_depth}",
        )
    if isinstance(payload, dict) and len(payload) > limits.max_top_level_keys:
        return PayloadValidation(
            valid=False,
            error=(
                f"Payload has {len(payload)} top-level keys, "
                f"exceeds limit of {limits.max_top_level_keys}"
            ),
        )
    return PayloadValidation(valid=True)


def ensure_valid_payload(path: Path, payload: Any, limits: PayloadLimits = DEFAULT_LIMITS) -> None:
    validation = validate_payload(payload, limits)
    if not validation.valid:
        raise ValidationFailedError(path, validation.error or "invalid payload")


def _nesting_depth(value: Any, depth: int = 0) -> int:
    if isinstance(value, dict):
        children = list(value.values())
    elif isinstance(value, list):
        children = value
    else:
        return depth
    if not children:
        return depth + 1
    return max(_nesting_depth(child, depth + 1) for child in children)


def _fsync_directory(directory: Path) -> None:
    # Not every platform allows opening a directory for fsync.
    with contextlib.suppress(OSError):
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

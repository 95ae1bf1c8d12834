"""Write-then-notify messaging between the leader and workers.

Every message is persisted to its inbox or mailbox file under the advisory lock
before a trigger is typed into the recipient's pane. Triggers are best effort:
a failed trigger is reported as a :class:`DeliveryResult` and the worker still
finds the message on its next poll.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_team.common import from_iso, utc_now_iso
from agent_team.config import LockSettings, MessagingSettings
from agent_team.errors import DeliveryResult, ResourceBusyError
from agent_team.state.io import atomic_write_text
from agent_team.state.locking import guarded
from agent_team.team.paths import TeamPaths
from agent_team.team.tmux import TmuxClient, TmuxError

logger = logging.getLogger(__name__)

BROADCAST = "broadcast"
TRIGGER_MAX_CHARS = 199
PROMPT_CONTENT_MAX_CHARS = 4000
_FRAMING_TAGS = ("TASK_SUBJECT", "TASK_DESCRIPTION", "INBOX_MESSAGE", "INSTRUCTIONS", "SYSTEM")
_FRAMING_TAG_PATTERNS = tuple(
    re.compile(rf"<(/?)({tag})[^>]*>", re.IGNORECASE) for tag in _FRAMING_TAGS
)


@dataclass(slots=True)
class MailboxEntry:
    """One append-only mailbox record."""

    id: str
    sender: str
    recipient: str
    body: str
    created_at: str
    notified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "body": self.body,
            "createdAt": self.created_at,
            "notified": self.notified,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MailboxEntry:
        entry_id = payload.get("id")
        if not isinstance(entry_id, str) or not entry_id:
            raise ValueError("mailbox entry requires a string id")
        return cls(
            id=entry_id,
            sender=str(payload.get("from", "")),
            recipient=str(payload.get("to", "")),
            body=str(payload.get("body", "")),
            created_at=str(payload.get("createdAt", "")),
            notified=bool(payload.get("notified", False)),
        )


@dataclass(slots=True, frozen=True)
class QueuedMessage:
    """Persisted entry together with the outcome of its trigger."""

    entry: MailboxEntry
    delivery: DeliveryResult


def sanitize_prompt_content(content: str, max_length: int = PROMPT_CONTENT_MAX_CHARS) -> str:
    """Truncate and neutralize tags that could reframe a worker prompt."""

    if not content:
        return ""
    sanitized = content[:max_length]
    for pattern in _FRAMING_TAG_PATTERNS:
        sanitized = pattern.sub(r"[\1\2]", sanitized)
    return sanitized


class MessagingChannel:
    """Inbox and mailbox writes plus tmux triggers for one team."""

    def __init__(  # noqa: PLR0913
        self,
        paths: TeamPaths,
        *,
        tmux: TmuxClient,
        lock_settings: LockSettings | None = None,
        messaging_settings: MessagingSettings | None = None,
        cwd: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._paths = paths
        self._tmux = tmux
        self._lock = lock_settings or LockSettings()
        self._settings = messaging_settings or MessagingSettings()
        self._cwd = cwd
        self._sleep = sleep

    def send_trigger(self, pane_id: str, text: str) -> DeliveryResult:
        """Type ``text`` literally into the pane and submit it. Never raises."""

        if len(text) > TRIGGER_MAX_CHARS:
            logger.warning(
                "Trigger for pane %s truncated to %d chars",
                pane_id,
                TRIGGER_MAX_CHARS,
            )
            text = text[:TRIGGER_MAX_CHARS]
        try:
            if self._tmux.pane_in_copy_mode(pane_id):
                return DeliveryResult.failed("pane is in copy mode")
            self._tmux.send_literal(pane_id, text)
            self._tmux.send_key(pane_id, "C-m")
        except TmuxError as error:
            logger.warning("Trigger delivery to pane %s failed: %s", pane_id, error)
            return DeliveryResult.failed(str(error))
        return DeliveryResult.ok()

    def notify(self, pane_id: str, text: str) -> DeliveryResult:
        """Send a trigger, retrying a bounded number of times."""

        attempts = max(1, self._settings.notify_attempts)
        result = DeliveryResult.failed("no attempts made")
        for attempt in range(1, attempts + 1):
            result = self.send_trigger(pane_id, text)
            if result.delivered:
                return result
            if attempt < attempts:
                self._sleep(self._settings.notify_retry_delay_seconds)
        return result

    def queue_inbox_instruction(
        self,
        worker_name: str,
        instruction: str,
        pane_id: str,
    ) -> DeliveryResult:
        """Append an instruction to the worker inbox, then wake the worker."""

        inbox = self.write_inbox_instruction(worker_name, instruction)
        return self.notify(pane_id, f"Read and execute your task from: {self._display(inbox)}")

    def write_inbox_instruction(self, worker_name: str, instruction: str) -> Path:
        """Durably append ``instruction`` to the inbox without sending a trigger."""

        inbox = self._paths.inbox(worker_name)
        section = (
            f"\n\n---\n<!-- instruction {utc_now_iso()} -->\n"
            f"{sanitize_prompt_content(instruction)}\n"
        )
        with guarded(inbox, self._lock):
            inbox.parent.mkdir(parents=True, exist_ok=True)
            with inbox.open("a", encoding="utf-8") as handle:
                handle.write(section)
                handle.flush()
                os.fsync(handle.fileno())
        return inbox

    def queue_direct_message(
        self,
        sender: str,
        recipient: str,
        body: str,
        pane_id: str,
    ) -> QueuedMessage:
        entry = self._append_entry(
            sender=sender,
            recipient=recipient,
            mailbox_owner=recipient,
            body=body,
        )
        delivery = self._notify_entry(recipient, entry, pane_id)
        return QueuedMessage(entry=entry, delivery=delivery)

    def queue_broadcast_message(
        self,
        sender: str,
        body: str,
        worker_panes: Mapping[str, str],
    ) -> dict[str, QueuedMessage]:
        """Write to every mailbox first, then trigger each recipient."""

        entries = {
            worker: self._append_entry(
                sender=sender,
                recipient=BROADCAST,
                mailbox_owner=worker,
                body=body,
            )
            for worker in worker_panes
            if worker != sender
        }
        return {
            worker: QueuedMessage(
                entry=entry,
                delivery=self._notify_entry(worker, entry, worker_panes[worker]),
            )
            for worker, entry in entries.items()
        }

    def read_mailbox(self, worker_name: str, cursor: str | None = None) -> list[MailboxEntry]:
        """Entries strictly after ``cursor`` (an entry id or ISO timestamp), in append order."""

        entries = self.load_mailbox(worker_name)
        if not cursor:
            return entries
        for index, entry in enumerate(entries):
            if entry.id == cursor:
                return entries[index + 1 :]
        cursor_time = _parse_cursor_time(cursor)
        if cursor_time is None:
            return entries
        return [entry for entry in entries if _entry_after(entry, cursor_time)]

    def load_mailbox(self, worker_name: str) -> list[MailboxEntry]:
        path = self._paths.mailbox(worker_name)
        if not path.exists():
            return []
        entries: list[MailboxEntry] = []
        for line_number, line in enumerate(path.read_text("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(MailboxEntry.from_dict(json.loads(line)))
            except (ValueError, TypeError, AttributeError) as error:
                logger.warning("Skipping corrupt mailbox line %s:%d: %s", path, line_number, error)
        return entries

    def _append_entry(
        self,
        *,
        sender: str,
        recipient: str,
        mailbox_owner: str,
        body: str,
    ) -> MailboxEntry:
        path = self._paths.mailbox(mailbox_owner)
        entry = MailboxEntry(
            id=uuid4().hex,
            sender=sender,
            recipient=recipient,
            body=body,
            created_at=utc_now_iso(),
        )
        with guarded(path, self._lock):
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return entry

    def _notify_entry(self, worker_name: str, entry: MailboxEntry, pane_id: str) -> DeliveryResult:
        mailbox = self._paths.mailbox(worker_name)
        delivery = self.notify(pane_id, f"Check your mailbox: {self._display(mailbox)}")
        if delivery.delivered:
            self._mark_notified(worker_name, entry)
        return delivery

    def _mark_notified(self, worker_name: str, entry: MailboxEntry) -> None:
        path = self._paths.mailbox(worker_name)
        try:
            with guarded(path, self._lock):
                lines = path.read_text("utf-8").splitlines()
                rewritten: list[str] = []
                for line in lines:
                    try:
                        payload = json.loads(line)
                    except ValueError:
                        rewritten.append(line)
                        continue
                    if isinstance(payload, dict) and payload.get("id") == entry.id:
                        payload["notified"] = True
                        rewritten.append(json.dumps(payload, ensure_ascii=False))
                        continue
                    rewritten.append(line)
                atomic_write_text(path, "".join(f"{line}\n" for line in rewritten))
        except ResourceBusyError as error:
            logger.warning("Delivered %s but could not flag it notified: %s", entry.id, error)
            return
        entry.notified = True

    def _display(self, path: Path) -> str:
        if self._cwd is None:
            return str(path)
        try:
            return str(path.resolve().relative_to(self._cwd.resolve()))
        except ValueError:
            return str(path)


def _parse_cursor_time(cursor: str) -> datetime | None:
    try:
        return from_iso(cursor)
    except ValueError:
        return None


def _entry_after(entry: MailboxEntry, cursor_time: datetime) -> bool:
    try:
        return from_iso(entry.created_at) > cursor_time
    except ValueError:
        return False

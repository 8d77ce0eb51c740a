"""Messages passed between phases of the same issue.

Stored as JSONL snapshots in ``messages.jsonl``; replay keeps the last
snapshot per message id and drops ids with a ``deleted`` tombstone.
"""

import json
import logging
import random
import string
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_serializer

from .config import MessengerSettings

logger = logging.getLogger(__name__)

MESSAGES_FILE = "messages.jsonl"

MessageType = Literal["context", "result", "decision", "data"]


def _message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"msg-{int(time.time() * 1000)}-{suffix}"


class PhaseMessage(BaseModel):
    id: str = Field(default_factory=_message_id)
    issue_id: str
    from_phase: str
    to_phase: str
    run_counter: int = 1
    message_type: MessageType
    content: str
    metadata: Optional[Dict[str, Any]] = None
    read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    read_at: Optional[datetime] = None

    @field_serializer("created_at", "read_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None


class PhaseMessenger:
    """Send and receive messages addressed to a phase of an issue."""

    def __init__(self, data_dir: Path, limits: Optional[MessengerSettings] = None):
        self.limits = limits or MessengerSettings()
        self._path = Path(data_dir) / MESSAGES_FILE
        self._messages: Dict[str, PhaseMessage] = {}
        self._replay()

    def _replay(self) -> None:
        if not self._path.exists():
            return
        with open(self._path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    if entry.get("deleted"):
                        self._messages.pop(entry["id"], None)
                        continue
                    message = PhaseMessage.model_validate(entry)
                except (json.JSONDecodeError, ValidationError, KeyError) as e:
                    logger.warning(f"Skipping malformed message line: {e}")
                    continue
                self._messages[message.id] = message

    def _append(self, payload: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a") as f:
            f.write(json.dumps(payload, default=str) + "\n")

    def _delete(self, message_id: str) -> None:
        if self._messages.pop(message_id, None) is not None:
            self._append({"id": message_id, "deleted": True})

    def _validate(self, content: str, metadata: Optional[Dict[str, Any]]) -> None:
        if len(content) > self.limits.max_content_length:
            raise ValueError(
                f"Content exceeds maximum length of {self.limits.max_content_length} characters"
            )
        if metadata and len(json.dumps(metadata, default=str)) > self.limits.max_metadata_length:
            raise ValueError(
                f"Metadata exceeds maximum length of {self.limits.max_metadata_length} characters"
            )

    def _evict_oldest_read(self, issue_id: str, to_phase: Optional[str] = None) -> None:
        read = [
            m for m in self._messages.values()
            if m.issue_id == issue_id and m.read and (to_phase is None or m.to_phase == to_phase)
        ]
        if read:
            oldest = min(read, key=lambda m: m.created_at)
            self._delete(oldest.id)

    def _enforce_limits(self, issue_id: str, to_phase: str) -> None:
        phase_count = len(self.list_messages(issue_id=issue_id, to_phase=to_phase))
        if phase_count >= self.limits.max_messages_per_issue_phase:
            self._evict_oldest_read(issue_id, to_phase)

        issue_count = len(self.list_messages(issue_id=issue_id))
        if issue_count >= self.limits.max_messages_per_issue:
            self._evict_oldest_read(issue_id)

    def send(
        self,
        issue_id: str,
        from_phase: str,
        to_phase: str,
        message_type: MessageType,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        run_counter: int = 1,
    ) -> PhaseMessage:
        self._validate(content, metadata)
        self._enforce_limits(issue_id, to_phase)

        message = PhaseMessage(
            issue_id=issue_id,
            from_phase=from_phase,
            to_phase=to_phase,
            message_type=message_type,
            content=content,
            metadata=metadata,
            run_counter=run_counter,
        )
        self._messages[message.id] = message
        self._append(message.model_dump(mode="json"))
        return message

    def receive(self, issue_id: str, phase: str, mark_as_read: bool = True) -> List[PhaseMessage]:
        """Unread messages addressed to ``phase``, oldest first."""
        unread = self.list_messages(issue_id=issue_id, to_phase=phase, read=False)[::-1]
        if not mark_as_read:
            return unread

        now = datetime.now(UTC)
        delivered = []
        for message in unread:
            updated = message.model_copy(update={"read": True, "read_at": now})
            self._messages[message.id] = updated
            self._append(updated.model_dump(mode="json"))
            delivered.append(updated)
        return delivered

    def list_messages(
        self,
        issue_id: Optional[str] = None,
        from_phase: Optional[str] = None,
        to_phase: Optional[str] = None,
        message_type: Optional[str] = None,
        read: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[PhaseMessage]:
        messages = [
            m for m in self._messages.values()
            if (issue_id is None or m.issue_id == issue_id)
            and (from_phase is None or m.from_phase == from_phase)
            and (to_phase is None or m.to_phase == to_phase)
            and (message_type is None or m.message_type == message_type)
            and (read is None or m.read == read)
        ]
        messages.reverse()
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages[:limit] if limit is not None else messages

    def unread_count(self, issue_id: str, phase: str) -> int:
        return len(self.list_messages(issue_id=issue_id, to_phase=phase, read=False))

    def delete_issue_messages(self, issue_id: str) -> int:
        ids = [m.id for m in self._messages.values() if m.issue_id == issue_id]
        for message_id in ids:
            self._delete(message_id)
        return len(ids)

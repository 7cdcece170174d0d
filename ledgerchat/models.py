from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any


UNASSIGNED_ID = "0x0"

EVENT_MESSAGE_POSTED = "MessagePosted"
EVENT_MESSAGE_READ = "MessageRead"
EVENT_PROFILE_UPDATED = "ProfileUpdated"
REFRESH_EVENT_KINDS = frozenset({EVENT_MESSAGE_POSTED, EVENT_MESSAGE_READ, EVENT_PROFILE_UPDATED})

ACTION_POST = "post"
ACTION_MARK_READ = "mark_read"
ACTION_MARK_ALL_READ = "mark_all_read"


def normalize_address(value: Any) -> str:
    return "".join(str(value or "").split()).lower()


def is_unassigned(object_id: str | None) -> bool:
    cleaned = normalize_address(object_id)
    return not cleaned or cleaned == UNASSIGNED_ID


def short_address(address: str) -> str:
    text = str(address or "")
    if len(text) <= 14:
        return text
    return f"{text[:8]}...{text[-6:]}"


@dataclass(frozen=True)
class Message:
    position: int
    sender: str
    text: str
    timestamp_ms: int
    read_by: frozenset[str] = frozenset()

    def is_read_by(self, address: str) -> bool:
        return normalize_address(address) in self.read_by

    def is_unread_for(self, viewer: str) -> bool:
        who = normalize_address(viewer)
        if not who or self.sender == who:
            return False
        return who not in self.read_by


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: str
    messages: tuple[Message, ...] = ()
    found: bool = True
    fetched_at: float = field(default_factory=time.time)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_position(self) -> int | None:
        if not self.messages:
            return None
        return self.messages[-1].position

    def message_at(self, position: int) -> Message | None:
        for message in self.messages:
            if message.position == position:
                return message
        return None

    def senders(self) -> list[str]:
        seen: list[str] = []
        for message in self.messages:
            if message.sender and message.sender not in seen:
                seen.append(message.sender)
        return seen

    def unread_positions(self, viewer: str) -> list[int]:
        return [message.position for message in self.messages if message.is_unread_for(viewer)]


@dataclass(frozen=True)
class Profile:
    address: str
    username: str
    avatar_url: str = ""


@dataclass(frozen=True)
class MutationResult:
    accepted: bool
    reason: str = ""
    digest: str = ""


@dataclass(frozen=True)
class RoomRef:
    id: str
    name: str

    @property
    def available(self) -> bool:
        return not is_unassigned(self.id)


def message_from_fields(position: int, raw: Any) -> Message | None:
    """Normalize one on-ledger message record.

    Records arrive either flat or wrapped as ``{"type": ..., "fields": {...}}``.
    """

    if not isinstance(raw, dict):
        return None
    nested = raw.get("fields")
    fields = nested if isinstance(nested, dict) else raw
    read_by_raw = fields.get("read_by")
    if read_by_raw is None:
        read_by_raw = raw.get("read_by")
    readers: set[str] = set()
    if isinstance(read_by_raw, list):
        for item in read_by_raw:
            cleaned = normalize_address(item)
            if cleaned:
                readers.add(cleaned)
    try:
        timestamp = int(fields.get("timestamp") or raw.get("timestamp") or 0)
    except (TypeError, ValueError):
        timestamp = 0
    return Message(
        position=position,
        sender=normalize_address(fields.get("sender") or raw.get("sender")),
        text=str(fields.get("text") or raw.get("text") or ""),
        timestamp_ms=timestamp,
        read_by=frozenset(readers),
    )

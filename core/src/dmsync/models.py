from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any


STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_BLOCKED = "blocked"
FRIENDSHIP_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED, STATUS_BLOCKED)

UNKNOWN_AUTHOR = "unknown"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Profile:
    id: str
    short_id: str
    display_name: str | None = None
    avatar_url: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.short_id

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True)
class Message:
    """A stored chat message. Immutable once the store has assigned its id."""

    id: str
    created_at_ms: int
    author_id: str
    room_id: str
    text: str | None = None
    attachment_url: str | None = None
    client_msg_id: str | None = None

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.created_at_ms, self.id)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at_ms": self.created_at_ms,
            "author_id": self.author_id,
            "room_id": self.room_id,
            "text": self.text,
            "attachment_url": self.attachment_url,
            "client_msg_id": self.client_msg_id,
        }


@dataclass(frozen=True)
class ChatMessage:
    """A message joined with its author's profile, as held by a conversation view."""

    message: Message
    author: Profile | None = None

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def sort_key(self) -> tuple[int, str]:
        return self.message.sort_key

    @property
    def author_label(self) -> str:
        if self.author is None:
            return UNKNOWN_AUTHOR
        return self.author.label

    def to_api_dict(self) -> dict[str, Any]:
        body = self.message.to_api_dict()
        body["author"] = self.author.to_api_dict() if self.author is not None else None
        body["author_label"] = self.author_label
        return body


@dataclass(frozen=True)
class Friendship:
    owner_id: str
    peer_id: str
    status: str
    created_at_ms: int

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner_id, self.peer_id)

    def reversed(self, created_at_ms: int | None = None) -> "Friendship":
        return Friendship(
            owner_id=self.peer_id,
            peer_id=self.owner_id,
            status=self.status,
            created_at_ms=self.created_at_ms if created_at_ms is None else created_at_ms,
        )


def has_content(text: str | None, attachment_url: str | None) -> bool:
    return bool(text and text.strip()) or bool(attachment_url)

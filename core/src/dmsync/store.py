from __future__ import annotations

import secrets
import threading
from typing import Callable, Dict, List, Tuple

from . import rooms
from .errors import Conflict, Rejected
from .feed import (
    KIND_INSERT,
    TABLE_FRIENDSHIPS,
    TABLE_MESSAGES,
    TABLE_PROFILES,
    ChangeEvent,
    ChangeFeed,
)
from .models import (
    FRIENDSHIP_STATUSES,
    STATUS_ACCEPTED,
    ChatMessage,
    Friendship,
    Message,
    Profile,
    _now_ms,
    has_content,
)
from .shortid import is_assigned


PROFILES_PKEY = "profiles_pkey"
PROFILES_SHORT_ID_KEY = "profiles_short_id_key"
MESSAGES_CLIENT_MSG_ID_KEY = "messages_client_msg_id_key"
FRIENDSHIPS_PKEY = "friendships_pkey"


def new_message_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


def check_message(*, room_id: str, author_id: str, actor_id: str, text: str | None, attachment_url: str | None) -> None:
    """Row-level policy for message creation, shared by every store."""

    if actor_id != author_id:
        raise Rejected("author_id must match the acting user")
    if not rooms.is_participant(room_id, author_id):
        raise Rejected("author is not a participant of the room")
    if not has_content(text, attachment_url):
        raise Rejected("message requires text or an attachment")


def check_friendship(friendship: Friendship) -> None:
    if friendship.status not in FRIENDSHIP_STATUSES:
        raise Rejected(f"invalid friendship status: {friendship.status}")


class Store:
    """Storage collaborator: three logical tables plus a change feed.

    Methods are coroutines; every write that succeeds publishes one
    ``ChangeEvent`` on ``feed`` after the row is durable. Lookup misses return
    ``None``. Uniqueness violations raise ``Conflict`` naming the constraint,
    policy failures raise ``Rejected``, availability failures ``Transient``.
    """

    feed: ChangeFeed

    async def get_profile(self, user_id: str) -> Profile | None:
        raise NotImplementedError

    async def find_profile_by_short_id(self, short_id: str) -> Profile | None:
        raise NotImplementedError

    async def insert_profile(self, profile: Profile) -> Profile:
        raise NotImplementedError

    async def insert_message(
        self,
        *,
        room_id: str,
        author_id: str,
        actor_id: str,
        text: str | None = None,
        attachment_url: str | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        raise NotImplementedError

    async def list_messages(self, room_id: str, limit: int) -> List[ChatMessage]:
        """Return the newest ``limit`` messages of ``room_id`` in ascending order."""

        raise NotImplementedError

    async def insert_friendship(self, friendship: Friendship) -> Friendship:
        raise NotImplementedError

    async def get_friendship(self, owner_id: str, peer_id: str) -> Friendship | None:
        raise NotImplementedError

    async def list_friendships(self, owner_id: str, status: str = STATUS_ACCEPTED) -> List[Friendship]:
        raise NotImplementedError

    def close(self) -> None:
        return None


class InMemoryStore(Store):
    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.feed = ChangeFeed()
        self._now = now_func
        self._lock = threading.Lock()
        self._profiles: Dict[str, Profile] = {}
        self._short_ids: Dict[str, str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._client_msg_ids: Dict[Tuple[str, str], Message] = {}
        self._friendships: Dict[Tuple[str, str], Friendship] = {}

    async def get_profile(self, user_id: str) -> Profile | None:
        with self._lock:
            return self._profiles.get(user_id)

    async def find_profile_by_short_id(self, short_id: str) -> Profile | None:
        with self._lock:
            user_id = self._short_ids.get(short_id)
            return self._profiles.get(user_id) if user_id is not None else None

    async def insert_profile(self, profile: Profile) -> Profile:
        if not profile.short_id:
            raise Rejected("short_id is required")
        with self._lock:
            if profile.id in self._profiles:
                raise Conflict(PROFILES_PKEY)
            if is_assigned(profile.short_id) and profile.short_id in self._short_ids:
                raise Conflict(PROFILES_SHORT_ID_KEY)
            self._profiles[profile.id] = profile
            if is_assigned(profile.short_id):
                self._short_ids[profile.short_id] = profile.id
        self.feed.publish(ChangeEvent(TABLE_PROFILES, KIND_INSERT, profile))
        return profile

    async def insert_message(
        self,
        *,
        room_id: str,
        author_id: str,
        actor_id: str,
        text: str | None = None,
        attachment_url: str | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        check_message(
            room_id=room_id, author_id=author_id, actor_id=actor_id, text=text, attachment_url=attachment_url
        )
        with self._lock:
            if client_msg_id is not None:
                existing = self._client_msg_ids.get((room_id, client_msg_id))
                if existing is not None:
                    if existing.author_id != author_id:
                        raise Conflict(MESSAGES_CLIENT_MSG_ID_KEY)
                    return existing
            message = Message(
                id=new_message_id(),
                created_at_ms=self._now(),
                author_id=author_id,
                room_id=room_id,
                text=text,
                attachment_url=attachment_url,
                client_msg_id=client_msg_id,
            )
            self._messages.setdefault(room_id, []).append(message)
            if client_msg_id is not None:
                self._client_msg_ids[(room_id, client_msg_id)] = message
        self.feed.publish(ChangeEvent(TABLE_MESSAGES, KIND_INSERT, message))
        return message

    async def list_messages(self, room_id: str, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        with self._lock:
            ordered = sorted(self._messages.get(room_id, []), key=lambda message: message.sort_key)
            newest = ordered[-limit:]
            return [ChatMessage(message, self._profiles.get(message.author_id)) for message in newest]

    async def insert_friendship(self, friendship: Friendship) -> Friendship:
        check_friendship(friendship)
        with self._lock:
            if friendship.owner_id not in self._profiles or friendship.peer_id not in self._profiles:
                raise Rejected("friendship references an unknown profile")
            if friendship.key in self._friendships:
                raise Conflict(FRIENDSHIPS_PKEY)
            self._friendships[friendship.key] = friendship
        self.feed.publish(ChangeEvent(TABLE_FRIENDSHIPS, KIND_INSERT, friendship))
        return friendship

    async def get_friendship(self, owner_id: str, peer_id: str) -> Friendship | None:
        with self._lock:
            return self._friendships.get((owner_id, peer_id))

    async def list_friendships(self, owner_id: str, status: str = STATUS_ACCEPTED) -> List[Friendship]:
        with self._lock:
            rows = [
                friendship
                for friendship in self._friendships.values()
                if friendship.owner_id == owner_id and friendship.status == status
            ]
        return sorted(rows, key=lambda friendship: (friendship.created_at_ms, friendship.peer_id))

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterator, List, Tuple

from .errors import BackendError, Conflict, Rejected, Transient
from .feed import KIND_INSERT, TABLE_FRIENDSHIPS, TABLE_MESSAGES, TABLE_PROFILES, ChangeEvent, ChangeFeed
from .models import STATUS_ACCEPTED, ChatMessage, Friendship, Message, Profile, _now_ms
from .sqlite_backend import SQLiteBackend
from .store import (
    FRIENDSHIPS_PKEY,
    MESSAGES_CLIENT_MSG_ID_KEY,
    PROFILES_PKEY,
    PROFILES_SHORT_ID_KEY,
    Store,
    check_friendship,
    check_message,
    new_message_id,
)


_UNIQUE_COLUMNS = {
    "profiles.id": PROFILES_PKEY,
    "profiles.short_id": PROFILES_SHORT_ID_KEY,
    "messages.room_id, messages.client_msg_id": MESSAGES_CLIENT_MSG_ID_KEY,
    "friendships.owner_id, friendships.peer_id": FRIENDSHIPS_PKEY,
}

_MESSAGE_COLUMNS = "id, created_at_ms, author_id, room_id, text, attachment_url, client_msg_id"


def translate_integrity_error(exc: sqlite3.IntegrityError) -> BackendError:
    text = str(exc)
    prefix = "UNIQUE constraint failed:"
    if text.startswith(prefix):
        columns = text[len(prefix) :].strip()
        return Conflict(_UNIQUE_COLUMNS.get(columns, columns), text)
    return Rejected(text)


@contextmanager
def _backend_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise translate_integrity_error(exc) from exc
    except sqlite3.OperationalError as exc:
        raise Transient(str(exc)) from exc


def _profile_from_row(row: sqlite3.Row) -> Profile:
    return Profile(
        id=row["id"],
        short_id=row["short_id"],
        display_name=row["display_name"],
        avatar_url=row["avatar_url"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        created_at_ms=row["created_at_ms"],
        author_id=row["author_id"],
        room_id=row["room_id"],
        text=row["text"],
        attachment_url=row["attachment_url"],
        client_msg_id=row["client_msg_id"],
    )


def _friendship_from_row(row: sqlite3.Row) -> Friendship:
    return Friendship(
        owner_id=row["owner_id"],
        peer_id=row["peer_id"],
        status=row["status"],
        created_at_ms=row["created_at_ms"],
    )


class SQLiteStore(Store):
    """Durable store backed by SQLite; uniqueness is enforced by the schema.

    Statements run in worker threads so a busy database never stalls the
    event loop that delivers live changes. Change events are published from
    the loop once the worker returns.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func
        self.feed = ChangeFeed()

    @property
    def backend(self) -> SQLiteBackend:
        return self._backend

    async def get_profile(self, user_id: str) -> Profile | None:
        return await asyncio.to_thread(self._get_profile, user_id)

    async def find_profile_by_short_id(self, short_id: str) -> Profile | None:
        return await asyncio.to_thread(self._find_profile_by_short_id, short_id)

    async def insert_profile(self, profile: Profile) -> Profile:
        await asyncio.to_thread(self._insert_profile, profile, self._now())
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
        message = Message(
            id=new_message_id(),
            created_at_ms=self._now(),
            author_id=author_id,
            room_id=room_id,
            text=text,
            attachment_url=attachment_url,
            client_msg_id=client_msg_id,
        )
        stored, created = await asyncio.to_thread(self._insert_message, message)
        if created:
            self.feed.publish(ChangeEvent(TABLE_MESSAGES, KIND_INSERT, stored))
        return stored

    async def list_messages(self, room_id: str, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        return await asyncio.to_thread(self._list_messages, room_id, limit)

    async def insert_friendship(self, friendship: Friendship) -> Friendship:
        check_friendship(friendship)
        await asyncio.to_thread(self._insert_friendship, friendship)
        self.feed.publish(ChangeEvent(TABLE_FRIENDSHIPS, KIND_INSERT, friendship))
        return friendship

    async def get_friendship(self, owner_id: str, peer_id: str) -> Friendship | None:
        return await asyncio.to_thread(self._get_friendship, owner_id, peer_id)

    async def list_friendships(self, owner_id: str, status: str = STATUS_ACCEPTED) -> List[Friendship]:
        return await asyncio.to_thread(self._list_friendships, owner_id, status)

    def close(self) -> None:
        self._backend.close()

    def _get_profile(self, user_id: str) -> Profile | None:
        with _backend_errors(), self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT id, short_id, display_name, avatar_url FROM profiles WHERE id=?",
                (user_id,),
            ).fetchone()
        return _profile_from_row(row) if row is not None else None

    def _find_profile_by_short_id(self, short_id: str) -> Profile | None:
        with _backend_errors(), self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT id, short_id, display_name, avatar_url FROM profiles WHERE short_id=? LIMIT 1",
                (short_id,),
            ).fetchone()
        return _profile_from_row(row) if row is not None else None

    def _insert_profile(self, profile: Profile, created_at_ms: int) -> None:
        with _backend_errors(), self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO profiles (id, short_id, display_name, avatar_url, created_at_ms)
                VALUES (?, ?, ?, ?, ?)
                """,
                (profile.id, profile.short_id, profile.display_name, profile.avatar_url, created_at_ms),
            )

    def _insert_message(self, message: Message) -> Tuple[Message, bool]:
        with _backend_errors(), self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                if message.client_msg_id is not None:
                    row = cursor.execute(
                        f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room_id=? AND client_msg_id=?",
                        (message.room_id, message.client_msg_id),
                    ).fetchone()
                    if row is not None:
                        conn.commit()
                        existing = _message_from_row(row)
                        if existing.author_id != message.author_id:
                            raise Conflict(MESSAGES_CLIENT_MSG_ID_KEY)
                        return existing, False
                cursor.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        message.id,
                        message.created_at_ms,
                        message.author_id,
                        message.room_id,
                        message.text,
                        message.attachment_url,
                        message.client_msg_id,
                    ),
                )
                conn.commit()
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                cursor.close()
        return message, True

    def _list_messages(self, room_id: str, limit: int) -> List[ChatMessage]:
        with _backend_errors(), self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT m.id, m.created_at_ms, m.author_id, m.room_id, m.text, m.attachment_url, m.client_msg_id,
                       p.short_id AS p_short_id, p.display_name AS p_display_name,
                       p.avatar_url AS p_avatar_url, p.id AS p_id
                FROM (
                    SELECT * FROM messages WHERE room_id=?
                    ORDER BY created_at_ms DESC, id DESC
                    LIMIT ?
                ) AS m
                LEFT JOIN profiles AS p ON p.id = m.author_id
                ORDER BY m.created_at_ms ASC, m.id ASC
                """,
                (room_id, limit),
            ).fetchall()
        entries: List[ChatMessage] = []
        for row in rows:
            author = None
            if row["p_id"] is not None:
                author = Profile(
                    id=row["p_id"],
                    short_id=row["p_short_id"],
                    display_name=row["p_display_name"],
                    avatar_url=row["p_avatar_url"],
                )
            entries.append(ChatMessage(_message_from_row(row), author))
        return entries

    def _insert_friendship(self, friendship: Friendship) -> None:
        with _backend_errors(), self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO friendships (owner_id, peer_id, status, created_at_ms) VALUES (?, ?, ?, ?)",
                (friendship.owner_id, friendship.peer_id, friendship.status, friendship.created_at_ms),
            )

    def _get_friendship(self, owner_id: str, peer_id: str) -> Friendship | None:
        with _backend_errors(), self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT owner_id, peer_id, status, created_at_ms FROM friendships WHERE owner_id=? AND peer_id=?",
                (owner_id, peer_id),
            ).fetchone()
        return _friendship_from_row(row) if row is not None else None

    def _list_friendships(self, owner_id: str, status: str) -> List[Friendship]:
        with _backend_errors(), self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT owner_id, peer_id, status, created_at_ms FROM friendships
                WHERE owner_id=? AND status=?
                ORDER BY created_at_ms ASC, peer_id ASC
                """,
                (owner_id, status),
            ).fetchall()
        return [_friendship_from_row(row) for row in rows]

"""Canonical identity of a two-party conversation."""

from __future__ import annotations

from urllib.parse import quote, unquote


ROOM_SEPARATOR = ":"


def _encode(user_id: str) -> str:
    return quote(user_id, safe="")


def room_id(a: str, b: str) -> str:
    """Return the room id shared by ``a`` and ``b``.

    Commutative and total: the identifiers are ordered lexicographically and
    percent-encoded before joining, so no identifier can contain the separator.
    ``room_id(a, a)`` is a valid self-chat room.
    """

    low, high = (a, b) if a <= b else (b, a)
    return f"{_encode(low)}{ROOM_SEPARATOR}{_encode(high)}"


def participants(room: str) -> tuple[str, str]:
    parts = room.split(ROOM_SEPARATOR)
    if len(parts) != 2:
        raise ValueError(f"malformed room id: {room!r}")
    low, high = (unquote(part) for part in parts)
    if room_id(low, high) != room:
        raise ValueError(f"non-canonical room id: {room!r}")
    return low, high


def is_participant(room: str, user_id: str) -> bool:
    try:
        return user_id in participants(room)
    except ValueError:
        return False


def peer_of(room: str, user_id: str) -> str:
    low, high = participants(room)
    if user_id == low:
        return high
    if user_id == high:
        return low
    raise ValueError(f"{user_id!r} is not a participant of {room!r}")

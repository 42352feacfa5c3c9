from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple


logger = logging.getLogger(__name__)

TABLE_PROFILES = "profiles"
TABLE_MESSAGES = "messages"
TABLE_FRIENDSHIPS = "friendships"

KIND_INSERT = "INSERT"


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level change notification emitted after a write commits."""

    table: str
    kind: str
    row: Any

    @property
    def room_id(self) -> str | None:
        return getattr(self.row, "room_id", None)


Callback = Callable[[ChangeEvent], None]


@dataclass(eq=False)
class Subscription:
    table: str
    room_id: str | None
    callback: Callback

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return self.room_id is None or event.room_id == self.room_id

    def deliver(self, event: ChangeEvent) -> None:
        self.callback(event)


class ChangeFeed:
    """Registers subscriptions and fans change events out to matching listeners.

    Subscriptions filter on table and, optionally, equality on ``room_id``.
    A failing callback is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[Tuple[str, str | None], List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, table: str, callback: Callback, *, room_id: str | None = None) -> Subscription:
        subscription = Subscription(table=table, room_id=room_id, callback=callback)
        with self._lock:
            self._subscriptions.setdefault((table, room_id), []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        key = (subscription.table, subscription.room_id)
        with self._lock:
            subs = self._subscriptions.get(key)
            if not subs:
                return
            try:
                subs.remove(subscription)
            except ValueError:
                return
            if not subs:
                self._subscriptions.pop(key, None)

    def subscriber_count(self, table: str, *, room_id: str | None = None) -> int:
        with self._lock:
            return len(self._subscriptions.get((table, room_id), []))

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions.get((event.table, None), []))
            if event.room_id is not None:
                targets.extend(self._subscriptions.get((event.table, event.room_id), []))
        for subscription in targets:
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("change feed callback failed for %s", event.table)

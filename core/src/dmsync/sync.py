"""Live, bounded, ordered views of two-party conversations."""

from __future__ import annotations

import asyncio
import bisect
import logging
import secrets
from typing import Callable, Dict, List, Set

from . import rooms
from .auth import SessionContext
from .errors import BackendError, EmptyMessage, Rejected, SendRejected, ViewClosed
from .feed import KIND_INSERT, TABLE_MESSAGES, ChangeEvent, Subscription
from .models import ChatMessage, Message, Profile
from .retry import NO_RETRY, RetryPolicy, with_retries
from .store import Store


logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 200

LOADING = "loading"
LIVE = "live"
CLOSED = "closed"

Listener = Callable[[ChatMessage], None]


def new_client_msg_id() -> str:
    return f"c_{secrets.token_urlsafe(12)}"


class ConversationView:
    """The in-memory message sequence of one open room.

    Only the view's own task mutates the sequence: the change-feed callback
    enqueues rows, and the task performs the bulk read before draining the
    queue. Rows that arrive while loading are therefore merged after the
    history lands. The sequence stays ordered by ``(created_at_ms, id)``, holds
    each id at most once and never exceeds ``retention`` entries.
    """

    def __init__(
        self,
        room_id: str,
        store: Store,
        *,
        retention: int = DEFAULT_RETENTION,
        read_retry: RetryPolicy = NO_RETRY,
    ) -> None:
        if retention < 1:
            raise ValueError("retention must be at least 1")
        self.room_id = room_id
        self._store = store
        self._retention = retention
        self._read_retry = read_retry
        self._state = LOADING
        self._keys: List[tuple[int, str]] = []
        self._entries: List[ChatMessage] = []
        self._ids: Set[str] = set()
        self._authors: Dict[str, Profile] = {}
        self._listeners: List[Listener] = []
        self._inbox: asyncio.Queue[Message] = asyncio.Queue()
        self._live = asyncio.Event()
        self._went_live = False
        self._load_error: BaseException | None = None
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def retention(self) -> int:
        return self._retention

    @property
    def closed(self) -> bool:
        return self._state == CLOSED

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return remove

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("view already started")
        self._loop = asyncio.get_running_loop()
        self._subscription = self._store.feed.subscribe(TABLE_MESSAGES, self._on_change, room_id=self.room_id)
        self._task = asyncio.create_task(self._run(), name=f"conversation-view:{self.room_id}")
        logger.debug("opened view for %s", self.room_id)

    async def wait_live(self) -> None:
        """Wait for the bulk read to land.

        Raises the bulk-read error if loading failed, or ``ViewClosed`` if the
        view was closed before it went live.
        """

        await self._live.wait()
        if self._load_error is not None:
            raise self._load_error
        if not self._went_live:
            raise ViewClosed(f"view for {self.room_id} closed while loading")

    async def settle(self) -> None:
        """Wait until every change received so far has been merged."""

        if self.closed:
            return
        await self.wait_live()
        await self._inbox.join()

    def merge(self, entry: ChatMessage) -> bool:
        """Insert ``entry`` in order; return True if it is now part of the view.

        Duplicate ids are ignored. When the view exceeds its retention bound the
        oldest entries are evicted, which may include ``entry`` itself.
        """

        if self.closed or entry.id in self._ids:
            return False
        key = entry.sort_key
        index = bisect.bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._entries.insert(index, entry)
        self._ids.add(entry.id)

        retained = True
        while len(self._entries) > self._retention:
            self._keys.pop(0)
            evicted = self._entries.pop(0)
            self._ids.discard(evicted.id)
            if evicted.id == entry.id:
                retained = False
        if retained:
            for listener in list(self._listeners):
                try:
                    listener(entry)
                except Exception:
                    logger.exception("listener failed for message %s in %s", entry.id, self.room_id)
        return retained

    def _on_change(self, event: ChangeEvent) -> None:
        if self.closed or event.kind != KIND_INSERT or not isinstance(event.row, Message):
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._inbox.put_nowait(event.row)
        elif self._loop is not None:
            self._loop.call_soon_threadsafe(self._enqueue, event.row)

    def _enqueue(self, message: Message) -> None:
        if not self.closed:
            self._inbox.put_nowait(message)

    async def _run(self) -> None:
        try:
            history = await with_retries(
                lambda: self._store.list_messages(self.room_id, self._retention),
                self._read_retry,
                what=f"history read for {self.room_id}",
            )
        except BackendError as exc:
            logger.warning("history read for %s failed: %s", self.room_id, exc)
            self._load_error = exc
            self._shutdown()
            return

        for entry in history:
            if entry.author is not None:
                self._authors[entry.author.id] = entry.author
            self.merge(entry)
        self._state = LIVE
        self._went_live = True
        self._live.set()
        logger.debug("view for %s live with %d messages", self.room_id, len(self._entries))

        while True:
            message = await self._inbox.get()
            try:
                entry = await self._resolve(message)
                if not self.closed:
                    self.merge(entry)
            except Exception:
                logger.exception("dropping change %s for %s", message.id, self.room_id)
            finally:
                self._inbox.task_done()

    async def _resolve(self, message: Message) -> ChatMessage:
        author = self._authors.get(message.author_id)
        if author is not None:
            return ChatMessage(message, author)
        try:
            author = await with_retries(
                lambda: self._store.get_profile(message.author_id),
                self._read_retry,
                what="author lookup",
            )
        except BackendError as exc:
            logger.warning("author lookup for message %s failed: %s", message.id, exc)
            return ChatMessage(message, None)
        if author is not None:
            self._authors[author.id] = author
        return ChatMessage(message, author)

    def _shutdown(self) -> None:
        self._state = CLOSED
        if self._subscription is not None:
            self._store.feed.unsubscribe(self._subscription)
            self._subscription = None
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()
        self._live.set()

    async def close(self) -> None:
        if self._task is None and self.closed:
            return
        self._shutdown()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.debug("closed view for %s", self.room_id)


class ConversationSync:
    """Opens conversation views and sends messages into rooms."""

    def __init__(
        self,
        store: Store,
        *,
        retention: int = DEFAULT_RETENTION,
        read_retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self._store = store
        self._retention = retention
        self._read_retry = read_retry
        self._views: List[ConversationView] = []

    @property
    def open_views(self) -> List[ConversationView]:
        return list(self._views)

    async def open(self, ctx: SessionContext, room_id: str) -> ConversationView:
        """Start a fresh view of ``room_id`` in the loading state."""

        if not rooms.is_participant(room_id, ctx.user_id):
            raise Rejected(f"{ctx.user_id} is not a participant of {room_id}")
        view = ConversationView(room_id, self._store, retention=self._retention, read_retry=self._read_retry)
        view.start()
        self._views.append(view)
        return view

    async def open_with(self, ctx: SessionContext, peer_id: str) -> ConversationView:
        return await self.open(ctx, rooms.room_id(ctx.user_id, peer_id))

    async def send(
        self,
        ctx: SessionContext,
        view: ConversationView,
        *,
        text: str | None = None,
        attachment_url: str | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        if view.closed:
            raise ViewClosed(f"view for {view.room_id} is closed")
        return await self.post(
            ctx, view.room_id, text=text, attachment_url=attachment_url, client_msg_id=client_msg_id
        )

    async def post(
        self,
        ctx: SessionContext,
        room_id: str,
        *,
        text: str | None = None,
        attachment_url: str | None = None,
        client_msg_id: str | None = None,
    ) -> Message:
        """Create a message in durable storage.

        Nothing is inserted into open views here: every view, the sender's
        included, receives the row through the change feed. Store rejections
        surface as ``SendRejected``; nothing is retried.
        """

        if text is not None and not text.strip():
            text = None
        if text is None and not attachment_url:
            raise EmptyMessage("message needs text or an attachment")
        try:
            return await self._store.insert_message(
                room_id=room_id,
                author_id=ctx.user_id,
                actor_id=ctx.user_id,
                text=text,
                attachment_url=attachment_url or None,
                client_msg_id=client_msg_id or new_client_msg_id(),
            )
        except SendRejected:
            raise
        except Rejected as exc:
            raise SendRejected(str(exc)) from exc

    async def close(self, view: ConversationView) -> None:
        await view.close()
        try:
            self._views.remove(view)
        except ValueError:
            return

    async def close_all(self) -> None:
        views, self._views = self._views, []
        await asyncio.gather(*(view.close() for view in views))

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List

from . import shortid
from .auth import SessionContext
from .errors import (
    AlreadyFriends,
    CannotBefriendSelf,
    Conflict,
    PartialFailure,
    UnknownPeer,
)
from .models import STATUS_ACCEPTED, Friendship, Profile, _now_ms
from .retry import NO_RETRY, RetryPolicy, with_retries
from .store import FRIENDSHIPS_PKEY, Store


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FriendPair:
    """Both directional rows of one logical friendship, as currently stored."""

    outbound: Friendship | None
    inbound: Friendship | None

    @property
    def is_symmetric(self) -> bool:
        return (
            self.outbound is not None
            and self.inbound is not None
            and self.outbound.status == self.inbound.status
        )


class FriendshipRepository:
    """Hides the two-row encoding of a symmetric friendship.

    Each direction is an independent idempotent insert; a uniqueness violation
    on a direction means that direction already exists and counts as written.
    """

    def __init__(self, store: Store, *, read_retry: RetryPolicy = NO_RETRY) -> None:
        self._store = store
        self._read_retry = read_retry

    async def pair(self, owner_id: str, peer_id: str) -> FriendPair:
        outbound, inbound = await asyncio.gather(
            self._get(owner_id, peer_id),
            self._get(peer_id, owner_id),
        )
        return FriendPair(outbound=outbound, inbound=inbound)

    async def write_pair(self, owner_id: str, peer_id: str, status: str) -> None:
        now_ms = _now_ms()
        outbound = Friendship(owner_id=owner_id, peer_id=peer_id, status=status, created_at_ms=now_ms)
        failures: dict[tuple[str, str], BaseException] = {}
        for row in (outbound, outbound.reversed()):
            try:
                await self._insert_direction(row)
            except Exception as exc:
                logger.warning("friendship %s->%s not written: %s", row.owner_id, row.peer_id, exc)
                failures[row.key] = exc
        if failures:
            raise PartialFailure(failures)

    async def outbound(self, owner_id: str, status: str = STATUS_ACCEPTED) -> List[Friendship]:
        return await with_retries(
            lambda: self._store.list_friendships(owner_id, status),
            self._read_retry,
            what="friendship list",
        )

    async def _get(self, owner_id: str, peer_id: str) -> Friendship | None:
        return await with_retries(
            lambda: self._store.get_friendship(owner_id, peer_id),
            self._read_retry,
            what="friendship read",
        )

    async def _insert_direction(self, row: Friendship) -> None:
        try:
            await with_retries(lambda: self._store.insert_friendship(row), self._read_retry, what="friendship insert")
        except Conflict as exc:
            if exc.constraint != FRIENDSHIPS_PKEY:
                raise
            logger.debug("friendship %s->%s already present", row.owner_id, row.peer_id)


class FriendshipManager:
    def __init__(
        self,
        store: Store,
        *,
        repository: FriendshipRepository | None = None,
        read_retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self._store = store
        self._read_retry = read_retry
        self._repository = repository or FriendshipRepository(store, read_retry=read_retry)

    @property
    def repository(self) -> FriendshipRepository:
        return self._repository

    async def search(self, ctx: SessionContext, short_id: str) -> Profile | None:
        """Find another user by short id; the caller never finds themself."""

        query = short_id.strip()
        if not shortid.is_assigned(query):
            return None
        profile = await with_retries(
            lambda: self._store.find_profile_by_short_id(query),
            self._read_retry,
            what="short id search",
        )
        if profile is None or profile.id == ctx.user_id:
            return None
        return profile

    async def add_friend(self, ctx: SessionContext, peer_id: str) -> None:
        """Make ``ctx.user_id`` and ``peer_id`` friends in both directions.

        Raises ``AlreadyFriends`` without writing when both rows exist. Rows
        left behind by an earlier partial attempt are completed, not rejected.
        ``PartialFailure`` reports directions that could not be written; the
        ones that were written stay, and calling again is safe. A direction
        stored earlier with a different status is left untouched and the
        mismatch is logged.
        """

        owner_id = ctx.user_id
        if peer_id == owner_id:
            raise CannotBefriendSelf("cannot add yourself as a friend")

        pair = await self._repository.pair(owner_id, peer_id)
        if pair.is_symmetric:
            raise AlreadyFriends(f"{peer_id} is already a friend")

        peer = await with_retries(lambda: self._store.get_profile(peer_id), self._read_retry, what="peer read")
        if peer is None:
            raise UnknownPeer(f"no profile for {peer_id}")

        await self._repository.write_pair(owner_id, peer_id, STATUS_ACCEPTED)
        settled = await self._repository.pair(owner_id, peer_id)
        if not settled.is_symmetric:
            logger.warning(
                "friendship %s<->%s left asymmetric: %s vs %s",
                owner_id,
                peer_id,
                settled.outbound.status if settled.outbound else None,
                settled.inbound.status if settled.inbound else None,
            )
            return
        logger.info("friendship %s<->%s established", owner_id, peer_id)

    async def list_friends(self, ctx: SessionContext) -> List[Profile]:
        rows = await self._repository.outbound(ctx.user_id, STATUS_ACCEPTED)
        profiles = await asyncio.gather(
            *(
                with_retries(lambda peer_id=row.peer_id: self._store.get_profile(peer_id), self._read_retry, what="friend read")
                for row in rows
            )
        )
        return [profile for profile in profiles if profile is not None]

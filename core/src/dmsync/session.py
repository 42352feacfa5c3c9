from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from .auth import SIGNED_IN, SIGNED_OUT, AuthEvents, SessionChanged, SessionContext
from .friends import FriendshipManager
from .models import Profile
from .profiles import ProfileProvisioner
from .sync import ConversationSync


logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    context: SessionContext
    profile: Profile
    friends: List[Profile] = field(default_factory=list)


class SessionCoordinator:
    """Recomputes the signed-in user's profile and friends on session changes.

    Sign-in runs ``ensure_profile`` then ``list_friends``; switching to another
    user or signing out closes every open conversation view first.
    """

    def __init__(
        self,
        events: AuthEvents,
        provisioner: ProfileProvisioner,
        friends: FriendshipManager,
        sync: ConversationSync,
    ) -> None:
        self._provisioner = provisioner
        self._friends = friends
        self._sync = sync
        self._state: SessionState | None = None
        self._unsubscribe = events.subscribe(self._on_session_changed)

    @property
    def state(self) -> SessionState | None:
        return self._state

    async def _on_session_changed(self, event: SessionChanged) -> None:
        if event.kind == SIGNED_IN and event.session is not None:
            if event.previous is not None and event.previous.user_id != event.session.user_id:
                await self._sync.close_all()
            await self.refresh(event.session.context())
        elif event.kind == SIGNED_OUT:
            await self._sync.close_all()
            self._state = None
            logger.info("signed out; conversation views released")

    async def refresh(self, ctx: SessionContext) -> SessionState:
        profile = await self._provisioner.ensure_profile(ctx)
        friends = await self._friends.list_friends(ctx)
        self._state = SessionState(context=ctx, profile=profile, friends=friends)
        return self._state

    async def refresh_friends(self) -> List[Profile]:
        if self._state is None:
            return []
        self._state.friends = await self._friends.list_friends(self._state.context)
        return list(self._state.friends)

    def detach(self) -> None:
        self._unsubscribe()

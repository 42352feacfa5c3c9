from __future__ import annotations

import logging
import secrets

from . import shortid
from .auth import SessionContext
from .errors import Conflict, ProvisioningFailed
from .models import Profile
from .retry import NO_RETRY, RetryPolicy, with_retries
from .store import PROFILES_PKEY, PROFILES_SHORT_ID_KEY, Store


logger = logging.getLogger(__name__)

DEFAULT_SHORT_ID_ATTEMPTS = 5


def provisional_display_name() -> str:
    return f"User-{secrets.token_hex(3)}"


class ProfileProvisioner:
    """Creates a user's profile on first sign-in and never touches it again."""

    def __init__(
        self,
        store: Store,
        *,
        max_attempts: int = DEFAULT_SHORT_ID_ATTEMPTS,
        read_retry: RetryPolicy = NO_RETRY,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._max_attempts = max_attempts
        self._read_retry = read_retry

    async def get_profile(self, user_id: str) -> Profile | None:
        return await with_retries(lambda: self._store.get_profile(user_id), self._read_retry, what="profile read")

    async def ensure_profile(self, ctx: SessionContext) -> Profile:
        """Return the caller's profile, creating it if this is the first sign-in.

        The insert is conditioned on absence: losing a concurrent race for the
        same user id re-reads the winner's row. A short-id collision with a
        different user retries with a perturbed seed, up to ``max_attempts``
        derivations, then raises ``ProvisioningFailed``.
        """

        existing = await self.get_profile(ctx.user_id)
        if existing is not None:
            return existing

        display_name = provisional_display_name()
        for attempt in range(self._max_attempts):
            if ctx.seed:
                short_id = shortid.derive(shortid.perturb(ctx.seed, attempt))
            else:
                short_id = shortid.UNASSIGNED_SHORT_ID
            candidate = Profile(id=ctx.user_id, short_id=short_id, display_name=display_name)
            try:
                created = await self._store.insert_profile(candidate)
            except Conflict as exc:
                if exc.constraint == PROFILES_PKEY:
                    winner = await self.get_profile(ctx.user_id)
                    if winner is not None:
                        logger.debug("profile for %s created concurrently", ctx.user_id)
                        return winner
                    raise
                if exc.constraint != PROFILES_SHORT_ID_KEY:
                    raise
                logger.warning(
                    "short id %s already taken, re-deriving for %s (attempt %d/%d)",
                    short_id,
                    ctx.user_id,
                    attempt + 1,
                    self._max_attempts,
                )
                continue
            logger.info("created profile %s with short id %s", created.id, created.short_id)
            return created

        raise ProvisioningFailed(ctx.user_id, self._max_attempts)

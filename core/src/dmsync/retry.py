from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import Transient


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for read-only and idempotent backend calls.

    Only ``Transient`` failures are retried. Message creation and uploads have
    no idempotency guarantee from the store and must never go through here.
    """

    attempts: int = 3
    delay_ms: int = 50

    def backoff_s(self, attempt: int) -> float:
        base = self.delay_ms * (2**attempt) / 1000
        return base + random.uniform(0, base / 2)


NO_RETRY = RetryPolicy(attempts=1, delay_ms=0)


async def with_retries(op: Callable[[], Awaitable[T]], policy: RetryPolicy, *, what: str) -> T:
    attempts = max(1, policy.attempts)
    for attempt in range(attempts):
        try:
            return await op()
        except Transient as exc:
            if attempt == attempts - 1:
                raise
            logger.warning("%s attempt %d/%d failed: %s", what, attempt + 1, attempts, exc)
            await asyncio.sleep(policy.backoff_s(attempt))
    raise AssertionError("unreachable")

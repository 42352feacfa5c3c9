"""Public short identifiers derived from a private seed."""

from __future__ import annotations

import hashlib


SHORT_ID_LENGTH = 7
# Contains non-hex letters, so no derived token can ever equal it.
UNASSIGNED_SHORT_ID = "guestid"


def derive(seed: str | None) -> str:
    """Return the first seven hex characters of SHA-256(seed).

    A missing or empty seed (anonymous sign-up) yields ``UNASSIGNED_SHORT_ID``,
    which callers must treat as "no public id" when searching.
    """

    if not seed:
        return UNASSIGNED_SHORT_ID
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:SHORT_ID_LENGTH]


def perturb(seed: str, attempt: int) -> str:
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    if attempt == 0:
        return seed
    return f"{seed}#{attempt}"


def is_assigned(short_id: str | None) -> bool:
    return bool(short_id) and short_id != UNASSIGNED_SHORT_ID

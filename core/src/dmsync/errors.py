from __future__ import annotations

from typing import Sequence


class BackendError(Exception):
    """Base class for failures reported by the storage collaborator."""


class Conflict(BackendError):
    """A uniqueness constraint rejected the write."""

    def __init__(self, constraint: str, message: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(message or f"duplicate key violates {constraint}")


class Rejected(BackendError):
    pass


class Transient(BackendError):
    pass


class ProvisioningFailed(Exception):
    def __init__(self, user_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"no free short id for {user_id} after {attempts} attempts")


class AddFriendError(Exception):
    pass


class AlreadyFriends(AddFriendError):
    pass


class CannotBefriendSelf(AddFriendError):
    pass


class UnknownPeer(AddFriendError):
    pass


class PartialFailure(AddFriendError):
    """One or both directional rows could not be written.

    ``failures`` maps ``(owner_id, peer_id)`` of each failed direction to the
    error raised by the store. Directions that did succeed are kept.
    """

    def __init__(self, failures: dict[tuple[str, str], BaseException]) -> None:
        self.failures = dict(failures)
        directions: Sequence[str] = [f"{owner}->{peer}" for owner, peer in self.failures]
        super().__init__("friendship write failed for " + ", ".join(directions))


class SendError(Exception):
    pass


class EmptyMessage(SendError):
    pass


class SendRejected(SendError, Rejected):
    """The store refused the message; raised by ``send`` and never retried."""


class ViewClosed(SendError):
    pass


class UploadError(Exception):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)

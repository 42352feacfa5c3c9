from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import quote

from .auth import SessionContext
from .blobs import ObjectStorage, StorageError
from .errors import UploadError
from .models import Message
from .sync import ConversationSync, ConversationView


logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "chat_images"


@dataclass(frozen=True)
class AttachmentRef:
    path: str
    url: str


@dataclass(frozen=True)
class MessageDraft:
    text: str | None
    attachment_url: str | None


def _segment(value: str) -> str:
    return quote(value, safe="")


def _extension(name: str) -> str:
    suffix = PurePosixPath(name.replace("\\", "/")).suffix.lower()
    return suffix if suffix[1:].isalnum() else ""


class MediaAttachmentPipeline:
    def __init__(self, storage: ObjectStorage, *, prefix: str = DEFAULT_PREFIX) -> None:
        self._storage = storage
        self._prefix = prefix.strip("/")

    def object_path(self, room_id: str, author_id: str, name: str) -> str:
        filename = f"{secrets.token_urlsafe(16)}{_extension(name)}"
        return "/".join((self._prefix, _segment(room_id), _segment(author_id), filename))

    async def upload(self, room_id: str, author_id: str, payload: bytes, name: str) -> AttachmentRef:
        """Store ``payload`` under a fresh path scoped by room and author.

        Storage failures are raised as ``UploadError`` and never retried: a
        retried upload would land at a new random path.
        """

        if not payload:
            raise UploadError("attachment payload is empty")
        path = self.object_path(room_id, author_id, name)
        try:
            await self._storage.put(path, payload)
        except StorageError as exc:
            logger.warning("upload to %s failed: %s", path, exc)
            raise UploadError(f"upload failed: {exc}", cause=exc) from exc
        return AttachmentRef(path=path, url=self._storage.public_url(path))

    @staticmethod
    def draft(ref: AttachmentRef, text: str | None = None) -> MessageDraft:
        return MessageDraft(text=text, attachment_url=ref.url)

    async def send_image(
        self,
        sync: ConversationSync,
        ctx: SessionContext,
        view: ConversationView,
        payload: bytes,
        name: str,
    ) -> Message:
        """Upload an image and send it as an attachment-only message."""

        ref = await self.upload(view.room_id, ctx.user_id, payload, name)
        draft = self.draft(ref)
        return await sync.send(ctx, view, text=draft.text, attachment_url=draft.attachment_url)

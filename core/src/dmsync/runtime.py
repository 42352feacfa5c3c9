from __future__ import annotations

from .auth import SessionStore
from .blobs import FileObjectStorage, InMemoryObjectStorage, ObjectStorage
from .config import SyncConfig
from .friends import FriendshipManager
from .media import MediaAttachmentPipeline
from .profiles import ProfileProvisioner
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import InMemoryStore, Store
from .sync import ConversationSync


class Runtime:
    """The core services wired to one store and one object storage."""

    def __init__(
        self,
        *,
        store: Store,
        storage: ObjectStorage,
        config: SyncConfig,
        sessions: SessionStore | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.config = config
        self.sessions = sessions or SessionStore()
        self.provisioner = ProfileProvisioner(
            store, max_attempts=config.short_id_attempts, read_retry=config.read_retry
        )
        self.friends = FriendshipManager(store, read_retry=config.read_retry)
        self.sync = ConversationSync(store, retention=config.retention_bound, read_retry=config.read_retry)
        self.media = MediaAttachmentPipeline(storage, prefix=config.media_prefix)

    async def shutdown(self) -> None:
        await self.sync.close_all()
        self.store.close()


def build_runtime(
    config: SyncConfig | None = None,
    *,
    db_path: str | None = None,
    media_dir: str | None = None,
) -> Runtime:
    config = config or SyncConfig()
    store: Store
    if db_path is not None:
        store = SQLiteStore(SQLiteBackend(db_path))
    else:
        store = InMemoryStore()
    storage: ObjectStorage
    if media_dir is not None:
        storage = FileObjectStorage(media_dir, config.public_base_url)
    else:
        storage = InMemoryObjectStorage(config.public_base_url)
    return Runtime(store=store, storage=storage, config=config)

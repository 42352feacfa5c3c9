from __future__ import annotations

import threading
from pathlib import Path, PurePosixPath
from typing import Dict
from urllib.parse import quote


class StorageError(Exception):
    pass


class ObjectExists(StorageError):
    pass


def _check_path(path: str) -> str:
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or any(part in ("", ".", "..") for part in path.split("/")):
        raise StorageError(f"invalid object path: {path!r}")
    return path


class ObjectStorage:
    """Object-storage collaborator: write-once blobs with public URLs."""

    def __init__(self, public_base_url: str) -> None:
        self._public_base_url = public_base_url.rstrip("/")

    async def put(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        return f"{self._public_base_url}/{quote(_check_path(path))}"


class InMemoryObjectStorage(ObjectStorage):
    def __init__(self, public_base_url: str = "memory://objects") -> None:
        super().__init__(public_base_url)
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    async def put(self, path: str, data: bytes) -> None:
        _check_path(path)
        with self._lock:
            if path in self._objects:
                raise ObjectExists(path)
            self._objects[path] = bytes(data)

    def get(self, path: str) -> bytes | None:
        with self._lock:
            return self._objects.get(path)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class FileObjectStorage(ObjectStorage):
    """Stores objects as files below ``root``; served by the HTTP app under /media."""

    def __init__(self, root: str, public_base_url: str) -> None:
        super().__init__(public_base_url)
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, path: str, data: bytes) -> None:
        target = self._root / _check_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(target, "xb") as handle:
                handle.write(data)
        except FileExistsError as exc:
            raise ObjectExists(path) from exc
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def resolve(self, path: str) -> Path | None:
        try:
            target = self._root / _check_path(path)
        except StorageError:
            return None
        return target if target.is_file() else None

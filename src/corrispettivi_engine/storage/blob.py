"""Key/value blob storage for raw payloads, anomalies and audit artifacts.

Keys are slash-separated relative paths such as
``journals/PEM-1/2025-01-15/2025-01-15T20-00-00.json``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)


def _check_key(key: str) -> str:
    parts = PurePosixPath(key).parts
    if not key or key.startswith("/") or ".." in parts:
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


class BlobStore(ABC):
    """Every backend implements the full contract."""

    @abstractmethod
    async def store(self, key: str, data: bytes) -> None: ...

    @abstractmethod
    async def retrieve(self, key: str) -> Optional[bytes]: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]: ...

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key under ``prefix``. Returns how many were removed."""
        removed = 0
        for key in await self.list(prefix):
            if await self.delete(key):
                removed += 1
        return removed


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def store(self, key: str, data: bytes) -> None:
        self._blobs[_check_key(key)] = bytes(data)

    async def retrieve(self, key: str) -> Optional[bytes]:
        return self._blobs.get(_check_key(key))

    async def exists(self, key: str) -> bool:
        return _check_key(key) in self._blobs

    async def delete(self, key: str) -> bool:
        return self._blobs.pop(_check_key(key), None) is not None

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._blobs if k.startswith(prefix))


class FileSystemBlobStore(BlobStore):
    """Stores blobs as files under a root directory.

    Writes go to a temporary sibling first and are renamed into place so a
    reader never sees a half-written blob.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*PurePosixPath(_check_key(key)).parts)

    async def store(self, key: str, data: bytes) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def retrieve(self, key: str) -> Optional[bytes]:
        path = self._path(key)

        def _read() -> Optional[bytes]:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_read)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _unlink() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        return await asyncio.to_thread(_unlink)

    async def list(self, prefix: str = "") -> list[str]:
        def _walk() -> list[str]:
            if not self.root.exists():
                return []
            keys = []
            for path in self.root.rglob("*"):
                if path.is_file() and not path.name.endswith(".tmp"):
                    key = path.relative_to(self.root).as_posix()
                    if key.startswith(prefix):
                        keys.append(key)
            return sorted(keys)

        return await asyncio.to_thread(_walk)


def create_blob_store(backend: str, root: str) -> BlobStore:
    if backend == "memory":
        return MemoryBlobStore()
    if backend == "filesystem":
        return FileSystemBlobStore(root)
    raise ValueError(f"Unknown storage backend: {backend!r}")

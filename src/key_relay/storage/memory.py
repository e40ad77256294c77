"""In-process versioned store for local development and tests.

Values live only as long as the process, so a relay running on this backend
re-provisions its whole pool after every restart.  Version markers are
content hashes, mirroring how a git-backed store versions its files.
"""

from __future__ import annotations

import hashlib
from typing import Optional

from key_relay.core.exceptions import StorageConflictError
from key_relay.storage.base import VersionedContentStore
from key_relay.storage.codec import BlobCodec


class InMemoryContentStore(VersionedContentStore):
    """Dict-backed :class:`VersionedContentStore`.

    Attributes:
        writes: Number of successful writes, for assertions in tests.
    """

    def __init__(self, codec: Optional[BlobCodec] = None) -> None:
        super().__init__(codec)
        self._files: dict[str, tuple[str, str]] = {}
        self.writes = 0

    @staticmethod
    def _version(blob: str, previous: Optional[str]) -> str:
        return hashlib.sha1(f"{previous}:{blob}".encode("utf-8")).hexdigest()

    async def _read(self, path: str, key: str) -> Optional[tuple[str, str]]:
        return self._files.get(path)

    async def _write(self, path: str, blob: str, version: Optional[str], key: str) -> None:
        current = self._files.get(path)
        current_version = current[1] if current is not None else None
        if current_version != version:
            raise StorageConflictError(f"Stale version for {path}", key=key)
        self._files[path] = (blob, self._version(blob, current_version))
        self.writes += 1

    async def _remove(self, path: str, version: str, key: str) -> None:
        current = self._files.get(path)
        if current is None or current[1] != version:
            raise StorageConflictError(f"Stale version for {path}", key=key)
        del self._files[path]

"""Versioned key/value store with optimistic writes.

:class:`VersionedContentStore` implements the credential store contract
(``get`` / ``set`` / ``delete`` of an opaque string by logical key) on top
of three backend primitives that subclasses provide:

- ``_read(path)`` → ``(blob, version)`` or ``None`` when absent,
- ``_write(path, blob, version, key)`` → conditional create/update,
- ``_remove(path, version, key)`` → conditional delete.

A write first reads the current version marker (absence means "create"),
then submits the new blob tagged with it.  A stale marker surfaces as
:class:`~key_relay.core.exceptions.StorageConflictError`.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from key_relay.core.exceptions import StorageError
from key_relay.storage.codec import BlobCodec

logger = structlog.get_logger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^a-zA-Z0-9\-_/.]")


def sanitize_key(key: str) -> str:
    """Map a logical key to a safe store path.

    Leading and trailing slashes are stripped and any character outside
    ``[a-zA-Z0-9-_/.]`` is replaced with ``_``.

    Raises:
        ValueError: If nothing is left after stripping.
    """
    path = _UNSAFE_PATH_CHARS.sub("_", key.strip("/"))
    if not path:
        raise ValueError(f"Store key {key!r} is empty after sanitising")
    return path


class VersionedContentStore(ABC):
    """Credential store contract over a versioned backend.

    Args:
        codec: Codec applied to values on their way in and out.
    """

    def __init__(self, codec: Optional[BlobCodec] = None) -> None:
        self._codec = codec or BlobCodec()

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _read(self, path: str, key: str) -> Optional[tuple[str, str]]:
        """Return ``(blob, version)`` for ``path`` or ``None`` if absent."""

    @abstractmethod
    async def _write(self, path: str, blob: str, version: Optional[str], key: str) -> None:
        """Store ``blob`` if the current version still equals ``version``."""

    @abstractmethod
    async def _remove(self, path: str, version: str, key: str) -> None:
        """Delete ``path`` if the current version still equals ``version``."""

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """Return the decoded value stored under ``key`` or ``None`` if absent.

        Raises:
            StorageError: On transport failures or an undecodable blob.
        """
        found = await self._read(sanitize_key(key), key)
        if found is None:
            return None
        blob, _version = found
        try:
            return self._codec.decode(blob)
        except ValueError as exc:
            raise StorageError(str(exc), key=key) from exc

    async def set(self, key: str, value: str) -> bool:
        """Create or replace the value stored under ``key``.

        Raises:
            StorageConflictError: If the entry changed between the version read
                and the write.
            StorageError: On any other failure.
        """
        path = sanitize_key(key)
        current = await self._read(path, key)
        version = current[1] if current is not None else None
        await self._write(path, self._codec.encode(value), version, key)
        logger.debug("store_set", key=key, created=version is None)
        return True

    async def delete(self, key: str) -> bool:
        """Delete the value stored under ``key``.

        Returns:
            ``True`` if something was deleted, ``False`` if the key was absent.
        """
        path = sanitize_key(key)
        current = await self._read(path, key)
        if current is None:
            return False
        await self._remove(path, current[1], key)
        logger.debug("store_delete", key=key)
        return True

    async def aclose(self) -> None:
        """Release backend resources.  No-op unless a backend owns a client."""

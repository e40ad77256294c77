"""Credential store backed by a file in a GitHub repository.

Each logical key is a file under the repository root on the configured
branch, written through the REST contents API:

- ``GET    /repos/{owner}/{repo}/contents/{path}?ref={branch}``
- ``PUT    /repos/{owner}/{repo}/contents/{path}``  (create / update)
- ``DELETE /repos/{owner}/{repo}/contents/{path}``

The file's blob SHA is the version marker.  GitHub answers a PUT or DELETE
whose ``sha`` is stale with 409 (or 422 when a create races an existing
file); both surface as :class:`StorageConflictError`.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from key_relay.core.exceptions import StorageConflictError, StorageError
from key_relay.storage.base import VersionedContentStore
from key_relay.storage.codec import BlobCodec

logger = structlog.get_logger(__name__)

_API_VERSION = "2022-11-28"
_CONFLICT_STATUSES = frozenset({409, 422})


class GitHubContentStore(VersionedContentStore):
    """Versioned store over the GitHub contents API.

    Args:
        token: Token with contents read/write permission on the repository.
        owner: Repository owner.
        repo: Repository name.
        branch: Branch that receives the storage commits.
        codec: Blob codec; plain base64 when omitted.
        api_url: REST API base URL.
        client: Optional shared :class:`httpx.AsyncClient`.  When omitted the
            store creates and owns one.
        timeout: Per-request timeout in seconds for an owned client.
    """

    def __init__(
        self,
        *,
        token: str,
        owner: str,
        repo: str,
        branch: str = "main",
        codec: Optional[BlobCodec] = None,
        api_url: str = "https://api.github.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(codec)
        self._owner = owner
        self._repo = repo
        self._branch = branch
        self._base = api_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": _API_VERSION,
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        return f"{self._base}/repos/{self._owner}/{self._repo}/contents/{quote(path)}"

    async def _request(
        self,
        method: str,
        path: str,
        key: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                self._url(path),
                headers=self._headers,
                params=params,
                json=json,
            )
        except httpx.RequestError as exc:
            raise StorageError(
                f"GitHub {method} {path} failed: {exc.__class__.__name__}: {exc}",
                key=key,
            ) from exc

    @staticmethod
    def _raise_for_write(response: httpx.Response, method: str, path: str, key: str) -> None:
        if response.is_success:
            return
        if response.status_code in _CONFLICT_STATUSES:
            raise StorageConflictError(
                f"GitHub {method} {path} rejected a stale version ({response.status_code})",
                key=key,
            )
        raise StorageError(
            f"GitHub {method} {path} returned {response.status_code}: {response.text[:200]}",
            key=key,
        )

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    async def _read(self, path: str, key: str) -> Optional[tuple[str, str]]:
        response = await self._request("GET", path, key, params={"ref": self._branch})
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise StorageError(
                f"GitHub GET {path} returned {response.status_code}: {response.text[:200]}",
                key=key,
            )
        data = response.json()
        if isinstance(data, list):
            raise StorageError(f"Unexpected directory found at {path}", key=key)
        if data.get("type") != "file":
            raise StorageError(f"Unexpected non-file content at {path}", key=key)
        return data.get("content") or "", data["sha"]

    async def _write(self, path: str, blob: str, version: Optional[str], key: str) -> None:
        payload: dict[str, Any] = {
            "message": f"Update key: {key}",
            "content": blob,
            "branch": self._branch,
        }
        if version is not None:
            payload["sha"] = version
        response = await self._request("PUT", path, key, json=payload)
        self._raise_for_write(response, "PUT", path, key)

    async def _remove(self, path: str, version: str, key: str) -> None:
        payload = {
            "message": f"Delete key: {key}",
            "sha": version,
            "branch": self._branch,
        }
        response = await self._request("DELETE", path, key, json=payload)
        self._raise_for_write(response, "DELETE", path, key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

"""Durable storage for the credential pool.

Usage::

    from key_relay.storage import build_store

    store = build_store(get_settings())
    raw = await store.get("huggingface_api_keys")
"""

from __future__ import annotations

from typing import Optional

import httpx

from key_relay.config.settings import Settings
from key_relay.storage.base import VersionedContentStore, sanitize_key
from key_relay.storage.codec import BlobCodec
from key_relay.storage.github import GitHubContentStore
from key_relay.storage.memory import InMemoryContentStore

__all__ = [
    "BlobCodec",
    "GitHubContentStore",
    "InMemoryContentStore",
    "VersionedContentStore",
    "build_store",
    "sanitize_key",
]


def build_store(
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> VersionedContentStore:
    """Return the credential store selected by ``settings.store_backend``.

    Raises:
        ValueError: If the GitHub backend is selected but its token, owner or
            repository is not configured.
    """
    codec = BlobCodec.named(settings.store_transform)
    if settings.store_backend == "memory":
        return InMemoryContentStore(codec)

    missing = [
        name
        for name, value in (
            ("GITHUB_TOKEN", settings.github_token),
            ("GITHUB_OWNER", settings.github_owner),
            ("GITHUB_REPO", settings.github_repo),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"GitHub store selected but {', '.join(missing)} not set")
    return GitHubContentStore(
        token=settings.github_token,  # type: ignore[arg-type]
        owner=settings.github_owner,  # type: ignore[arg-type]
        repo=settings.github_repo,  # type: ignore[arg-type]
        branch=settings.github_branch,
        codec=codec,
        api_url=settings.github_api_url,
        client=client,
    )

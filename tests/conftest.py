"""Shared pytest fixtures for key relay tests.

Fixture summary
---------------
store             In-memory versioned store with the production ROT13 codec.
supervisor        TaskSupervisor whose background failures are collected.
provisioner       Scripted provisioner; append tokens or exceptions to
                  ``provisioner.results`` before triggering a round.
make_manager      Factory building a PoolManager over ``store`` with a
                  persisted starting pool and test-friendly timings.

No test needs network access: upstream calls go through
``httpx.MockTransport`` and the GitHub store is exercised with respx.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from typing import Any, Optional

import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set env vars before any application modules are imported so that the
# module-level app in key_relay.api.main never needs GitHub credentials.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "STORE_BACKEND": "memory",
    "UPSTREAM_BASE_URL": "https://upstream.test",
    "LOG_LEVEL": "INFO",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from key_relay.config.settings import get_settings  # noqa: E402
from key_relay.core.background import TaskSupervisor  # noqa: E402
from key_relay.core.exceptions import ProvisioningError  # noqa: E402
from key_relay.core.pool_manager import PoolManager  # noqa: E402
from key_relay.storage import BlobCodec, InMemoryContentStore, sanitize_key  # noqa: E402

POOL_KEY = "huggingface_api_keys"


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Drop the cached Settings so each test sees its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Provisioner double
# ---------------------------------------------------------------------------


class ScriptedProvisioner:
    """Provisioner that replays a script of tokens and exceptions.

    Each ``acquire()`` call pops the next entry.  An exhausted script raises
    :class:`ProvisioningError`.  When ``gate`` is set, calls block until the
    event fires, which lets tests hold a round open.
    """

    def __init__(
        self,
        results: Optional[list[Any]] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.results: list[Any] = list(results or [])
        self.gate = gate
        self.calls = 0

    async def acquire(self) -> str:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if not self.results:
            raise ProvisioningError("script exhausted")
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryContentStore:
    return InMemoryContentStore(BlobCodec.named("rot13"))


@pytest.fixture
def background_errors() -> list[tuple[str, BaseException]]:
    """Exceptions that escaped any supervised background task."""
    return []


@pytest_asyncio.fixture
async def supervisor(
    background_errors: list[tuple[str, BaseException]],
) -> AsyncGenerator[TaskSupervisor, None]:
    sup = TaskSupervisor(on_error=lambda name, exc: background_errors.append((name, exc)))
    yield sup
    await sup.aclose()


@pytest.fixture
def provisioner() -> ScriptedProvisioner:
    return ScriptedProvisioner()


async def seed_pool(store: InMemoryContentStore, slots: list[Optional[str]]) -> None:
    """Persist ``slots`` (``None`` for empty) as the stored pool."""
    await store.set(POOL_KEY, json.dumps(slots))


async def stored_pool(store: InMemoryContentStore) -> Optional[list[Optional[str]]]:
    """Return the persisted pool as a list, or ``None`` if nothing is stored."""
    raw = await store.get(POOL_KEY)
    return json.loads(raw) if raw is not None else None


def stored_blob(store: InMemoryContentStore) -> Optional[str]:
    """Return the encoded blob exactly as the store holds it."""
    found = store._files.get(sanitize_key(POOL_KEY))
    return found[0] if found is not None else None


@pytest.fixture
def make_manager(
    store: InMemoryContentStore,
    provisioner: ScriptedProvisioner,
    supervisor: TaskSupervisor,
) -> Callable[..., Awaitable[PoolManager]]:
    """Return an async factory for an initialised PoolManager.

    Usage::

        manager = await make_manager(["k1", None], min_credentials=3)

    ``slots`` is persisted to the store first (``None`` skips seeding).
    Follow-up rounds run without delay so ``supervisor.drain()`` settles
    every chained round deterministically.
    """

    async def _factory(
        slots: Optional[list[Optional[str]]] = None,
        *,
        initialize: bool = True,
        **overrides: Any,
    ) -> PoolManager:
        target = overrides.pop("store", store)
        source = overrides.pop("provisioner", provisioner)
        if slots is not None:
            await seed_pool(target, slots)
        options: dict[str, Any] = {
            "storage_key": POOL_KEY,
            "min_credentials": 2,
            "provisioning_timeout": 5.0,
            "lock_timeout": 60.0,
            "retry_delay": 0,
            "supervisor": supervisor,
        }
        options.update(overrides)
        manager = PoolManager(target, source, **options)
        if initialize:
            await manager.initialize()
        return manager

    return _factory

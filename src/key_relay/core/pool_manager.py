"""Credential pool manager.

Owns the in-memory :class:`~key_relay.core.credential_pool.CredentialPool`,
loads it from the credential store once per process, persists it, and drives
the Provisioner to keep at least ``min_credentials`` active slots.

Persistence policy
------------------
Deprecating a slot never writes to the store by itself.  With the default
``target`` policy the whole pool is written only when a provisioning round
brings the active count up to the minimum, trading a small window of
unpersisted credentials for far fewer store round-trips.  The ``always``
policy additionally writes (in the background) after every deprecation.

Persistence calls are serialised by an ``asyncio.Lock`` so that two writes
never race each other's version markers.  A conflict with a writer outside
this process is re-submitted up to ``conflict_retries`` times; if it still
fails the write is abandoned with a logged error and retried after the next
successful provisioning round.  Persistence errors never reach a request.

Provisioning
------------
``provision_if_needed()`` is synchronous: the active-count check and the lock
acquisition happen without suspending, so concurrent triggers start at most
one Provisioner call.  The call itself runs as a supervised background task
bounded by ``provisioning_timeout``.  While the pool is still below the
minimum after a successful round, a follow-up round is scheduled after
``retry_delay`` seconds rather than looping in place.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Literal, Optional

import structlog

from key_relay.config.settings import Settings
from key_relay.core.background import TaskSupervisor
from key_relay.core.credential_pool import Active, CredentialPool
from key_relay.core.exceptions import ProvisioningError, StorageConflictError, StorageError
from key_relay.core.provisioning import Provisioner, ProvisioningLock
from key_relay.storage.base import VersionedContentStore

logger = structlog.get_logger(__name__)

PersistPolicy = Literal["target", "always"]


class PoolManager:
    """Lazily loaded, self-replenishing credential pool.

    Args:
        store: Credential store holding the persisted pool.
        provisioner: Source of new credentials.
        storage_key: Logical store key of the persisted pool.
        min_credentials: Healthy active count.
        provisioning_timeout: Seconds allowed per Provisioner call.
        lock_timeout: Seconds after which a held provisioning lock is stale.
        retry_delay: Seconds before a follow-up round while below minimum.
        persist_policy: ``"target"`` or ``"always"``; see module docstring.
        conflict_retries: Immediate re-submissions after a write conflict.
        supervisor: Owner of background tasks; a private one is created when
            omitted.
        clock: Monotonic time source for the provisioning lock.
    """

    def __init__(
        self,
        store: VersionedContentStore,
        provisioner: Provisioner,
        *,
        storage_key: str = "huggingface_api_keys",
        min_credentials: int = 5,
        provisioning_timeout: float = 300.0,
        lock_timeout: float = 600.0,
        retry_delay: float = 1.0,
        persist_policy: PersistPolicy = "target",
        conflict_retries: int = 1,
        supervisor: Optional[TaskSupervisor] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._provisioner = provisioner
        self._storage_key = storage_key
        self._min = min_credentials
        self._provisioning_timeout = provisioning_timeout
        self._retry_delay = retry_delay
        self._persist_policy = persist_policy
        self._conflict_retries = conflict_retries
        self._supervisor = supervisor or TaskSupervisor()
        self._lock = ProvisioningLock(lock_timeout, clock=clock)

        self._pool: Optional[CredentialPool] = None
        self._init_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        # Mutation counter vs. the counter value last written to the store.
        self._mutations = 0
        self._persisted_mutations = 0
        self._persist_pending = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: VersionedContentStore,
        provisioner: Provisioner,
        supervisor: Optional[TaskSupervisor] = None,
    ) -> PoolManager:
        return cls(
            store,
            provisioner,
            storage_key=settings.pool_storage_key,
            min_credentials=settings.min_credentials,
            provisioning_timeout=settings.provisioning_timeout,
            lock_timeout=settings.provisioning_lock_timeout,
            retry_delay=settings.provisioning_retry_delay,
            persist_policy=settings.persist_policy,
            conflict_retries=settings.store_conflict_retries,
            supervisor=supervisor,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> CredentialPool:
        if self._pool is None:
            raise RuntimeError("PoolManager.initialize() has not completed")
        return self._pool

    async def initialize(self) -> None:
        """Load the persisted pool once.  Concurrent callers share the first load.

        An absent store entry yields an empty pool.

        Raises:
            StorageError: If the store cannot be read or holds an undecodable
                pool.  The manager stays uninitialised so a later call retries.
        """
        if self._pool is not None:
            return
        async with self._init_lock:
            if self._pool is not None:
                return
            try:
                raw = await self._store.get(self._storage_key)
            except StorageError as exc:
                logger.error("pool_load_failed", storage_key=self._storage_key, error=str(exc))
                raise

            if raw is None:
                logger.warning("pool_not_found", storage_key=self._storage_key)
                pool = CredentialPool()
            else:
                try:
                    pool = CredentialPool.from_json(raw)
                except ValueError as exc:
                    raise StorageError(
                        f"Persisted pool is malformed: {exc}", key=self._storage_key
                    ) from exc

            self._pool = pool
            logger.info("pool_loaded", slots=len(pool), active=pool.active_count)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_count(self) -> int:
        return self.pool.active_count

    def active_slots(self) -> list[tuple[int, str]]:
        """Snapshot of ``(slot_index, credential)`` pairs in stored order."""
        return self.pool.active_slots()

    @property
    def provisioning(self) -> bool:
        return self._lock.held

    @property
    def dirty(self) -> bool:
        """``True`` if the in-memory pool has changes the store has not seen."""
        return self._mutations != self._persisted_mutations

    def status(self) -> dict[str, Any]:
        """Summary for diagnostics.  Contains counts only, never credentials."""
        pool = self.pool
        return {
            "slots": len(pool),
            "active": pool.active_count,
            "min_credentials": self._min,
            "provisioning": self.provisioning,
            "unpersisted_changes": self.dirty,
            "persist_policy": self._persist_policy,
            "background_tasks": self._supervisor.pending,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deprecate(self, slot_index: int) -> bool:
        """Empty one slot.  No persistence, no provisioning.

        Returns:
            ``True`` if the slot was active and is now empty.
        """
        changed = self.pool.deprecate(slot_index)
        if changed:
            self._mutations += 1
            logger.info("slot_deprecated", slot=slot_index, active=self.pool.active_count)
        return changed

    def report_exhausted(self, slot_index: int, token: Optional[str] = None) -> None:
        """Deprecate a slot whose credential the upstream rejected as exhausted.

        Applies the persistence policy on top of :meth:`deprecate`.  When
        ``token`` is given the slot is only emptied if it still holds that
        credential; a slot refilled since the caller's snapshot is left alone.
        """
        if token is not None:
            pool = self.pool
            if slot_index >= len(pool) or pool[slot_index] != Active(token):
                logger.debug("stale_exhaustion_report", slot=slot_index)
                return
        if self.deprecate(slot_index) and self._persist_policy == "always":
            self._supervisor.spawn(self._persist_quietly(), name="persist-pool")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist(self) -> None:
        """Write the whole pool to the store.

        Raises:
            StorageError: If the write fails, including a conflict that
                outlived every retry.
        """
        async with self._persist_lock:
            pool = self.pool
            snapshot = pool.to_json()
            mutations = self._mutations
            attempts = self._conflict_retries + 1
            for attempt in range(1, attempts + 1):
                try:
                    await self._store.set(self._storage_key, snapshot)
                    break
                except StorageConflictError:
                    if attempt >= attempts:
                        raise
                    logger.warning(
                        "pool_persist_conflict_retry",
                        attempt=attempt,
                        storage_key=self._storage_key,
                    )
            self._persisted_mutations = mutations
            logger.info("pool_persisted", slots=len(pool), active=pool.active_count)

    async def _persist_quietly(self) -> bool:
        try:
            await self.persist()
        except StorageError as exc:
            self._persist_pending = True
            logger.error(
                "pool_persist_failed",
                storage_key=self._storage_key,
                error=str(exc),
                conflict=isinstance(exc, StorageConflictError),
            )
            return False
        self._persist_pending = False
        return True

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision_if_needed(self) -> Optional[asyncio.Task[Any]]:
        """Start a provisioning round if the pool is below minimum and unlocked.

        Never suspends.  Must be called from a running event loop.

        Returns:
            The background task running the round, or ``None`` if no round
            was started (pool healthy, not yet loaded, or a live round is
            already outstanding).
        """
        if self._pool is None:
            return None
        if self._pool.active_count >= self._min:
            return None
        generation = self._lock.try_acquire()
        if generation is None:
            logger.debug("provisioning_already_running")
            return None
        logger.info(
            "provisioning_started",
            active=self._pool.active_count,
            minimum=self._min,
        )
        return self._supervisor.spawn(
            self._provision_round(generation), name=f"provision-round-{generation}"
        )

    async def _acquire_credential(self) -> str:
        try:
            token = await asyncio.wait_for(
                self._provisioner.acquire(), timeout=self._provisioning_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProvisioningError(
                f"Provisioner timed out after {self._provisioning_timeout}s"
            ) from exc
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"{exc.__class__.__name__}: {exc}") from exc
        if not isinstance(token, str) or not token.strip():
            raise ProvisioningError("Provisioner returned an empty credential")
        return token.strip()

    async def _provision_round(self, generation: int) -> None:
        try:
            try:
                token = await self._acquire_credential()
            except ProvisioningError as exc:
                logger.warning("provisioning_failed", error=str(exc))
                return

            pool = self.pool
            if token in pool:
                logger.warning("provisioned_duplicate_credential")
                return
            index = pool.place(token)
            self._mutations += 1
            active = pool.active_count
            logger.info("credential_added", slot=index, active=active, minimum=self._min)

            if active >= self._min or self._persist_pending:
                await self._persist_quietly()
            if active < self._min:
                self._supervisor.spawn(self._delayed_round(), name="provision-follow-up")
        finally:
            self._lock.release(generation)

    async def _delayed_round(self) -> None:
        await asyncio.sleep(self._retry_delay)
        self.provision_if_needed()

    async def aclose(self, grace: float = 0.0) -> None:
        """Stop background work, letting it run up to ``grace`` seconds first."""
        await self._supervisor.aclose(grace)

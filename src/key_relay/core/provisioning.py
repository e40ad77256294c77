"""Provisioner contract, its adapters, and the provisioning lock.

The Provisioner is a black box that mints one new upstream credential per
call.  It is slow (tens of seconds to minutes) and unreliable, so the pool
manager bounds each call with a timeout and allows at most one call at a time
through :class:`ProvisioningLock`.

Adapters
--------
- :class:`CommandProvisioner` runs an external program and reads the
  credential from its standard output.  This is how a browser-automation
  signup script written in any language is plugged in.
- :func:`load_provisioner_factory` imports a ``module:attribute`` callable
  that returns any object satisfying :class:`Provisioner`.
- :class:`UnconfiguredProvisioner` fails every call so that a deployment
  without a provisioner still serves traffic with its persisted pool.
"""

from __future__ import annotations

import asyncio
import importlib
import shlex
import time
from typing import Callable, Optional, Protocol, runtime_checkable

import structlog

from key_relay.config.settings import Settings
from key_relay.core.exceptions import ProvisioningError

logger = structlog.get_logger(__name__)


@runtime_checkable
class Provisioner(Protocol):
    """Anything that can mint one new upstream credential."""

    async def acquire(self) -> str:
        """Return a freshly minted credential or raise."""
        ...


# ---------------------------------------------------------------------------
# Provisioning lock
# ---------------------------------------------------------------------------


class ProvisioningLock:
    """Single-holder lock with an expiry after which it may be stolen.

    ``try_acquire`` and ``release`` never suspend, so the check-then-set is
    atomic with respect to other asyncio tasks.  Each successful acquire
    returns a fresh generation number; ``release`` only clears the lock when
    called with the current generation, so an attempt whose lock was stolen
    as stale cannot release the lock of the attempt that replaced it.

    Args:
        timeout: Seconds after which a held lock counts as stale.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._generation = 0
        self._held = False
        self._started_at = 0.0

    @property
    def held(self) -> bool:
        return self._held

    def is_stale(self) -> bool:
        """Return ``True`` if the lock is held and older than the timeout."""
        return self._held and self._clock() - self._started_at > self._timeout

    def try_acquire(self) -> Optional[int]:
        """Take the lock if free or stale.

        Returns:
            The new generation number, or ``None`` if another live attempt
            holds the lock.
        """
        if self._held and not self.is_stale():
            return None
        if self._held:
            logger.warning(
                "provisioning_lock_stolen",
                held_for=round(self._clock() - self._started_at, 1),
                timeout=self._timeout,
            )
        self._generation += 1
        self._held = True
        self._started_at = self._clock()
        return self._generation

    def release(self, generation: int) -> bool:
        """Release the lock if ``generation`` still owns it.

        Returns:
            ``True`` if the lock was released by this call.
        """
        if not self._held or generation != self._generation:
            return False
        self._held = False
        return True


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class CommandProvisioner:
    """Mint credentials by running an external command.

    The command is executed without a shell.  Its last non-empty line on
    standard output is taken as the credential; anything printed before that
    (progress messages) is ignored.

    Args:
        command: Command line, split with :func:`shlex.split`.
    """

    def __init__(self, command: str) -> None:
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("Provisioner command is empty")

    async def acquire(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProvisioningError(f"Cannot start provisioner command: {exc}") from exc

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timed out or shutting down: do not leave the child running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise ProvisioningError(
                f"Provisioner command exited with {proc.returncode}: {stderr_text[-500:]}"
            )

        lines = [
            line.strip()
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if not lines:
            raise ProvisioningError("Provisioner command printed no credential")
        return lines[-1]


class UnconfiguredProvisioner:
    """Placeholder used when no provisioner is configured."""

    async def acquire(self) -> str:
        raise ProvisioningError(
            "No provisioner configured; set PROVISIONER_COMMAND or PROVISIONER_FACTORY"
        )


def load_provisioner_factory(path: str) -> Provisioner:
    """Import ``module:attribute`` and call it to obtain a provisioner.

    Args:
        path: Dotted module path and attribute name separated by a colon,
            e.g. ``"my_signup.provisioner:build"``.

    Returns:
        The object returned by the factory.

    Raises:
        ValueError: If ``path`` is malformed or the result does not provide
            an ``acquire`` coroutine method.
        ImportError: If the module cannot be imported.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Provisioner factory must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    provisioner = factory()
    if not isinstance(provisioner, Provisioner):
        raise ValueError(f"{path} did not return an object with an acquire() method")
    return provisioner


def build_provisioner(settings: Settings) -> Provisioner:
    """Return the provisioner selected by ``settings``.

    ``provisioner_factory`` wins over ``provisioner_command``; with neither
    set an :class:`UnconfiguredProvisioner` is returned.
    """
    if settings.provisioner_factory:
        return load_provisioner_factory(settings.provisioner_factory)
    if settings.provisioner_command:
        return CommandProvisioner(settings.provisioner_command)
    logger.warning("provisioner_unconfigured")
    return UnconfiguredProvisioner()

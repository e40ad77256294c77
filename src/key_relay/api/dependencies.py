"""FastAPI dependency injection providers.

The dispatcher (and through it the pool manager) is built once in the
application lifespan and stored on ``app.state``; route handlers resolve it
through :func:`get_dispatcher` so tests can swap in their own instance.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from key_relay.core.pool_manager import PoolManager
from key_relay.proxy.dispatcher import RequestDispatcher


def get_dispatcher(request: Request) -> RequestDispatcher:
    """Return the application's request dispatcher.

    Raises:
        HTTPException: 503 if the lifespan has not finished building it.
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay is starting up",
        )
    return dispatcher


def get_pool_manager(request: Request) -> PoolManager:
    """Return the pool manager behind the application's dispatcher."""
    return get_dispatcher(request).manager

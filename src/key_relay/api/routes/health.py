"""Health and pool status route handlers.

``GET /health``
    Liveness check with no I/O.  Always ``{"status": "ok"}``.

``GET /api/pool``
    Pool diagnostics: slot and active counts, the configured minimum,
    whether a provisioning round is running and whether the in-memory pool
    has changes the store has not seen.  Never includes credentials.

These endpoints are diagnostic: they must never raise HTTP 5xx errors once
the relay has started.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from key_relay.api.dependencies import get_pool_manager
from key_relay.core.pool_manager import PoolManager

router = APIRouter(tags=["system"])


@router.get("/health")
async def health() -> JSONResponse:
    """Return a minimal process-level liveness status."""
    return JSONResponse({"status": "ok"})


@router.get("/api/pool")
async def pool_status(
    manager: Annotated[PoolManager, Depends(get_pool_manager)],
) -> JSONResponse:
    """Return pool counters.

    ``status`` is ``"ok"`` when the active count meets the minimum,
    ``"degraded"`` when some credentials are active but fewer than the
    minimum, and ``"empty"`` when requests are currently being refused.
    """
    if not manager.initialized:
        return JSONResponse({"status": "loading"})
    summary = manager.status()
    if summary["active"] == 0:
        overall = "empty"
    elif summary["active"] < summary["min_credentials"]:
        overall = "degraded"
    else:
        overall = "ok"
    return JSONResponse({"status": overall, **summary})

"""FastAPI application for the key relay.

``create_app()`` assembles the HTTP surface; ``lifespan()`` owns the relay
components (upstream client, content store, pool manager, dispatcher) for
the lifetime of the process.

Run with::

    uvicorn key_relay.api.main:app
    python -m key_relay          # host and port from the settings
"""

from __future__ import annotations

import time
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response

from key_relay.config.settings import Settings, get_settings
from key_relay.core.background import TaskSupervisor
from key_relay.core.logging_config import configure_logging, request_id_var
from key_relay.core.pool_manager import PoolManager
from key_relay.core.provisioning import build_provisioner
from key_relay.proxy.dispatcher import RequestDispatcher
from key_relay.storage import build_store

configure_logging("INFO")

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def _open_relay(settings: Settings, stack: AsyncExitStack) -> RequestDispatcher:
    """Build the dispatcher and register every teardown on ``stack``.

    Closers are pushed as soon as each resource exists, so a failure part
    way through (an unreadable pool, typically) still releases what was
    already opened.
    """
    client = httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout))
    stack.push_async_callback(client.aclose)

    store = build_store(settings)
    stack.push_async_callback(store.aclose)

    manager = PoolManager.from_settings(
        settings, store, build_provisioner(settings), supervisor=TaskSupervisor()
    )
    stack.push_async_callback(manager.aclose, settings.shutdown_grace)

    await manager.initialize()
    return RequestDispatcher.from_settings(settings, manager, client)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Serve with the relay built from settings, then release it.

    An app created with an explicit dispatcher keeps it and nothing is built.
    Startup fails with :class:`~key_relay.core.exceptions.StorageError` when
    the persisted pool cannot be read.
    """
    if getattr(application.state, "dispatcher", None) is not None:
        yield
        return

    settings = get_settings()
    async with AsyncExitStack() as stack:
        try:
            dispatcher = await _open_relay(settings, stack)
            application.state.dispatcher = dispatcher
            manager = dispatcher.manager
            logger.info(
                "application_startup",
                app_name=settings.app_name,
                upstream=settings.upstream_base_url,
                store_backend=settings.store_backend,
                active=manager.active_count(),
                minimum=settings.min_credentials,
            )
            manager.provision_if_needed()
            yield
        finally:
            application.state.dispatcher = None
    logger.info("application_shutdown")


async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Tag the request with an ID, then log its outcome and latency.

    The ID is bound into the structlog context for every line logged while
    relaying (failover attempts included) and echoed back in the
    ``X-Request-ID`` response header.
    """
    request_id = uuid.uuid4().hex
    request_id_var.set(request_id)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed")
        raise

    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    log = logger.info if response.status_code < 400 else logger.warning
    log("request_complete", status_code=response.status_code, elapsed_ms=duration_ms)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app(dispatcher: Optional[RequestDispatcher] = None) -> FastAPI:
    """Return a configured relay application.

    Args:
        dispatcher: Serve with this dispatcher instead of building one in the
            lifespan.  Tests pass one wired to a mock upstream.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    from key_relay.api.routes import health, proxy  # noqa: PLC0415

    application = FastAPI(
        title=settings.app_name,
        description="Reverse proxy over a self-replenishing pool of upstream API keys.",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
        redirect_slashes=False,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.state.dispatcher = dispatcher
    application.middleware("http")(log_requests)

    # Order matters: the relay route matches every path.
    application.include_router(health.router)
    application.include_router(proxy.build_router(settings.proxy_methods))
    return application


app = create_app()

"""Catch-all relay route.

Every request whose method is listed in ``Settings.proxy_methods`` is
forwarded to ``upstream_base_url`` with its path, query and body unchanged
and the auth header replaced by a pooled credential.  Upstream responses are
streamed back; hop-by-hop headers are stripped in both directions.
"""

from __future__ import annotations

from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from key_relay.api.dependencies import get_dispatcher
from key_relay.config.settings import Settings, get_settings
from key_relay.proxy.dispatcher import RequestDispatcher, filter_response_headers


def upstream_url(base_url: str, request: Request) -> str:
    """Join the upstream base URL with the inbound path and raw query string."""
    url = base_url.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _has_body(request: Request) -> bool:
    length = request.headers.get("content-length")
    if length is not None:
        return length.strip() not in ("", "0")
    return "transfer-encoding" in request.headers


def to_client_response(upstream: httpx.Response) -> Response:
    """Convert an upstream (or synthesized) httpx response for the caller.

    Responses whose body is already in memory are returned in one piece;
    open upstream streams are relayed chunk by chunk without decoding and
    closed once the caller has received them.
    """
    headers = filter_response_headers(upstream.headers)
    if upstream.is_stream_consumed:
        # ``content`` has been decoded, so the upstream encoding no longer applies.
        headers = [
            (name, value) for name, value in headers if name.lower() != "content-encoding"
        ]
        response: Response = Response(
            content=upstream.content, status_code=upstream.status_code
        )
    else:
        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
    response.raw_headers.extend(
        (name.encode("latin-1"), value.encode("latin-1")) for name, value in headers
    )
    return response


async def relay(
    request: Request,
    dispatcher: Annotated[RequestDispatcher, Depends(get_dispatcher)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Response:
    """Relay the inbound request through the credential pool."""
    upstream = await dispatcher.handle_request(
        request.method,
        upstream_url(settings.upstream_base_url, request),
        request.headers.items(),
        request.stream() if _has_body(request) else None,
    )
    return to_client_response(upstream)


def build_router(methods: list[str]) -> APIRouter:
    """Return a router sending ``methods`` on any path to :func:`relay`."""
    router = APIRouter(tags=["relay"])
    router.add_api_route(
        "/{path:path}",
        relay,
        methods=[method.upper() for method in methods],
        include_in_schema=False,
    )
    return router

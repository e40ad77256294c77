"""Failover dispatch of one inbound request across the credential pool.

For each inbound request the dispatcher walks the active slots in stored
order, sending the request upstream with that slot's credential until one
attempt produces a final answer:

- transport failure (connect error, timeout, ...): logged, credential kept,
  next slot;
- the configured exhaustion status (402 by default): slot deprecated through
  the pool manager, response discarded, next slot;
- any other status, errors included: returned to the caller unchanged, after
  opportunistically triggering provisioning.

Attempts for a single request are strictly sequential; the inbound body is
replayed through a :class:`~key_relay.proxy.body.BroadcastBody` sized to the
number of active slots.  When no slot is active, or every attempt failed, the
caller receives a synthesized ``503`` instead.
"""

from __future__ import annotations

from typing import AsyncIterator, Iterable, Optional, Union

import httpx
import structlog

from key_relay.config.settings import Settings
from key_relay.core.exceptions import CredentialExhaustedError, UpstreamTransportError
from key_relay.core.pool_manager import PoolManager
from key_relay.proxy.body import BodyBranch, BroadcastBody

logger = structlog.get_logger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}

InboundBody = Union[bytes, AsyncIterator[bytes], None]


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """Return upstream response headers minus hop-by-hop and length headers."""
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in _DROPPED_RESPONSE_HEADERS
    ]


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class RequestDispatcher:
    """Relay requests upstream, failing over between pooled credentials.

    Args:
        manager: Pool manager supplying credentials and receiving outcomes.
        client: HTTP client used for upstream calls.
        exhausted_status_code: Upstream status meaning "credential exhausted".
        auth_header_name: Header overwritten with the credential.
        auth_scheme: Prefix placed before the credential; empty for none.
    """

    def __init__(
        self,
        manager: PoolManager,
        client: httpx.AsyncClient,
        *,
        exhausted_status_code: int = 402,
        auth_header_name: str = "Authorization",
        auth_scheme: str = "Bearer",
    ) -> None:
        self.manager = manager
        self._client = client
        self._exhausted_status = exhausted_status_code
        self._auth_header = auth_header_name
        self._auth_scheme = auth_scheme

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        manager: PoolManager,
        client: httpx.AsyncClient,
    ) -> RequestDispatcher:
        return cls(
            manager,
            client,
            exhausted_status_code=settings.exhausted_status_code,
            auth_header_name=settings.auth_header_name,
            auth_scheme=settings.auth_scheme,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _auth_value(self, token: str) -> str:
        return f"{self._auth_scheme} {token}" if self._auth_scheme else token

    def build_headers(self, inbound: Iterable[tuple[str, str]], token: str) -> httpx.Headers:
        """Copy inbound headers for one attempt and set the credential.

        Hop-by-hop headers, ``Host`` and ``Content-Length`` are dropped; the
        client recomputes them for the upstream connection.  Any inbound
        value of the auth header is replaced.
        """
        headers = httpx.Headers(
            [(name, value) for name, value in inbound if name.lower() not in _DROPPED_REQUEST_HEADERS]
        )
        headers[self._auth_header] = self._auth_value(token)
        return headers

    @staticmethod
    def unavailable(exc: CredentialExhaustedError) -> httpx.Response:
        """Synthesize the ``503`` answer for a request no credential could serve."""
        return httpx.Response(
            503,
            json={"detail": str(exc), "reason": exc.reason},
        )

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        content: Optional[BodyBranch],
        slot_index: int,
    ) -> httpx.Response:
        request = self._client.build_request(method, url, headers=headers, content=content)
        try:
            return await self._client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise UpstreamTransportError(
                f"{exc.__class__.__name__}: {exc}", slot_index=slot_index
            ) from exc

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_request(
        self,
        method: str,
        target_url: str,
        headers: Iterable[tuple[str, str]],
        body: InboundBody = None,
    ) -> httpx.Response:
        """Relay one request and return the response for the caller.

        The returned response is open in streaming mode when it came from
        upstream; the caller must close it (``await response.aclose()``) once
        the body has been forwarded.

        Args:
            method: HTTP method to use upstream.
            target_url: Full upstream URL including path and query.
            headers: Inbound header pairs.
            body: Inbound body as bytes, an async byte stream, or ``None``.

        Returns:
            The first non-exhaustion upstream response, or a ``503`` response
            when no credential could serve the request.

        Raises:
            StorageError: If the pool has never been loaded and loading fails.
        """
        await self.manager.initialize()
        inbound = list(headers)
        try:
            return await self._dispatch(method, target_url, inbound, body)
        except CredentialExhaustedError as exc:
            logger.warning("request_unserved", reason=exc.reason)
            return self.unavailable(exc)

    async def _dispatch(
        self,
        method: str,
        target_url: str,
        headers: list[tuple[str, str]],
        body: InboundBody,
    ) -> httpx.Response:
        slots = self.manager.active_slots()
        if not slots:
            self.manager.provision_if_needed()
            raise CredentialExhaustedError(CredentialExhaustedError.NO_CREDENTIALS)

        has_body = body is not None
        if isinstance(body, bytes):
            body = _single_chunk(body) if body else None
            has_body = body is not None
        replay = BroadcastBody(body, readers=len(slots))

        try:
            for attempt, (slot_index, token) in enumerate(slots, start=1):
                branch = replay.branch()
                try:
                    response = await self._attempt(
                        method,
                        target_url,
                        self.build_headers(headers, token),
                        branch if has_body else None,
                        slot_index,
                    )
                except UpstreamTransportError as exc:
                    logger.warning(
                        "upstream_transport_error",
                        slot=slot_index,
                        attempt=attempt,
                        of=len(slots),
                        error=str(exc),
                    )
                    continue
                finally:
                    branch.close()

                if response.status_code == self._exhausted_status:
                    await response.aclose()
                    logger.warning(
                        "credential_exhausted",
                        slot=slot_index,
                        attempt=attempt,
                        of=len(slots),
                    )
                    self.manager.report_exhausted(slot_index, token)
                    continue

                logger.debug(
                    "upstream_answered",
                    slot=slot_index,
                    attempt=attempt,
                    status_code=response.status_code,
                )
                self.manager.provision_if_needed()
                return response
        finally:
            replay.discard()

        self.manager.provision_if_needed()
        raise CredentialExhaustedError(CredentialExhaustedError.ALL_DEPLETED)

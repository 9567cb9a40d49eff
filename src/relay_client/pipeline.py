"""Per-request pipeline: dispatch, transcode, relay, filter cookies.

One ``launch`` call handles one intercepted request from start to finish:

1. Allow-listed GETs are tried directly once; a 200 ends the request.
2. Non-http(s) targets go to the transport untouched.
3. Everything else is encoded onto the relay header channel, sent to the
   current relay node, decoded, and its cookies filtered.

Attempts are strictly sequential; the only retry is direct -> relay.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import RelayConfig
from .cookie_policy import request_cookie, response_cookies
from .cookies import CookieJar, CookieRecord
from .dispatch import DispatchOutcome, classify, should_try_direct
from .endpoints import EndpointRegistry
from .errors import ErrorCode, RequestCancelled, map_transport_error
from .observability.logging import relay_context
from .observability.metrics import DIRECT_FALLBACKS_TOTAL, RELAY_REQUESTS_TOTAL
from .transcoder import (
    CompatibilityLatch,
    ResponseDescriptor,
    decode_response,
    encode_request,
)
from .urlx import del_hash

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = frozenset({'GET', 'HEAD'})


@dataclass
class ProxyRequest:
    """An intercepted request, as the page issued it.

    Attributes:
        method: HTTP method.
        url: Absolute target URL.
        headers: Request headers (mapping, pairs, or httpx.Headers).
        credentials: 'omit', 'same-origin' or 'include'; None means the
            configured default.
        mode: Fetch mode ('cors', 'navigate', 'no-cors', ...).
        destination: Resource type ('document', 'image', ...), may be ''.
        referrer: Referrer URL as the page sent it, possibly proxied.
        body: Request body bytes.
        body_used: True once the body has been consumed.
        signal: Optional cancellation signal.
    """
    method: str
    url: str
    headers: Any = field(default_factory=dict)
    credentials: str | None = None
    mode: str = 'cors'
    destination: str = ''
    referrer: str | None = None
    body: bytes | None = None
    body_used: bool = False
    signal: asyncio.Event | None = None

    def take_body(self) -> bytes | None:
        """Consume the body. Later calls return None."""
        if self.body_used:
            return None
        self.body_used = True
        return self.body or None


@dataclass
class LaunchResult:
    """Outcome of one pipeline run.

    ``response`` is the raw transport response (from the target for
    DIRECT/RELAY_OTHER, from the relay for RELAY_HTTP). ``descriptor`` is
    what the page should see; ``cookies`` are safe for the caller's store.
    """
    outcome: DispatchOutcome
    response: httpx.Response
    descriptor: ResponseDescriptor
    cookies: list[CookieRecord] = field(default_factory=list)


class RelayPipeline:
    """Runs intercepted requests through the relay protocol."""

    def __init__(
        self,
        config: RelayConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        registry: EndpointRegistry | None = None,
        latch: CompatibilityLatch | None = None,
        cookie_jar: CookieJar | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or EndpointRegistry(config)
        self.latch = latch or CompatibilityLatch()
        self.cookie_jar = cookie_jar
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Return the shared httpx client, creating it lazily."""
        if self._client is None or self._client.is_closed:
            # No pipeline-level timeout: cancellation is the caller's call.
            self._client = httpx.AsyncClient(timeout=None, follow_redirects=False)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this pipeline created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RelayPipeline:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── Transport ─────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Any,
        body: bytes | None,
        signal: asyncio.Event | None,
    ) -> httpx.Response:
        """Send one request, abandoning it if ``signal`` fires."""
        client = self._get_client()
        request = client.build_request(method, url, headers=headers, content=body)
        if signal is None:
            return await client.send(request)
        if signal.is_set():
            raise RequestCancelled(f'Request cancelled before sending: {url}')

        send_task = asyncio.ensure_future(client.send(request))
        cancel_task = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait(
                {send_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not send_task.done():
                send_task.cancel()

        if send_task.done() and not send_task.cancelled():
            return send_task.result()
        await asyncio.gather(send_task, return_exceptions=True)
        raise RequestCancelled(f'Request cancelled: {url}')

    async def _send_checked(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._send(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, url) from exc

    # ── Pipeline ──────────────────────────────────────────────────

    async def launch(
        self,
        request: ProxyRequest,
        target_url: str | None = None,
        client_url: str | None = None,
    ) -> LaunchResult:
        """Run ``request`` through dispatch and, if needed, the relay.

        Args:
            request: The intercepted request.
            target_url: Where the request is really going (defaults to
                ``request.url``).
            client_url: URL of the page that issued the request (defaults
                to the target).

        Raises:
            RelayTransportError: If the relay (or pass-through) call fails.
            RequestCancelled: If the request's signal fires.
        """
        target_url = target_url or request.url
        client_url = client_url or target_url
        with relay_context(relay_node=self.registry.get_node(), target=del_hash(target_url)):
            return await self._dispatch(request, target_url, client_url)

    async def _dispatch(
        self,
        request: ProxyRequest,
        target_url: str,
        client_url: str,
    ) -> LaunchResult:
        method = request.method.upper()
        body = None if method in _BODYLESS_METHODS else request.take_body()

        if should_try_direct(method, target_url, self.config.direct_hosts):
            response = await self._try_direct(request, target_url)
            if response is not None:
                return self._passthrough(
                    DispatchOutcome.DIRECT, response, target_url, client_url,
                )

        outcome = classify(target_url)
        if outcome is DispatchOutcome.RELAY_OTHER:
            response = await self._send_checked(
                method, target_url,
                headers=request.headers, body=body, signal=request.signal,
            )
            return self._passthrough(outcome, response, target_url, client_url)

        return await self._relay(request, method, target_url, client_url, body)

    async def _try_direct(
        self,
        request: ProxyRequest,
        target_url: str,
    ) -> httpx.Response | None:
        """One unmodified GET; None means "fall back to the relay"."""
        try:
            response = await self._send(
                'GET', target_url,
                headers=request.headers, body=None, signal=request.signal,
            )
        except httpx.HTTPError as exc:
            logger.warning('Direct fetch failed for %s: %s', target_url, exc)
            DIRECT_FALLBACKS_TOTAL.labels(reason=ErrorCode.DIRECT_FETCH_ERROR.value).inc()
            return None

        if response.status_code == 200:
            return response
        logger.warning('Direct fetch for %s returned %d, using relay',
                       target_url, response.status_code)
        DIRECT_FALLBACKS_TOTAL.labels(reason=ErrorCode.DIRECT_FETCH_STATUS.value).inc()
        await response.aclose()
        return None

    def _passthrough(
        self,
        outcome: DispatchOutcome,
        response: httpx.Response,
        target_url: str,
        client_url: str,
    ) -> LaunchResult:
        """Wrap an untranscoded response; its cookies pass the same gate."""
        cookies = response_cookies(
            response.headers.get_list('set-cookie'), target_url, client_url,
            block_third_party=self.config.block_third_party_cookies,
        )
        RELAY_REQUESTS_TOTAL.labels(outcome=outcome.value).inc()
        return LaunchResult(
            outcome=outcome,
            response=response,
            descriptor=ResponseDescriptor(
                status=response.status_code,
                headers=response.headers,
            ),
            cookies=cookies,
        )

    async def _relay(
        self,
        request: ProxyRequest,
        method: str,
        target_url: str,
        client_url: str,
        body: bytes | None,
    ) -> LaunchResult:
        credentials = request.credentials or self.config.default_credentials
        cookie = request_cookie(target_url, client_url, credentials, self.cookie_jar)
        headers = encode_request(
            request, target_url, client_url,
            config=self.config,
            latch=self.latch,
            cookie=cookie,
        )

        endpoint = self.registry.resolve_http_endpoint()
        response = await self._send_checked(
            method, endpoint,
            headers=headers, body=body, signal=request.signal,
        )

        decoded = decode_response(
            response.headers,
            latch=self.latch,
            fallback_status=response.status_code,
        )
        cookies = response_cookies(
            decoded.cookie_strings, target_url, client_url,
            block_third_party=self.config.block_third_party_cookies,
        )

        RELAY_REQUESTS_TOTAL.labels(outcome=DispatchOutcome.RELAY_HTTP.value).inc()
        logger.debug('Relayed %s %s via %s -> %d',
                     method, target_url, endpoint, decoded.status)
        return LaunchResult(
            outcome=DispatchOutcome.RELAY_HTTP,
            response=response,
            descriptor=ResponseDescriptor(status=decoded.status, headers=decoded.headers),
            cookies=cookies,
        )

"""Local forward-proxy front end for the relay pipeline.

Pages are served as ``<proxy_origin><url_prefix><absolute-url>``; every
request under the prefix is run through RelayPipeline and answered with
the tunneled response. The proxy keeps the cookie jar for the tunneled
sites, so browser cookies (which belong to the proxy origin) are never
forwarded.

Routes:
    GET    /healthz           liveness and current node
    GET    /metrics           Prometheus exposition
    GET    /__relay/node      current node and configured nodes
    PUT    /__relay/node      switch node
    DELETE /__relay/cookies   empty the proxy cookie jar
    *      <url_prefix>...    tunneled request
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from urllib.parse import urljoin

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import RelayConfig
from .cookies import CookieJar
from .errors import ErrorCode, InvalidTargetURL, RelayError
from .observability.logging import request_id_ctx
from .observability.metrics import metrics_text
from .observability.middleware import MetricsMiddleware, RequestIdMiddleware
from .pipeline import ProxyRequest, RelayPipeline
from .urlx import decode_url_abs, encode_url, hostname_of, is_http_proto, scheme_of

logger = logging.getLogger(__name__)

# Hop-by-hop headers (RFC 9110 7.6.1) are never forwarded.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
})

# Browser headers that describe the browser <-> proxy leg only.
STRIP_REQUEST_HEADERS: frozenset[str] = frozenset({
    'cookie',
    'host',
    'referer',
    'x-request-id',
})

# httpx has already decoded the body, and cookies go to the jar.
STRIP_RESPONSE_HEADERS: frozenset[str] = frozenset({
    'content-encoding',
    'content-length',
    'set-cookie',
})

PROXY_METHODS = ['GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']

# Some clients collapse '//' in paths: 'https:/site.test' -> 'https://site.test'.
_COLLAPSED_SCHEME_RE = re.compile(r'^([a-zA-Z][a-zA-Z0-9+.-]*):/(?!/)')


class NodeSwitch(BaseModel):
    node: str


def _forwarded_headers(headers) -> list[tuple[str, str]]:
    forwarded: list[tuple[str, str]] = []
    for key, value in headers.items():
        lower_key = key.lower()
        if lower_key in STRIP_REQUEST_HEADERS or lower_key in HOP_BY_HOP_HEADERS:
            continue
        if lower_key.startswith('sec-fetch-'):
            continue
        forwarded.append((lower_key, value))
    return forwarded


def _destination(sec_fetch_dest: str) -> str:
    # Sec-Fetch-Dest says 'empty' where Request.destination is ''.
    return '' if sec_fetch_dest == 'empty' else sec_fetch_dest


def _proxied_location(location: str, target_url: str, config: RelayConfig) -> str:
    # Redirects must land back under the proxy prefix.
    absolute = urljoin(target_url, location)
    if not is_http_proto(scheme_of(absolute)):
        return location
    return encode_url(absolute, config.proxy_origin, config.url_prefix)


def _response_headers(
    headers: httpx.Headers,
    target_url: str,
    config: RelayConfig,
) -> list[tuple[bytes, bytes]]:
    raw: list[tuple[bytes, bytes]] = []
    for key, value in headers.multi_items():
        if key in STRIP_RESPONSE_HEADERS or key in HOP_BY_HOP_HEADERS:
            continue
        if key == 'location':
            value = _proxied_location(value, target_url, config)
        raw.append((key.encode('latin-1'), value.encode('utf-8')))
    return raw


def _target_from_path(request: Request, url_prefix: str) -> str:
    # raw_path keeps the target's own percent-encoding intact.
    raw_path = request.scope.get('raw_path')
    path = raw_path.decode('latin-1') if raw_path else request.url.path
    target = path.split('?', 1)[0][len(url_prefix):]
    target = _COLLAPSED_SCHEME_RE.sub(r'\1://', target, count=1)
    if request.url.query:
        target = f'{target}?{request.url.query}'
    if not scheme_of(target) or not hostname_of(target):
        raise InvalidTargetURL(f'Not an absolute URL: {target!r}')
    return target


def _error_response(exc: RelayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={**exc.to_dict(), 'request_id': request_id_ctx.get()},
    )


def create_app(
    config: RelayConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    cookie_jar: CookieJar | None = None,
) -> FastAPI:
    """Create the forward-proxy FastAPI application.

    Raises:
        ValueError: If ``config`` is invalid.
    """
    errors = config.validate()
    if errors:
        raise ValueError('Invalid relay configuration: ' + '; '.join(errors))

    cookie_jar = cookie_jar if cookie_jar is not None else CookieJar()
    pipeline = RelayPipeline(config, http_client, cookie_jar=cookie_jar)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await pipeline.aclose()

    app = FastAPI(title='relay-client', lifespan=lifespan)
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.cookie_jar = cookie_jar

    app.add_middleware(MetricsMiddleware, url_prefix=config.url_prefix)
    app.add_middleware(RequestIdMiddleware)

    @app.get('/healthz')
    async def healthz():
        return {'status': 'ok', 'node': pipeline.registry.get_node()}

    @app.get('/metrics')
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    @app.get('/__relay/node')
    async def get_node():
        return {
            'node': pipeline.registry.get_node(),
            'nodes': pipeline.registry.nodes,
        }

    @app.put('/__relay/node')
    async def switch_node(payload: NodeSwitch):
        if not pipeline.registry.switch_node(payload.node):
            return JSONResponse(
                status_code=404,
                content={
                    'code': ErrorCode.UNKNOWN_NODE.value,
                    'message': f'Relay node {payload.node!r} is not configured',
                    'nodes': pipeline.registry.nodes,
                },
            )
        return {'node': pipeline.registry.get_node()}

    @app.delete('/__relay/cookies')
    async def clear_cookies():
        dropped = len(cookie_jar)
        cookie_jar.clear()
        logger.info('Cleared %d stored cookies', dropped)
        return {'cleared': dropped}

    @app.api_route(config.url_prefix + '{target:path}', methods=PROXY_METHODS)
    async def tunnel(request: Request) -> Response:
        try:
            target_url = _target_from_path(request, config.url_prefix)
        except InvalidTargetURL as exc:
            return _error_response(exc)

        referrer = request.headers.get('referer')
        client_url = target_url
        if referrer:
            decoded = decode_url_abs(referrer, config.proxy_origin, config.url_prefix)
            if decoded != referrer:
                client_url = decoded

        proxy_request = ProxyRequest(
            method=request.method,
            url=target_url,
            headers=_forwarded_headers(request.headers),
            credentials=config.default_credentials,
            mode=request.headers.get('sec-fetch-mode', 'cors'),
            destination=_destination(request.headers.get('sec-fetch-dest', '')),
            referrer=referrer,
            body=await request.body(),
        )

        try:
            result = await pipeline.launch(proxy_request, target_url, client_url)
        except RelayError as exc:
            logger.warning('Tunnel failed for %s: %s', target_url, exc)
            return _error_response(exc)

        if result.cookies:
            cookie_jar.apply(result.cookies)

        response = Response(
            content=result.response.content,
            status_code=result.descriptor.status,
        )
        response.raw_headers.extend(
            _response_headers(result.descriptor.headers, target_url, config),
        )
        return response

    return app

"""Request/response transcoding for the relay header channel.

Outbound, the identity of the original request (target URL, mode,
destination, origin, referrer, cookies, extra headers) is folded into
``--``-prefixed system fields plus allow-listed pass-through headers.

Inbound, the relay's headers are unfolded back into the original status
code, an ordered header multimap with duplicates restored, and the raw
Set-Cookie strings (kept apart because joining them with commas breaks
attribute parsing).
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from . import protocol
from .header_codec import group_positional, positional_name, unescape_name
from .urlx import decode_url_abs, del_hash, origin_of

if TYPE_CHECKING:
    from .config import RelayConfig
    from .pipeline import ProxyRequest

logger = logging.getLogger(__name__)


class CompatibilityLatch:
    """One-way flag: "the runtime may not expose wildcard headers".

    Starts set. The first response carrying the ``--t`` marker clears it
    and it never comes back.
    """

    def __init__(self) -> None:
        self._legacy = True
        self._lock = threading.Lock()

    @property
    def legacy(self) -> bool:
        return self._legacy

    def clear(self) -> bool:
        """Clear the flag. Returns True only for the call that cleared it."""
        if not self._legacy:
            return False
        with self._lock:
            if not self._legacy:
                return False
            self._legacy = False
        logger.info('Relay supports wildcard header exposure')
        return True


@dataclass
class ResponseDescriptor:
    """Status and headers of the tunneled (origin server) response."""
    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)


@dataclass
class DecodedResponse(ResponseDescriptor):
    """A ResponseDescriptor plus the raw Set-Cookie strings."""
    cookie_strings: list[str] = field(default_factory=list)


# ── Outbound ──────────────────────────────────────────────────────────


def encode_request(
    request: ProxyRequest,
    target_url: str,
    client_url: str,
    *,
    config: RelayConfig,
    latch: CompatibilityLatch,
    cookie: str | None = None,
) -> dict[str, str]:
    """Build the relay request headers for ``request``.

    Args:
        request: The intercepted request.
        target_url: Absolute URL the request is really for.
        client_url: URL of the page that issued it.
        config: Supplies the version tag and the proxy's own origin.
        latch: Adds ``--aceh`` while wildcard exposure is unconfirmed.
        cookie: Cookie header value already cleared by the cookie policy.
    """
    sys_hdr: dict[str, str] = {
        protocol.VER: config.version,
        protocol.URL: del_hash(target_url),
        protocol.MODE: request.mode,
        protocol.TYPE: request.destination or '',
    }
    ext_hdr: dict[str, str] = {}

    for name, value in httpx.Headers(request.headers, encoding='utf-8').items():
        if name in protocol.REQUEST_HEADER_ALLOWLIST:
            sys_hdr[name] = value
        else:
            ext_hdr[name] = value

    client_origin = origin_of(client_url)

    # An explicit empty value stops the relay from inventing one.
    sys_hdr[protocol.ORIGIN] = client_origin if 'origin' in sys_hdr else ''

    referrer = request.referrer
    if referrer:
        if referrer == config.proxy_root:
            # Referrer-Policy "origin" truncated it to our own root.
            sys_hdr[protocol.REFERER] = client_origin + '/'
        else:
            sys_hdr[protocol.REFERER] = decode_url_abs(
                referrer, config.proxy_origin, config.url_prefix,
            )

    if cookie:
        sys_hdr[protocol.COOKIE] = cookie

    if ext_hdr:
        sys_hdr[protocol.EXT] = json.dumps(ext_hdr, separators=(',', ':'))

    if latch.legacy:
        sys_hdr[protocol.ACEH] = '1'

    return sys_hdr


# ── Inbound ───────────────────────────────────────────────────────────


def strip_vary_sentinel(value: str) -> str | None:
    """Remove the ``--url`` token from a Vary value.

    Returns None when nothing else is left.
    """
    sentinel = protocol.VARY_URL_SENTINEL
    if value.strip().lower() == sentinel:
        return None
    tokens = value.split(',')
    kept = [t for t in tokens if t.strip().lower() != sentinel]
    if len(kept) == len(tokens):
        return value
    if not kept:
        return None
    return ','.join(kept).strip()


def _parse_status(value: str) -> int | None:
    try:
        status = int(value.strip())
    except ValueError:
        return None
    return status if 100 <= status <= 599 else None


def _header_pairs(raw_headers) -> list[tuple[str, str]]:
    if isinstance(raw_headers, httpx.Headers):
        pairs: Iterable[tuple[str, str]] = raw_headers.multi_items()
    elif hasattr(raw_headers, 'items'):
        pairs = raw_headers.items()
    else:
        pairs = raw_headers
    return [(name.lower(), value) for name, value in pairs]


def decode_response(
    raw_headers,
    *,
    latch: CompatibilityLatch,
    fallback_status: int,
) -> DecodedResponse:
    """Unfold relay response headers into the tunneled response.

    Fields are applied in arrival order: a plain field replaces earlier
    values of its name, a positional group is appended (ordered by N)
    where its first member arrives.

    Args:
        raw_headers: httpx.Headers, a mapping, or (name, value) pairs.
        latch: Cleared when the ``--t`` marker is present.
        fallback_status: Used when ``--s`` is missing or malformed.
    """
    pairs = _header_pairs(raw_headers)
    groups = group_positional(pairs)

    status: int | None = None
    cookie_strings: list[str] = []
    collected: list[tuple[str, str]] = []

    for name, value in pairs:
        parsed = positional_name(name)
        if parsed is not None:
            bare = parsed[1]
            values = groups.pop(bare, None)
            if values is None:
                continue  # group already emitted
            bare = unescape_name(bare)
            if bare == 'set-cookie':
                cookie_strings.extend(values)
            else:
                collected.extend((bare, v) for v in values)
            continue

        if name in protocol.RELAY_LEG_RESPONSE_HEADERS:
            continue
        if name == protocol.STATUS:
            status = _parse_status(value)
            if status is None:
                logger.warning('Malformed %s field %r, using relay status %d',
                               protocol.STATUS, value, fallback_status)
            continue
        if name == protocol.ACEH_MARKER:
            latch.clear()
            continue

        name = unescape_name(name)
        if name == 'vary':
            value = strip_vary_sentinel(value)
            if value is None:
                continue
        collected[:] = [pair for pair in collected if pair[0] != name]
        collected.append((name, value))

    return DecodedResponse(
        status=status if status is not None else fallback_status,
        headers=httpx.Headers(collected, encoding='utf-8'),
        cookie_strings=cookie_strings,
    )

"""URL helpers shared by dispatch, transcoding, and the HTTP front end."""

from __future__ import annotations

from urllib.parse import urlsplit

HTTP_SCHEMES = frozenset({'http', 'https'})

_DEFAULT_PORTS = {'http': 80, 'https': 443, 'ws': 80, 'wss': 443}


def del_hash(url: str) -> str:
    """Drop the fragment (everything from the first '#')."""
    pos = url.find('#')
    return url if pos == -1 else url[:pos]


def del_scheme(url: str) -> str:
    """Drop the leading 'scheme://'."""
    pos = url.find('://')
    return url if pos == -1 else url[pos + 3:]


def scheme_of(url: str) -> str:
    return urlsplit(url).scheme.lower()


def is_http_proto(scheme: str) -> bool:
    """True for 'http'/'https' (a trailing ':' is accepted)."""
    return scheme.rstrip(':').lower() in HTTP_SCHEMES


def hostname_of(url: str) -> str:
    return (urlsplit(url).hostname or '').lower()


def host_of(url: str) -> str:
    """Return host[:port], omitting the scheme's default port."""
    parts = urlsplit(url)
    hostname = (parts.hostname or '').lower()
    if ':' in hostname:
        hostname = f'[{hostname}]'
    try:
        port = parts.port
    except ValueError:
        port = None
    if port is None or port == _DEFAULT_PORTS.get(parts.scheme.lower()):
        return hostname
    return f'{hostname}:{port}'


def origin_of(url: str) -> str:
    """Return scheme://host[:port] for an absolute URL."""
    return f'{scheme_of(url)}://{host_of(url)}'


def decode_url_abs(url: str, proxy_origin: str, prefix: str) -> str:
    """Recover the target URL from a proxied URL.

    ``https://proxy.example/-----https://site.test/a`` becomes
    ``https://site.test/a``. URLs that are not proxied are returned as-is.
    """
    proxied = proxy_origin.rstrip('/') + prefix
    if url.startswith(proxied):
        return url[len(proxied):]
    return url


def encode_url(url: str, proxy_origin: str, prefix: str) -> str:
    return proxy_origin.rstrip('/') + prefix + url

"""Set-Cookie parsing and the caller-side cookie jar.

The relay core only *decides* which cookies are safe to expose; storing
them is the caller's job. CookieJar is the store used by the HTTP front
end: in-memory, per process, RFC 6265 domain/path/secure matching.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from urllib.parse import urlsplit

from .tld import is_public_suffix

logger = logging.getLogger(__name__)

# Attributes SimpleCookie understands; anything else (Partitioned,
# Priority, ...) would make it reject the whole line.
_KNOWN_ATTRS = frozenset({
    'expires', 'path', 'comment', 'domain', 'max-age',
    'secure', 'httponly', 'version', 'samesite',
})
_FLAG_ATTRS = frozenset({'secure', 'httponly'})

# Name under which the attributes are handed to SimpleCookie.
_ATTR_CARRIER = 'attrs'


@dataclass(frozen=True)
class CookieRecord:
    """One parsed Set-Cookie entry, bound to the URL it arrived on."""
    name: str
    value: str
    domain: str
    path: str
    http_only: bool = False
    secure: bool = False
    host_only: bool = True
    expires: float | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.name, self.domain, self.path)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires is None:
            return False
        return self.expires <= (now if now is not None else time.time())


def domain_match(host: str, cookie_domain: str) -> bool:
    host = host.lower()
    cookie_domain = cookie_domain.lstrip('.').lower()
    return host == cookie_domain or host.endswith('.' + cookie_domain)


def path_match(req_path: str, cookie_path: str) -> bool:
    if req_path == cookie_path:
        return True
    if not req_path.startswith(cookie_path):
        return False
    return cookie_path.endswith('/') or req_path[len(cookie_path)] == '/'


def default_path(url_path: str) -> str:
    """RFC 6265 5.1.4 default-path: the directory of the request path."""
    if not url_path.startswith('/') or url_path.count('/') == 1:
        return '/'
    return url_path[:url_path.rfind('/')]


def _known_attrs(attrs: list[str]) -> list[str]:
    kept = []
    for attr in attrs:
        name = attr.split('=', 1)[0].strip().lower()
        if name in _FLAG_ATTRS or (name in _KNOWN_ATTRS and '=' in attr):
            kept.append(attr.strip())
    return kept


def _parse_attrs(attrs: list[str]) -> dict[str, str]:
    """Read known attributes with SimpleCookie, one at a time.

    A malformed attribute is skipped on its own; a repeated one keeps its
    last value.
    """
    parsed: dict[str, str] = {}
    for attr in _known_attrs(attrs):
        cookie = SimpleCookie()
        try:
            cookie.load(f'{_ATTR_CARRIER}=0; {attr}')
        except CookieError:
            continue
        morsel = cookie.get(_ATTR_CARRIER)
        if morsel is None:
            continue
        parsed.update((key, value) for key, value in morsel.items() if value)
    return parsed


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _expiry(attrs: dict[str, str], now: float) -> float | None:
    max_age = attrs.get('max-age')
    if max_age:
        try:
            return now + int(max_age)
        except ValueError:
            pass
    expires = attrs.get('expires')
    if expires:
        try:
            return parsedate_to_datetime(expires).timestamp()
        except (TypeError, ValueError):
            return None
    return None


def _cookie_domain(domain_attr: str, host: str) -> tuple[str, bool] | None:
    """Resolve a Domain attribute to ``(domain, host_only)``, None to reject.

    RFC 6265 5.3 steps 5-6: a public-suffix Domain is only allowed when it
    is the host itself, and then binds host-only. IP hosts never widen.
    """
    if not domain_attr:
        return host, True
    if is_public_suffix(domain_attr):
        return (host, True) if domain_attr == host else None
    if _is_ip(host):
        return (host, True) if domain_attr == host else None
    if not domain_match(host, domain_attr):
        return None
    return domain_attr, False


def parse_cookie(header_value: str, url: str) -> CookieRecord | None:
    """Parse one Set-Cookie value received from ``url``.

    Name and value are split on the first '=' of the first segment, as
    browsers do, so values may hold spaces, quotes or JSON. Returns None
    for a nameless cookie or a Domain the URL's host may not set.
    """
    pair, *attrs = header_value.split(';')
    if '=' not in pair:
        return None
    name, value = (part.strip() for part in pair.split('=', 1))
    if not name:
        return None

    attr_map = _parse_attrs(attrs)

    parts = urlsplit(url)
    host = (parts.hostname or '').lower()

    domain_attr = attr_map.get('domain', '').strip().lstrip('.').lower()
    resolved = _cookie_domain(domain_attr, host)
    if resolved is None:
        logger.debug('Cookie %s rejected: domain %s vs host %s', name, domain_attr, host)
        return None
    domain, host_only = resolved

    path = attr_map.get('path')
    if not path or not path.startswith('/'):
        path = default_path(parts.path or '/')

    return CookieRecord(
        name=name,
        value=value,
        domain=domain,
        path=path,
        http_only=bool(attr_map.get('httponly')),
        secure=bool(attr_map.get('secure')),
        host_only=host_only,
        expires=_expiry(attr_map, time.time()),
    )


class CookieJar:
    """Thread-safe in-memory cookie store keyed by (name, domain, path)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cookies: dict[tuple[str, str, str], CookieRecord] = {}

    def __len__(self) -> int:
        return len(self._cookies)

    def apply(self, records) -> None:
        """Store records; an expired record deletes its stored counterpart."""
        with self._lock:
            for record in records:
                if record.is_expired():
                    self._cookies.pop(record.key, None)
                else:
                    self._cookies[record.key] = record

    def clear(self) -> None:
        with self._lock:
            self._cookies.clear()

    def matching(self, url: str) -> list[CookieRecord]:
        parts = urlsplit(url)
        host = (parts.hostname or '').lower()
        req_path = parts.path or '/'
        is_secure = parts.scheme.lower() in ('https', 'wss')
        now = time.time()

        with self._lock:
            records = list(self._cookies.values())

        matched = []
        for record in records:
            if record.is_expired(now):
                continue
            if record.host_only:
                if host != record.domain:
                    continue
            elif not domain_match(host, record.domain):
                continue
            if not path_match(req_path, record.path):
                continue
            if record.secure and not is_secure:
                continue
            matched.append(record)
        # Longer paths first (RFC 6265 5.4 step 2).
        matched.sort(key=lambda r: len(r.path), reverse=True)
        return matched

    def concat(self, url: str) -> str | None:
        """Build the Cookie header value for ``url``, or None if empty."""
        matched = self.matching(url)
        if not matched:
            return None
        return '; '.join(f'{r.name}={r.value}' for r in matched)

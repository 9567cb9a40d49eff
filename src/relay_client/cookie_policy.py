"""Cookie gate for tunneled requests.

The hosting runtime's own cookie rules only ever see the proxy origin, so
same-site decisions are made here by comparing registrable domains
(eTLD+1) of the target and the calling page.

"same-origin" credentials are approximated by eTLD+1 equality: two
subdomains of one registrable domain count as the same origin.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .cookies import CookieJar, CookieRecord, parse_cookie
from .observability.metrics import COOKIES_DROPPED_TOTAL
from .tld import get_tld
from .urlx import hostname_of

logger = logging.getLogger(__name__)


def request_cookie(
    target_url: str,
    client_url: str,
    credentials: str,
    jar: CookieJar | None,
) -> str | None:
    """Return the Cookie value to send with a tunneled request, if any."""
    if jar is None or credentials == 'omit':
        return None
    if credentials == 'same-origin':
        if get_tld(hostname_of(target_url)) != get_tld(hostname_of(client_url)):
            return None
    return jar.concat(target_url)


def response_cookies(
    cookie_strings: Iterable[str],
    response_url: str,
    client_url: str,
    *,
    block_third_party: bool = False,
) -> list[CookieRecord]:
    """Filter raw Set-Cookie strings down to what the page may see.

    Unparseable and HttpOnly entries are dropped one by one; with
    ``block_third_party`` every entry is dropped when the response and the
    page belong to different registrable domains.
    """
    cookie_strings = list(cookie_strings)
    if not cookie_strings:
        return []

    if block_third_party:
        response_tld = get_tld(hostname_of(response_url))
        client_tld = get_tld(hostname_of(client_url))
        if response_tld != client_tld:
            logger.debug('Dropping %d third-party cookies from %s',
                         len(cookie_strings), response_tld)
            COOKIES_DROPPED_TOTAL.labels(reason='third_party').inc(len(cookie_strings))
            return []

    records: list[CookieRecord] = []
    for raw in cookie_strings:
        record = parse_cookie(raw, response_url)
        if record is None:
            logger.debug('Dropping unparseable cookie from %s', response_url)
            COOKIES_DROPPED_TOTAL.labels(reason='parse_error').inc()
            continue
        if record.http_only:
            COOKIES_DROPPED_TOTAL.labels(reason='http_only').inc()
            continue
        records.append(record)
    return records

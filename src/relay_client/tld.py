"""Registrable-domain (eTLD+1) lookup.

Uses the public-suffix snapshot bundled with tldextract, so no network
fetch happens at runtime.
"""

from __future__ import annotations

from functools import lru_cache

import tldextract

_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


@lru_cache(maxsize=4096)
def get_tld(hostname: str) -> str:
    """Return the registrable domain for ``hostname``.

    ``www.example.co.uk`` -> ``example.co.uk``. IP addresses, single-label
    hosts and bare public suffixes have no registrable domain and are
    returned unchanged (lowercased).
    """
    hostname = hostname.strip().rstrip('.').lower()
    if not hostname:
        return ''
    parts = _extract(hostname)
    if parts.domain and parts.suffix:
        return f'{parts.domain}.{parts.suffix}'
    return hostname


@lru_cache(maxsize=1024)
def is_public_suffix(hostname: str) -> bool:
    """True when ``hostname`` is itself a public suffix (``com``, ``co.uk``)."""
    hostname = hostname.strip().rstrip('.').lower()
    if not hostname:
        return False
    parts = _extract(hostname)
    return bool(parts.suffix) and not parts.domain

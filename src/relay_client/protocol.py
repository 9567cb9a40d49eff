"""Relay header protocol vocabulary.

System fields carry protocol metadata on the same header channel as the
tunneled request/response headers. Every system name starts with the
``--`` marker, which no legitimate HTTP field name uses, so the two sets
never collide; the relay escapes any real header that does collide.
"""

from __future__ import annotations

import re

SYSTEM_PREFIX = '--'

# ── Request fields (client -> relay) ──────────────────────────────────
VER = '--ver'
URL = '--url'
MODE = '--mode'
TYPE = '--type'
ORIGIN = '--origin'
REFERER = '--referer'
COOKIE = '--cookie'
EXT = '--ext'
ACEH = '--aceh'

# ── Response fields (relay -> client) ─────────────────────────────────
STATUS = '--s'
ACEH_MARKER = '--t'

# Sentinel the relay adds to Vary so caches key on the tunneled URL.
VARY_URL_SENTINEL = URL

# Only describe the client <-> relay leg, never the tunneled response.
RELAY_LEG_RESPONSE_HEADERS = frozenset({
    'access-control-allow-origin',
    'access-control-expose-headers',
})

# N-name: the N-th (zero-based) occurrence of a repeated header.
POSITIONAL_RE = re.compile(r'^(\d+)-(.+)$')

# Request headers the relay accepts verbatim. Everything else travels in
# the --ext JSON blob.
REQUEST_HEADER_ALLOWLIST = frozenset({
    'accept',
    'accept-charset',
    'accept-datetime',
    'accept-encoding',
    'accept-language',
    'authorization',
    'cache-control',
    'chrome-proxy',
    'content-length',
    'content-type',
    'date',
    'if-match',
    'if-modified-since',
    'if-none-match',
    'if-range',
    'if-unmodified-since',
    'max-forwards',
    'origin',
    'pragma',
    'range',
    'te',
    'upgrade',
    'upgrade-insecure-requests',
    'user-agent',
    'x-requested-with',
})

HTTP_PATH = '/http'
WS_PATH = '/ws'
WS_URL_ARG = 'url__'
WS_VER_ARG = 'ver__'

"""Relay client configuration.

RelayConfig is the single configuration object accepted by RelayPipeline and
create_app(). It is a plain dataclass (not env-coupled) so tests can inject
config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from . import __version__

CREDENTIAL_MODES = frozenset({'omit', 'same-origin', 'include'})

DEFAULT_PROXY_ORIGIN = 'http://localhost:8080'
DEFAULT_URL_PREFIX = '/-----'
DEFAULT_CREDENTIALS = 'same-origin'


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {'1', 'true', 'yes', 'on'}


def _parse_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(',') if item.strip()]


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Static configuration for the relay client.

    The node map and direct-host allow-list are loaded once and never
    mutated; the currently selected node lives in EndpointRegistry.
    """

    # ── Relay nodes ────────────────────────────────────────────────
    node_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    """Immutable mapping of logical node id -> relay hostname."""

    default_node: str = ''
    """Node selected at startup. Must be a key of node_map."""

    version: str = __version__
    """Protocol/client version tag sent as --ver and ver__."""

    # ── Dispatch ───────────────────────────────────────────────────
    direct_hosts: frozenset[str] = frozenset()
    """Hosts (host[:port]) that GET requests may try to reach directly."""

    # ── Page identity ──────────────────────────────────────────────
    proxy_origin: str = DEFAULT_PROXY_ORIGIN
    """Origin the proxy itself is served from."""

    url_prefix: str = DEFAULT_URL_PREFIX
    """Path prefix in front of an absolute target URL on proxy_origin."""

    # ── Cookies ────────────────────────────────────────────────────
    block_third_party_cookies: bool = False
    """Drop inbound cookies whose eTLD+1 differs from the caller's."""

    default_credentials: str = DEFAULT_CREDENTIALS
    """Credentials mode assumed when a request does not state one."""

    @property
    def default_host(self) -> str | None:
        return self.node_map.get(self.default_node)

    @property
    def proxy_root(self) -> str:
        """The proxy's origin root, as sent by a referrer-policy "origin"."""
        return self.proxy_origin.rstrip('/') + '/'

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.node_map:
            errors.append('node_map must contain at least one node')
        elif self.default_node not in self.node_map:
            errors.append(
                f'default_node {self.default_node!r} is not in node_map: '
                f'{sorted(self.node_map)}'
            )
        if not self.proxy_origin.startswith(('http://', 'https://')):
            errors.append(f'proxy_origin must be http(s): {self.proxy_origin!r}')
        if not self.url_prefix.startswith('/'):
            errors.append(f'url_prefix must start with "/": {self.url_prefix!r}')
        if self.default_credentials not in CREDENTIAL_MODES:
            errors.append(
                f'default_credentials must be one of {sorted(CREDENTIAL_MODES)}, '
                f'got {self.default_credentials!r}'
            )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> RelayConfig:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct RelayConfig directly.
        """
        if env is None:
            env = dict(os.environ)

        node_map: dict[str, str] = {}
        for pair in _parse_csv(env.get('RELAY_NODE_MAP', '')):
            if '=' in pair:
                node, host = pair.split('=', 1)
                node_map[node.strip()] = host.strip()

        default_node = env.get('RELAY_DEFAULT_NODE', '').strip()
        if not default_node and node_map:
            default_node = next(iter(node_map))

        return cls(
            node_map=MappingProxyType(node_map),
            default_node=default_node,
            version=env.get('RELAY_VERSION', __version__),
            direct_hosts=frozenset(_parse_csv(env.get('RELAY_DIRECT_HOSTS', ''))),
            proxy_origin=env.get('RELAY_PROXY_ORIGIN', DEFAULT_PROXY_ORIGIN),
            url_prefix=env.get('RELAY_URL_PREFIX', DEFAULT_URL_PREFIX),
            block_third_party_cookies=_parse_bool(
                env.get('RELAY_BLOCK_THIRD_PARTY_COOKIES', ''),
            ),
            default_credentials=env.get(
                'RELAY_DEFAULT_CREDENTIALS', DEFAULT_CREDENTIALS,
            ).strip().lower(),
        )

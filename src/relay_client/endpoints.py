"""Relay node registry and endpoint resolution.

EndpointRegistry owns the "which relay node am I using" state. Host
selection goes through a NodeSelector so a load-aware policy can replace
the current one (always the selected node's host) without call-site
changes.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlencode

from . import protocol
from .config import RelayConfig
from .observability.metrics import NODE_SWITCHES_TOTAL
from .urlx import del_hash, del_scheme, scheme_of

logger = logging.getLogger(__name__)

_WS_SCHEMES = {'ws': 'http', 'wss': 'https'}


@dataclass(frozen=True)
class EndpointState:
    """Currently selected relay node and its hostname."""
    node: str
    host: str


class NodeSelector(ABC):
    """Picks the relay host a request is sent to."""

    @abstractmethod
    def select(self, state: EndpointState) -> str:
        ...


class CurrentNodeSelector(NodeSelector):
    """Always the host of the currently selected node."""

    def select(self, state: EndpointState) -> str:
        return state.host


class EndpointRegistry:
    """Maps logical relay nodes to hostnames and tracks the current one."""

    def __init__(
        self,
        config: RelayConfig,
        selector: NodeSelector | None = None,
    ):
        """Initialize from static configuration.

        Raises:
            ValueError: If the default node is not configured.
        """
        host = config.default_host
        if not host:
            raise ValueError(
                f'Default relay node {config.default_node!r} is not in '
                f'node map: {sorted(config.node_map)}'
            )
        self._node_map = dict(config.node_map)
        self._version = config.version
        self._selector = selector or CurrentNodeSelector()
        self._lock = threading.Lock()
        self._state = EndpointState(node=config.default_node, host=host)

    @property
    def state(self) -> EndpointState:
        return self._state

    @property
    def nodes(self) -> list[str]:
        return list(self._node_map)

    def get_node(self) -> str:
        return self._state.node

    def switch_node(self, node: str) -> bool:
        """Select ``node``. Unknown nodes leave the state untouched."""
        host = self._node_map.get(node)
        if not host:
            logger.warning('Refusing switch to unknown relay node %r', node)
            NODE_SWITCHES_TOTAL.labels(result='unknown').inc()
            return False
        with self._lock:
            previous = self._state
            self._state = EndpointState(node=node, host=host)
        logger.info('Relay node switched %s -> %s (%s)', previous.node, node, host)
        NODE_SWITCHES_TOTAL.labels(result='ok').inc()
        return True

    def _host(self) -> str:
        return self._selector.select(self._state)

    def resolve_http_endpoint(self) -> str:
        return f'https://{self._host()}{protocol.HTTP_PATH}'

    def resolve_ws_endpoint(
        self,
        target_url: str,
        extra_args: dict[str, str] | None = None,
    ) -> str | None:
        """Relay URL tunneling the WebSocket ``target_url``.

        Returns None for anything but ws:/wss: targets.
        """
        scheme = _WS_SCHEMES.get(scheme_of(target_url))
        if scheme is None:
            return None

        args = dict(extra_args or {})
        args[protocol.WS_URL_ARG] = f'{scheme}://{del_scheme(del_hash(target_url))}'
        args[protocol.WS_VER_ARG] = self._version
        return f'wss://{self._host()}{protocol.WS_PATH}?{urlencode(args)}'

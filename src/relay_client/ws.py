"""WebSocket tunneling through the current relay node."""

from __future__ import annotations

import logging

import websockets

from .endpoints import EndpointRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_SIZE = 1 * 1024 * 1024  # 1MB


async def open_tunnel(
    registry: EndpointRegistry,
    target_url: str,
    extra_args: dict[str, str] | None = None,
    *,
    max_size: int = DEFAULT_MAX_MESSAGE_SIZE,
):
    """Open a relay WebSocket that carries ``target_url``.

    Returns the connected ``websockets`` client connection.

    Raises:
        ValueError: If ``target_url`` is not a ws:/wss: URL.
    """
    relay_url = registry.resolve_ws_endpoint(target_url, extra_args)
    if relay_url is None:
        raise ValueError(f'Not a WebSocket URL: {target_url!r}')
    logger.debug('Opening WebSocket tunnel %s via %s', target_url, relay_url)
    return await websockets.connect(relay_url, max_size=max_size)

"""Structured error codes for relay transport and node selection.

Provides stable, machine-readable error codes for transport failures,
cancellation, and configuration mistakes. The HTTP front end maps them to
status codes; the pipeline never surfaces direct-fetch failures.
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorCode(str, Enum):
    """Relay client error codes."""

    # Direct fetch (logged and counted, never raised)
    DIRECT_FETCH_ERROR = 'direct_fetch_error'
    DIRECT_FETCH_STATUS = 'direct_fetch_status'

    # Relay transport
    RELAY_UNREACHABLE = 'relay_unreachable'
    RELAY_TIMEOUT = 'relay_timeout'
    RELAY_TRANSPORT_ERROR = 'relay_transport_error'

    # Request lifecycle
    REQUEST_CANCELLED = 'request_cancelled'
    INVALID_TARGET_URL = 'invalid_target_url'

    # Node selection
    UNKNOWN_NODE = 'unknown_node'


class RelayError(Exception):
    """Base class for errors raised by the relay client."""

    code: ErrorCode = ErrorCode.RELAY_TRANSPORT_ERROR
    http_status: int = 502

    def __init__(self, message: str, *, code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dict for API responses."""
        return {
            'code': self.code.value,
            'message': self.message,
        }


class RelayTransportError(RelayError):
    """Raised when a relay (or pass-through) transport call fails."""

    def __init__(self, message: str, *, code: ErrorCode, url: str):
        super().__init__(message, code=code)
        self.url = url
        self.http_status = 504 if code == ErrorCode.RELAY_TIMEOUT else 502


class RequestCancelled(RelayError):
    """Raised when the caller's cancellation signal fires mid-request."""

    code = ErrorCode.REQUEST_CANCELLED
    http_status = 499


class InvalidTargetURL(RelayError):
    """Raised when a proxied path does not carry an absolute target URL."""

    code = ErrorCode.INVALID_TARGET_URL
    http_status = 400


def map_transport_error(error: Exception, url: str) -> RelayTransportError:
    """Map an httpx exception to a RelayTransportError."""
    if isinstance(error, httpx.TimeoutException):
        return RelayTransportError(
            f'Relay timed out: {url}',
            code=ErrorCode.RELAY_TIMEOUT,
            url=url,
        )
    if isinstance(error, httpx.ConnectError):
        return RelayTransportError(
            f'Relay unreachable: {url}',
            code=ErrorCode.RELAY_UNREACHABLE,
            url=url,
        )
    return RelayTransportError(
        f'Relay transport error: {type(error).__name__}: {error}',
        code=ErrorCode.RELAY_TRANSPORT_ERROR,
        url=url,
    )

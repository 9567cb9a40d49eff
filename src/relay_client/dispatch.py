"""Route selection for an intercepted request.

Every request ends up on exactly one of three paths:

  DIRECT       allow-listed GET fetched as-is, answered 200
  RELAY_HTTP   http(s) tunneled through the current relay node
  RELAY_OTHER  non-http(s) scheme handed to the transport unmodified

DIRECT is only known after the direct attempt succeeds, so the decision
is split: ``should_try_direct`` gates the attempt, ``classify`` picks the
path for everything else.
"""

from __future__ import annotations

from collections.abc import Collection
from enum import Enum

from .urlx import host_of, is_http_proto, scheme_of


class DispatchOutcome(str, Enum):
    DIRECT = 'direct'
    RELAY_HTTP = 'relay_http'
    RELAY_OTHER = 'relay_other'


def should_try_direct(method: str, url: str, direct_hosts: Collection[str]) -> bool:
    return method.upper() == 'GET' and host_of(url) in direct_hosts


def classify(url: str) -> DispatchOutcome:
    """Path for a request that was not (or could not be) served directly."""
    if is_http_proto(scheme_of(url)):
        return DispatchOutcome.RELAY_HTTP
    return DispatchOutcome.RELAY_OTHER

"""Log rendering for the relay client.

Relay modules log through plain ``logging.getLogger(__name__)``. After
``configure_logging`` the root handler renders those records with
structlog, merging in the request id of the HTTP front end and whatever
relay context (node, target) the pipeline has bound for the request.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar

import structlog

# Set per HTTP request by RequestIdMiddleware.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_configured = False


def _add_request_id(logger, method_name: str, event_dict: dict) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


def relay_context(**fields):
    """Bind relay fields to every log record emitted inside the block.

    Usage::

        with relay_context(relay_node="hk", target=url):
            logger.info("relaying")
    """
    return structlog.contextvars.bound_contextvars(**fields)


def build_formatter(json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    """Formatter that renders stdlib records with relay context merged in."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            _add_request_id,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Install the structlog formatter on the root logger. Idempotent.

    Args:
        level: Log level name. Defaults to LOG_LEVEL or INFO.
        json_output: JSON lines when True, console output when False.
            Defaults to LOG_FORMAT == "json" (the default format).
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(json_output))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

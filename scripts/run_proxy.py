#!/usr/bin/env python3
"""Run the relay forward proxy with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse
import dataclasses

import uvicorn

from relay_client.app import create_app
from relay_client.config import RelayConfig
from relay_client.observability import configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--node", default=None, help="Override RELAY_DEFAULT_NODE")
    parser.add_argument(
        "--block-third-party-cookies",
        action=argparse.BooleanOptionalAction,
        default=None,
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()

    config = RelayConfig.from_env()
    overrides = {}
    if args.node:
        overrides["default_node"] = args.node
    if args.block_third_party_cookies is not None:
        overrides["block_third_party_cookies"] = args.block_third_party_cookies
    if overrides:
        config = dataclasses.replace(config, **overrides)

    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

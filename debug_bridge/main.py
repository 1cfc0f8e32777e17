"""
Process entry point: ``debug-bridge relay`` / ``python -m debug_bridge relay``.

Flags override the DEBUG_BRIDGE_* environment; the relay runs until SIGINT.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from .config import RelayConfig
from .relay import RelayServer

logger = logging.getLogger("debug_bridge")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="debug-bridge", description="Debug bridge session relay")
    sub = parser.add_subparsers(dest="command")

    relay = sub.add_parser("relay", help="Run the session relay")
    relay.add_argument("--host", help="Bind host (DEBUG_BRIDGE_HOST, default localhost)")
    relay.add_argument("--port", type=int, help="Bind port (DEBUG_BRIDGE_PORT, default 4000)")
    relay.add_argument("--path", help="WebSocket path (DEBUG_BRIDGE_PATH, default /debug)")
    relay.add_argument("--session", help="Only accept this sessionId (DEBUG_BRIDGE_SESSION)")
    relay.add_argument("--token", help="Shared token clients must present (DEBUG_BRIDGE_TOKEN)")
    relay.add_argument("--rate-limit", type=float, help="Frames per second per client; 0 disables")
    relay.add_argument("--rate-burst", type=int, help="Token bucket burst size")
    return parser


def relay_config_from_args(args: argparse.Namespace) -> RelayConfig:
    cfg = RelayConfig.from_env()
    if args.host:
        cfg.host = args.host
    if args.port is not None:
        cfg.port = int(args.port)
    if args.path:
        cfg.path = RelayConfig.normalize_path(args.path)
    if args.session:
        cfg.session = args.session
    if args.token:
        cfg.token = args.token
    if args.rate_limit is not None:
        cfg.rate_limit = max(0.0, float(args.rate_limit))
    if args.rate_burst is not None:
        cfg.rate_burst = max(1, int(args.rate_burst))
    return cfg


def main(argv: list[str] | None = None) -> int:
    level_name = (os.environ.get("DEBUG_BRIDGE_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command != "relay":
        parser.print_help()
        return 2

    server = RelayServer(relay_config_from_args(args))
    try:
        server.start()
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())

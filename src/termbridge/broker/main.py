from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from types import FrameType
from typing import Optional

import uvicorn

from ..kernel.settings import DEFAULT_PORT
from ..paths import BrokerPaths, default_broker_paths
from ..util.fs import atomic_write_text, read_int
from ..util.obslog import setup_root_json_logging
from .app import create_app
from .manager import SessionManager

logger = logging.getLogger(__name__)


class BrokerServer(uvicorn.Server):
    """uvicorn server that hangs up every PTY before it starts shutting down."""

    def __init__(self, config: uvicorn.Config, manager: SessionManager) -> None:
        super().__init__(config)
        self._manager = manager

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        try:
            name = signal.Signals(sig).name
        except ValueError:
            name = str(sig)
        logger.info("received %s, shutting down", name)
        self._manager.stop_all()
        super().handle_exit(sig, frame)


def _env_port() -> int:
    raw = str(os.environ.get("TERMBRIDGE_PORT") or "").strip()
    if not raw:
        return DEFAULT_PORT
    try:
        port = int(raw)
    except ValueError:
        logger.warning("ignoring TERMBRIDGE_PORT=%r", raw)
        return DEFAULT_PORT
    return port if 0 < port < 65536 else DEFAULT_PORT


def _default_log_level() -> str:
    env = str(os.environ.get("TERMBRIDGE_ENV") or "production").strip().lower()
    return "DEBUG" if env == "development" else "INFO"


def _write_pid(paths: BrokerPaths) -> None:
    atomic_write_text(paths.pid_path, str(os.getpid()) + "\n")


def _remove_pid(paths: BrokerPaths) -> None:
    if read_int(paths.pid_path) != os.getpid():
        return
    try:
        paths.pid_path.unlink()
    except OSError:
        pass


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="termbridge-broker", description="termbridge PTY session broker")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: $TERMBRIDGE_PORT or 3001)")
    parser.add_argument("--shell", default=None, help="Shell used when a client does not ask for one")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO, DEBUG when TERMBRIDGE_ENV=development)")
    parser.add_argument("--ws-ping-interval", type=float, default=20.0, help="Seconds between WebSocket pings")
    parser.add_argument("--ws-ping-timeout", type=float, default=20.0, help="Seconds to wait for a pong before dropping a client")
    args = parser.parse_args(argv)

    level = str(args.log_level or _default_log_level()).upper()
    setup_root_json_logging(component="broker", level=level)

    port = int(args.port) if args.port else _env_port()
    manager = SessionManager(shell=args.shell)
    config = uvicorn.Config(
        create_app(manager),
        host=str(args.host),
        port=port,
        log_config=None,
        log_level=level.lower(),
        ws_ping_interval=float(args.ws_ping_interval),
        ws_ping_timeout=float(args.ws_ping_timeout),
    )
    server = BrokerServer(config, manager)

    paths = default_broker_paths()
    _write_pid(paths)
    logger.info("termbridge broker running on port %s", port, extra={"port": port, "pid": os.getpid()})
    logger.info("platform: %s", sys.platform)
    logger.info("default shell: %s", manager.default_shell)
    logger.info("health check: http://%s:%s/health", args.host, port)
    try:
        server.run()
    finally:
        manager.stop_all()
        _remove_pid(paths)
    logger.info("broker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

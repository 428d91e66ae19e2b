from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

import yaml  # type: ignore
from pydantic import ValidationError

from . import __version__
from .kernel.settings import Settings, load_settings
from .paths import default_broker_paths
from .supervisor import Supervisor, fetch_health, locate_runtime, verify_runtime
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _notify(message: str) -> None:
    print(message, file=sys.stderr)


def _supervisor(settings: Settings) -> Supervisor:
    paths = default_broker_paths()
    return Supervisor(settings, notify=_notify, log_path=paths.broker_dir / "broker.log", paths=paths)


def cmd_broker(args: argparse.Namespace) -> int:
    from .broker.main import main as broker_main

    return broker_main(list(args.broker_args))


def cmd_start(_: argparse.Namespace) -> int:
    settings = load_settings().settings
    sup = _supervisor(settings)
    if sup.ensure_running():
        print(f"termbridge: running at {settings.server_url}")
        return 0
    print("termbridge: failed to start")
    return 1


def cmd_stop(_: argparse.Namespace) -> int:
    settings = load_settings().settings
    if _supervisor(settings).stop():
        print("termbridge: shutdown requested")
    else:
        print("termbridge: not running")
    return 0


def cmd_status(_: argparse.Namespace) -> int:
    settings = load_settings().settings
    snapshot = fetch_health(settings.server_url, timeout=settings.health_timeout_s)
    if snapshot is None:
        print(f"termbridge: not answering at {settings.server_url}")
        return 1
    _print_json(snapshot)
    return 0


async def _attach(settings: Settings, cwd: str) -> int:
    from .client.controller import TerminalController
    from .client.tty import RawTtyEmulator

    emulator = RawTtyEmulator()
    controller = TerminalController(emulator, settings, cwd=cwd)
    emulator.on_size_change(controller.request_size)
    runner = None
    try:
        if not await controller.open():
            return 1
        # The broker keeps the socket open after the shell exits.
        runner = asyncio.create_task(controller.run())
        await controller.wait_done()
    finally:
        await controller.close()
        if runner is not None:
            await asyncio.gather(runner, return_exceptions=True)
    return controller.exit_code or 0


def cmd_open(args: argparse.Namespace) -> int:
    settings = load_settings().settings
    if not sys.stdin.isatty():
        print("termbridge: open needs an interactive terminal", file=sys.stderr)
        return 2
    if settings.auto_start_server and not _supervisor(settings).ensure_running():
        return 1
    cwd = os.path.abspath(os.path.expanduser(args.cwd or os.getcwd()))
    return asyncio.run(_attach(settings, cwd))


def cmd_config(args: argparse.Namespace) -> int:
    store = load_settings()
    if args.action == "show":
        _print_json(store.settings.model_dump())
        return 0

    try:
        if args.action == "set-port":
            store.set_port(int(args.port))
        elif args.action == "set":
            key = str(args.key or "").strip()
            if key not in Settings.model_fields:
                print(f"termbridge: unknown setting: {key}", file=sys.stderr)
                return 2
            store.update(**{key: yaml.safe_load(args.value)})
        else:
            return 2
    except (ValidationError, ValueError) as e:
        print(f"termbridge: invalid value: {e}", file=sys.stderr)
        return 2
    _print_json(store.settings.model_dump())
    return 0


def cmd_runtime(args: argparse.Namespace) -> int:
    settings = load_settings().settings
    choice = locate_runtime(settings.runtime_path)
    if args.action == "detect":
        _print_json({"path": choice.path, "source": choice.source})
        return 0

    path = args.path or choice.path
    ok, output = verify_runtime(path)
    _print_json({"path": path, "ok": ok, "output": output})
    return 0 if ok else 1


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="termbridge", description="Local terminal sessions over a WebSocket broker")
    p.add_argument("--log-level", default="WARNING", help="Log level for this command (default: WARNING)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_broker = sub.add_parser("broker", help="Run the broker in the foreground (other options go to termbridge-broker)")
    p_broker.set_defaults(func=cmd_broker)

    p_start = sub.add_parser("start", help="Start the broker in the background unless one is answering")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Ask the running broker to shut down")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Print the broker health snapshot")
    p_status.set_defaults(func=cmd_status)

    p_open = sub.add_parser("open", help="Attach this terminal to a new broker session")
    p_open.add_argument("--cwd", default="", help="Working directory for the shell (default: current directory)")
    p_open.set_defaults(func=cmd_open)

    p_config = sub.add_parser("config", help="Show or change settings")
    config_sub = p_config.add_subparsers(dest="action", required=True)
    p_config_show = config_sub.add_parser("show", help="Print current settings")
    p_config_show.set_defaults(func=cmd_config)
    p_config_set = config_sub.add_parser("set", help="Set one setting (value parsed as YAML)")
    p_config_set.add_argument("key", help="Setting name")
    p_config_set.add_argument("value", help="New value")
    p_config_set.set_defaults(func=cmd_config)
    p_config_port = config_sub.add_parser("set-port", help="Change the broker port (also rewrites server_url)")
    p_config_port.add_argument("port", type=int, help="Port number")
    p_config_port.set_defaults(func=cmd_config)

    p_runtime = sub.add_parser("runtime", help="Inspect the interpreter used to launch the broker")
    runtime_sub = p_runtime.add_subparsers(dest="action", required=True)
    p_runtime_detect = runtime_sub.add_parser("detect", help="Show which interpreter would be used")
    p_runtime_detect.set_defaults(func=cmd_runtime)
    p_runtime_test = runtime_sub.add_parser("test", help="Run an interpreter with --version")
    p_runtime_test.add_argument("path", nargs="?", default="", help="Interpreter path (default: detected one)")
    p_runtime_test.set_defaults(func=cmd_runtime)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    if args.cmd == "broker":
        args.broker_args = extra
    else:
        if extra:
            parser.error("unrecognized arguments: " + " ".join(extra))
        setup_root_json_logging(component="cli", level=args.log_level)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def termbridge_home() -> Path:
    env = os.environ.get("TERMBRIDGE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".termbridge").resolve()


def ensure_home() -> Path:
    home = termbridge_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


@dataclass
class BrokerPaths:
    home: Path

    @property
    def broker_dir(self) -> Path:
        return self.home / "broker"

    @property
    def pid_path(self) -> Path:
        return self.broker_dir / "broker.pid"


def default_broker_paths() -> BrokerPaths:
    return BrokerPaths(home=ensure_home())

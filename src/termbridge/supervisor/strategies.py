from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import IO, Dict, List, Optional, Union

BROKER_MODULE = "termbridge.broker"
BROKER_SCRIPT = "termbridge-broker"

Stream = Union[int, IO[bytes], None]


class LaunchStrategy:
    """One way of starting the broker. Subclasses only decide the argv."""

    name = "base"

    def command(self, runtime: str, install_dir: Path) -> List[str]:
        raise NotImplementedError

    def spawn(
        self,
        runtime: str,
        install_dir: Path,
        env: Dict[str, str],
        *,
        stdout: Stream = subprocess.PIPE,
        stderr: Stream = subprocess.PIPE,
    ) -> subprocess.Popen:
        return subprocess.Popen(
            self.command(runtime, install_dir),
            cwd=str(install_dir),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            start_new_session=True,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class DirectRuntimeStrategy(LaunchStrategy):
    """`<runtime> -m termbridge.broker` from the install root."""

    name = "direct"

    def command(self, runtime: str, install_dir: Path) -> List[str]:
        return [runtime, "-m", BROKER_MODULE]


class ConsoleScriptStrategy(LaunchStrategy):
    """The `termbridge-broker` console script installed alongside the package."""

    name = "console-script"

    def __init__(self, script: str = BROKER_SCRIPT) -> None:
        self.script = script

    def command(self, runtime: str, install_dir: Path) -> List[str]:
        found: Optional[str] = shutil.which(self.script)
        if found is None:
            raise FileNotFoundError(f"{self.script} not found on PATH")
        return [found]


def default_strategies() -> List[LaunchStrategy]:
    return [DirectRuntimeStrategy(), ConsoleScriptStrategy()]

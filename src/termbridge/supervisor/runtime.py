"""Finding a Python interpreter to run the broker with."""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..kernel.settings import AUTO_RUNTIME

logger = logging.getLogger(__name__)

WELL_KNOWN_RUNTIMES = [
    "/usr/bin/python3",
    "/usr/local/bin/python3",
    "/opt/homebrew/bin/python3",  # Homebrew on Apple Silicon
    "/opt/homebrew/opt/python/bin/python3",
    "C:\\Program Files\\Python313\\python.exe",
    "C:\\Program Files\\Python312\\python.exe",
    "C:\\Program Files\\Python311\\python.exe",
    "C:\\Program Files (x86)\\Python311-32\\python.exe",
]

# (versions dir under $HOME, interpreter path inside one version)
VERSION_MANAGER_DIRS = [
    (Path(".pyenv") / "versions", Path("bin") / "python"),
    (Path(".asdf") / "installs" / "python", Path("bin") / "python"),
]


@dataclass
class RuntimeChoice:
    path: str
    source: str  # override | current | well-known | version-manager | fallback


def _version_manager_runtimes(home: Path) -> List[str]:
    found: List[str] = []
    for versions_dir, rel in VERSION_MANAGER_DIRS:
        base = home / versions_dir
        if not base.is_dir():
            continue
        try:
            versions = sorted(p.name for p in base.iterdir())
        except OSError as e:
            logger.debug("could not read %s: %s", base, e)
            continue
        found.extend(str(base / v / rel) for v in versions)
    return found


def runtime_candidates(home: Optional[Path] = None) -> List[Tuple[str, str]]:
    """Ordered (path, source) pairs to probe when the runtime is `auto`."""
    out: List[Tuple[str, str]] = []
    if sys.executable:
        out.append((sys.executable, "current"))
    out.extend((p, "well-known") for p in WELL_KNOWN_RUNTIMES)
    try:
        base = home or Path.home()
    except RuntimeError:
        base = None
    if base is not None:
        out.extend((p, "version-manager") for p in _version_manager_runtimes(base))
    return out


def locate_runtime(
    override: str = AUTO_RUNTIME,
    *,
    candidates: Optional[List[Tuple[str, str]]] = None,
    exists: Callable[[str], bool] = os.path.exists,
) -> RuntimeChoice:
    """First existing interpreter wins.

    A configured override that does not exist is reported and ignored. When
    nothing exists at all, the interpreter running this code is returned as
    an explicit last resort.
    """
    wanted = str(override or "").strip()
    if wanted and wanted != AUTO_RUNTIME:
        if exists(wanted):
            return RuntimeChoice(path=wanted, source="override")
        logger.warning("configured runtime not found: %s; using auto-detection", wanted)

    for path, source in candidates if candidates is not None else runtime_candidates():
        try:
            if exists(path):
                return RuntimeChoice(path=path, source=source)
        except OSError:
            continue

    logger.warning("no runtime found among candidates; falling back to %s", sys.executable, extra={"runtime": sys.executable})
    return RuntimeChoice(path=sys.executable, source="fallback")


def verify_runtime(path: str, *, timeout: float = 10.0) -> Tuple[bool, str]:
    """Run `<path> --version`; ok when it exits 0 and reports a Python version."""
    try:
        res = subprocess.run([path, "--version"], capture_output=True, text=True, timeout=timeout, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        return False, str(e)
    output = (res.stdout or res.stderr or "").strip()
    return res.returncode == 0 and output.startswith("Python"), output

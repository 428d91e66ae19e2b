from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Iterable, Optional


class PtySession:
    """Placeholder used where POSIX PTYs (termios/fcntl) are unavailable."""

    def __init__(
        self,
        *,
        conn_id: str,
        command: Iterable[str],
        cwd: Path,
        env: Dict[str, str],
        cols: int = 80,
        rows: int = 24,
        on_output: Optional[Callable[..., None]] = None,
        on_exit: Optional[Callable[..., None]] = None,
    ) -> None:
        raise RuntimeError("pty sessions are not supported on this platform")

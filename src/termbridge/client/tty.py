from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
import termios
import tty
from typing import Any, BinaryIO, Callable, List, Optional

from .emulator import Emulator, InputData


class RawTtyEmulator(Emulator):
    """Uses the local controlling terminal as the emulator.

    Keystrokes are read in raw mode and forwarded untouched; the size follows
    the local window through SIGWINCH.
    """

    def __init__(self, *, stdin: Optional[Any] = None, stdout: Optional[BinaryIO] = None) -> None:
        size = shutil.get_terminal_size()
        super().__init__(cols=size.columns, rows=size.lines)
        self._in_fd = (stdin or sys.stdin).fileno()
        self._out = stdout or sys.stdout.buffer
        self._saved: Optional[List[Any]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._size_cb: Optional[Callable[[int, int], None]] = None

    def on_size_change(self, callback: Callable[[int, int], None]) -> None:
        self._size_cb = callback

    def focus(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._saved = termios.tcgetattr(self._in_fd)
        tty.setraw(self._in_fd)
        self._loop.add_reader(self._in_fd, self._on_readable)
        self._loop.add_signal_handler(signal.SIGWINCH, self._on_winch)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._in_fd, 4096)
        except OSError:
            return
        if not data:
            # stdin closed
            if self._loop is not None:
                self._loop.remove_reader(self._in_fd)
            return
        self.emit_data(data)

    def _on_winch(self) -> None:
        size = shutil.get_terminal_size()
        if self._size_cb is not None:
            self._size_cb(size.columns, size.lines)

    def write(self, data: InputData) -> None:
        raw = data.encode("utf-8") if isinstance(data, str) else data
        self._out.write(raw)
        self._out.flush()

    def dispose(self) -> None:
        if self._loop is not None:
            self._loop.remove_reader(self._in_fd)
            self._loop.remove_signal_handler(signal.SIGWINCH)
            self._loop = None
        if self._saved is not None:
            termios.tcsetattr(self._in_fd, termios.TCSADRAIN, self._saved)
            self._saved = None

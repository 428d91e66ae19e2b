from __future__ import annotations

import abc
from typing import Callable, Optional, Union

InputData = Union[str, bytes]


class Emulator(abc.ABC):
    """What the controller needs from a terminal emulator.

    Escape-sequence interpretation belongs to the concrete emulator; the
    controller only moves bytes in and out and keeps the size in sync.
    """

    def __init__(self, cols: int = 80, rows: int = 24) -> None:
        self.cols = int(cols)
        self.rows = int(rows)
        self._data_cb: Optional[Callable[[InputData], None]] = None

    def on_data(self, callback: Callable[[InputData], None]) -> None:
        """Register the keystroke/paste callback."""
        self._data_cb = callback

    def emit_data(self, data: InputData) -> None:
        if self._data_cb is not None and data:
            self._data_cb(data)

    @abc.abstractmethod
    def write(self, data: InputData) -> None: ...

    def clear(self) -> None:
        self.write("\x1b[2J\x1b[H")

    def resize(self, cols: int, rows: int) -> None:
        self.cols = int(cols)
        self.rows = int(rows)

    def focus(self) -> None:
        return None

    def dispose(self) -> None:
        return None

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..kernel.settings import Settings
from .emulator import Emulator, InputData

logger = logging.getLogger(__name__)

# Approximate monospace metrics relative to the font size.
CHAR_WIDTH_RATIO = 0.6
LINE_HEIGHT_RATIO = 1.2

Outbound = Union[str, bytes]
Connect = Callable[..., Awaitable[Any]]


def fit_dimensions(
    width_px: float,
    height_px: float,
    font_size: float,
    *,
    min_cols: int = 10,
    min_rows: int = 5,
) -> Tuple[int, int]:
    cols = math.floor(width_px / (font_size * CHAR_WIDTH_RATIO))
    rows = math.floor(height_px / (font_size * LINE_HEIGHT_RATIO))
    return max(min_cols, cols), max(min_rows, rows)


def initial_dimensions(width_px: float, height_px: float, font_size: float) -> Tuple[int, int]:
    return fit_dimensions(width_px, height_px, font_size, min_cols=80, min_rows=24)


class TerminalController:
    """One emulator bound to one broker connection.

    Input typed while the connection is not confirmed is dropped, never
    queued. Size changes are debounced; a burst collapses into at most one
    `terminal-resize`, and none at all when the size did not change.
    There is no reconnect: a new session means a new controller.
    """

    def __init__(
        self,
        emulator: Emulator,
        settings: Settings,
        *,
        cwd: Optional[str] = None,
        connect: Optional[Connect] = None,
    ) -> None:
        self.emulator = emulator
        self.settings = settings
        self.cwd = cwd or os.getcwd()
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._outbox: "asyncio.Queue[Optional[Outbound]]" = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None
        self._resize_handle: Optional[asyncio.TimerHandle] = None
        self._done = asyncio.Event()
        self._disposed = False
        self.connected = False
        self.exit_code: Optional[int] = None
        emulator.on_data(self.handle_input)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait_done(self) -> None:
        """Until the shell exits or the connection goes away."""
        await self._done.wait()

    async def open(self, viewport: Optional[Tuple[float, float]] = None) -> bool:
        if viewport is not None:
            self.emulator.resize(*initial_dimensions(viewport[0], viewport[1], self.settings.font_size))
        self.emulator.focus()
        self.emulator.write("Connecting to terminal server...\r\n")
        url = self.settings.ws_url
        try:
            self._ws = await self._connect(url, open_timeout=self.settings.connect_timeout_s, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("connect to %s failed: %s", url, e)
            self.emulator.clear()
            self.emulator.write(f"Failed to connect to terminal server at {self.settings.server_url}\r\n")
            self.emulator.write(f"Error: {e}\r\n\r\n")
            self._done.set()
            return False

        self.connected = True
        self.emulator.clear()
        self.emulator.write("Connected to terminal server. Starting shell...\r\n")
        self._sender = asyncio.create_task(self._send_loop())
        self._enqueue(
            json.dumps(
                {
                    "type": "create-terminal",
                    "shell": self.settings.shell,
                    "cols": self.emulator.cols,
                    "rows": self.emulator.rows,
                    "cwd": self.cwd,
                }
            )
        )
        if viewport is not None:
            self.handle_viewport(*viewport)
        return True

    async def run(self) -> None:
        """Receive events until the socket closes."""
        if self._ws is None:
            return
        reason = ""
        try:
            async for message in self._ws:
                self._on_message(message)
        except ConnectionClosed as e:
            reason = str(e)
        finally:
            self.connected = False
            self._enqueue(None)
        if not self._disposed:
            reason = reason or str(getattr(self._ws, "close_reason", "") or "") or "connection closed"
            self.emulator.write(f"\r\n\r\nDisconnected from server: {reason}\r\n")
        self._done.set()

    def _on_message(self, message: Union[str, bytes]) -> None:
        if isinstance(message, (bytes, bytearray)):
            self.emulator.write(bytes(message))
            return
        try:
            event = json.loads(message)
        except ValueError:
            logger.debug("ignoring non-JSON text frame")
            return
        if not isinstance(event, dict):
            return
        kind = event.get("type")
        if kind == "terminal-created":
            self.emulator.clear()
        elif kind == "terminal-exit":
            self.exit_code = int(event.get("exitCode") or 0)
            self.connected = False
            self.emulator.write(f"\r\n\r\nTerminal exited with code {event.get('exitCode')}\r\n")
            self._done.set()
        elif kind == "terminal-error":
            self.emulator.write(f"\r\nError: {event.get('error')}\r\n")
        else:
            logger.debug("ignoring event %r", kind)

    # outbound

    def _enqueue(self, item: Optional[Outbound]) -> None:
        self._outbox.put_nowait(item)

    async def _send_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            try:
                await self._ws.send(item)
            except ConnectionClosed:
                return

    def handle_input(self, data: InputData) -> None:
        if not self.connected or not data:
            return
        if isinstance(data, str):
            self._enqueue(json.dumps({"type": "terminal-input", "data": data}))
        else:
            self._enqueue(bytes(data))

    # sizing

    def handle_viewport(self, width_px: float, height_px: float) -> None:
        """Pixel size of the view changed."""
        font = self.settings.font_size
        self._schedule_resize(lambda: fit_dimensions(width_px, height_px, font))

    def request_size(self, cols: int, rows: int) -> None:
        """Emulators that measure in cells report here instead."""
        self._schedule_resize(lambda: (max(10, int(cols)), max(5, int(rows))))

    def _schedule_resize(self, compute: Callable[[], Tuple[int, int]]) -> None:
        if self._resize_handle is not None:
            self._resize_handle.cancel()
        loop = asyncio.get_running_loop()
        self._resize_handle = loop.call_later(self.settings.resize_debounce_s, self._apply_resize, compute)

    def _apply_resize(self, compute: Callable[[], Tuple[int, int]]) -> None:
        self._resize_handle = None
        cols, rows = compute()
        if (cols, rows) == (self.emulator.cols, self.emulator.rows):
            return
        self.emulator.resize(cols, rows)
        if self.connected:
            self._enqueue(json.dumps({"type": "terminal-resize", "cols": cols, "rows": rows}))

    async def close(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._resize_handle is not None:
            self._resize_handle.cancel()
            self._resize_handle = None
        self.connected = False
        self._enqueue(None)
        if self._sender is not None:
            await asyncio.gather(self._sender, return_exceptions=True)
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("close failed: %s", e)
        self.emulator.dispose()
        self._done.set()

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..contracts.v1 import (
    CreateTerminal,
    ErrorCode,
    ServerEvent,
    TerminalCreated,
    TerminalError,
    TerminalExit,
    TerminalOutput,
)
from ..kernel.settings import default_shell
from ..runners import pty as pty_runner

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_BYTES = 8_000_000


class SessionChannel:
    """Ordered outbound events for one connection.

    Only touched from the event loop thread. Output is bounded by pending
    bytes; control events are always accepted while the channel is open.
    A closed channel yields None to its consumer.
    """

    def __init__(self, conn_id: str, *, max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES) -> None:
        self.conn_id = conn_id
        self._queue: asyncio.Queue[Optional[ServerEvent]] = asyncio.Queue()
        self._max_pending_bytes = int(max_pending_bytes or 0)
        self._pending_bytes = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    def emit(self, event: ServerEvent) -> bool:
        if self._closed:
            return False
        if isinstance(event, TerminalOutput):
            n = len(event.data)
            if self._max_pending_bytes and self._pending_bytes + n > self._max_pending_bytes:
                return False
            self._pending_bytes += n
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self) -> Optional[ServerEvent]:
        event = await self._queue.get()
        if isinstance(event, TerminalOutput):
            self._pending_bytes -= len(event.data)
        return event


class SessionManager:
    """Owns every PTY session of the broker, keyed by connection id.

    Operations on one connection are serialized by a per-connection lock;
    different connections never wait on each other. The registry map itself
    is guarded by a re-entrant lock because `stop_all` runs from a signal
    handler on the loop thread.
    """

    def __init__(
        self,
        *,
        shell: Optional[str] = None,
        max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES,
        stop_timeout: float = 1.0,
    ) -> None:
        self.default_shell = shell or default_shell()
        self._max_pending_bytes = int(max_pending_bytes)
        self._stop_timeout = float(stop_timeout)
        self._lock = threading.RLock()
        self._sessions: Dict[str, pty_runner.PtySession] = {}
        self._channels: Dict[str, SessionChannel] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # connections

    def open_channel(self, conn_id: str) -> SessionChannel:
        self._loop = asyncio.get_running_loop()
        channel = SessionChannel(conn_id, max_pending_bytes=self._max_pending_bytes)
        with self._lock:
            self._channels[conn_id] = channel
            self._key_locks.setdefault(conn_id, asyncio.Lock())
        return channel

    async def close_channel(self, conn_id: str) -> None:
        """Tear down whatever the connection owns; safe to call repeatedly."""
        await self.terminate(conn_id)
        with self._lock:
            channel = self._channels.pop(conn_id, None)
            self._key_locks.pop(conn_id, None)
        if channel is not None:
            channel.close()

    def _key_lock(self, conn_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._key_locks.get(conn_id)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[conn_id] = lock
            return lock

    def _emit(self, conn_id: str, event: ServerEvent) -> bool:
        with self._lock:
            channel = self._channels.get(conn_id)
        if channel is None:
            return False
        return channel.emit(event)

    # registry queries

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def has_session(self, conn_id: str) -> bool:
        with self._lock:
            return conn_id in self._sessions

    def get(self, conn_id: str) -> Optional[pty_runner.PtySession]:
        with self._lock:
            return self._sessions.get(conn_id)

    def connection_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    # operations

    def _resolve_command(self, shell: str) -> List[str]:
        return shlex.split(shell, posix=(sys.platform != "win32"))

    def _spawn(self, conn_id: str, command: List[str], cwd: Path, cols: int, rows: int) -> pty_runner.PtySession:
        return pty_runner.PtySession(
            conn_id=conn_id,
            command=command,
            cwd=cwd,
            env={"TERM": "xterm-256color", "COLORTERM": "truecolor"},
            cols=cols,
            rows=rows,
            on_output=self._output_from_thread,
            on_exit=self._exit_from_thread,
        )

    async def create_session(self, conn_id: str, req: CreateTerminal) -> Optional[TerminalCreated]:
        """Spawn a shell for the connection, replacing any session it already owns.

        On failure a TERMINAL_CREATE_FAILED error is emitted and nothing is
        registered.
        """
        async with self._key_lock(conn_id):
            with self._lock:
                previous = self._sessions.pop(conn_id, None)
            if previous is not None:
                logger.info("replacing live session", extra={"conn_id": conn_id, "session_pid": previous.pid})
                await asyncio.to_thread(previous.stop, timeout=self._stop_timeout)

            shell = str(req.shell or "").strip() or self.default_shell
            cwd = Path(str(req.cwd or "").strip() or Path.home()).expanduser()
            try:
                command = self._resolve_command(shell)
                spawn = asyncio.ensure_future(asyncio.to_thread(self._spawn, conn_id, command, cwd, req.cols, req.rows))
                try:
                    session = await asyncio.shield(spawn)
                except asyncio.CancelledError:
                    # The thread keeps running; make sure its process does not outlive us.
                    spawn.add_done_callback(self._discard_spawned)
                    raise
            except (OSError, ValueError, RuntimeError, subprocess.SubprocessError) as e:
                logger.warning("terminal create failed: %s", e, extra={"conn_id": conn_id, "shell": shell})
                self._emit(conn_id, TerminalError(error=str(e) or type(e).__name__, code=ErrorCode.TERMINAL_CREATE_FAILED))
                return None

            with self._lock:
                self._sessions[conn_id] = session
            created = TerminalCreated(id=conn_id, shell=shell, cwd=str(session.cwd), cols=session.cols, rows=session.rows)
            self._emit(conn_id, created)
            session.start()
            logger.info(
                "terminal created %sx%s in %s",
                session.cols,
                session.rows,
                session.cwd,
                extra={"conn_id": conn_id, "shell": shell, "session_pid": session.pid},
            )
            return created

    async def write(self, conn_id: str, data: bytes) -> bool:
        async with self._key_lock(conn_id):
            session = self.get(conn_id)
            # An exited shell stays registered until its exit event is delivered.
            if session is None or not session.is_running():
                self._emit(conn_id, TerminalError(error="No terminal session found", code=ErrorCode.NO_TERMINAL))
                return False
            ok = await asyncio.to_thread(session.write_input, data)
            if not ok:
                logger.warning("input write failed", extra={"conn_id": conn_id})
            return ok

    async def resize(self, conn_id: str, cols: int, rows: int) -> bool:
        async with self._key_lock(conn_id):
            session = self.get(conn_id)
            if session is None or not session.is_running():
                return False
            try:
                session.resize(cols=cols, rows=rows)
            except (OSError, ValueError) as e:
                logger.warning("resize to %sx%s failed: %s", cols, rows, e, extra={"conn_id": conn_id})
                return False
            logger.debug("resized to %sx%s", cols, rows, extra={"conn_id": conn_id})
            return True

    async def terminate(self, conn_id: str) -> None:
        async with self._key_lock(conn_id):
            with self._lock:
                session = self._sessions.pop(conn_id, None)
            if session is not None:
                await asyncio.to_thread(session.stop, timeout=self._stop_timeout)
                logger.info("terminal terminated", extra={"conn_id": conn_id, "session_pid": session.pid})

    def stop_all(self) -> None:
        """Kill every PTY and clear the registry. Idempotent."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for s in sessions:
            s.hangup()
        # One grace period for the whole batch, then SIGKILL whatever is left.
        deadline = time.monotonic() + self._stop_timeout
        while time.monotonic() < deadline and any(s.is_running() for s in sessions):
            time.sleep(0.02)
        for s in sessions:
            try:
                s.stop(timeout=0.0)
            except Exception:
                logger.exception("stop failed", extra={"conn_id": s.conn_id})
        if sessions:
            logger.info("stopped %d terminal session(s)", len(sessions))

    def _discard_spawned(self, spawn: "asyncio.Future[pty_runner.PtySession]") -> None:
        if spawn.cancelled() or spawn.exception() is not None:
            return
        session = spawn.result()
        asyncio.get_running_loop().run_in_executor(None, lambda: session.stop(timeout=self._stop_timeout))

    # reader-thread callbacks, marshalled onto the loop

    def _call_on_loop(self, fn: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _output_from_thread(self, session: pty_runner.PtySession, chunk: bytes) -> None:
        self._call_on_loop(self._deliver_output, session, chunk)

    def _exit_from_thread(self, session: pty_runner.PtySession, exit_code: int, sig: Optional[int]) -> None:
        self._call_on_loop(self._deliver_exit, session, exit_code, sig)

    def _deliver_output(self, session: pty_runner.PtySession, chunk: bytes) -> None:
        conn_id = session.conn_id
        with self._lock:
            if self._sessions.get(conn_id) is not session:
                return
            channel = self._channels.get(conn_id)
        if channel is None:
            return
        if not channel.emit(TerminalOutput(data=chunk)):
            self._overflow(session, channel)

    def _overflow(self, session: pty_runner.PtySession, channel: SessionChannel) -> None:
        conn_id = session.conn_id
        with self._lock:
            if self._sessions.get(conn_id) is session:
                self._sessions.pop(conn_id, None)
        logger.warning(
            "client stalled with %d bytes pending; dropping session",
            channel.pending_bytes,
            extra={"conn_id": conn_id},
        )
        channel.emit(TerminalError(error="Client is not keeping up with terminal output", code=ErrorCode.OUTPUT_OVERFLOW))
        channel.close()
        if self._loop is not None:
            self._loop.run_in_executor(None, lambda: session.stop(timeout=self._stop_timeout))

    def _deliver_exit(self, session: pty_runner.PtySession, exit_code: int, sig: Optional[int]) -> None:
        conn_id = session.conn_id
        with self._lock:
            if self._sessions.get(conn_id) is not session:
                return
            self._sessions.pop(conn_id, None)
        self._emit(conn_id, TerminalExit(exit_code=exit_code, signal=sig))

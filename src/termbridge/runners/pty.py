from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

import termios

logger = logging.getLogger(__name__)

OutputCallback = Callable[["PtySession", bytes], None]
ExitCallback = Callable[["PtySession", int, Optional[int]], None]


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _get_winsize(fd: int) -> Tuple[int, int]:
    raw = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
    rows, cols, _, _ = struct.unpack("HHHH", raw)
    return int(cols), int(rows)


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


def exit_status(returncode: int) -> Tuple[int, Optional[int]]:
    """Map a Popen return code to (exit_code, signal)."""
    if returncode < 0:
        return 0, -returncode
    return returncode, None


class PtySession:
    """A shell process attached to a fresh pseudo-terminal.

    The process is spawned in the constructor. Output is read on a dedicated
    thread once `start()` is called and handed to `on_output` in emission
    order; `on_exit` fires exactly once, after the last output chunk.
    """

    def __init__(
        self,
        *,
        conn_id: str,
        command: Iterable[str],
        cwd: Path,
        env: Dict[str, str],
        cols: int = 80,
        rows: int = 24,
        on_output: Optional[OutputCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self.conn_id = conn_id
        self.cwd = Path(cwd)
        self.created_at = time.time()
        self._on_output = on_output
        self._on_exit = on_exit

        self._selector = selectors.DefaultSelector()
        self._fd_lock = threading.Lock()
        self._fd_closed = False
        self._thread: Optional[threading.Thread] = None

        self.command = [str(x) for x in command if isinstance(x, str) and str(x).strip()]
        if not self.command:
            raise ValueError("empty shell command")

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, cols=cols, rows=rows)
        except OSError as e:
            logger.warning("initial winsize failed: %s", e, extra={"conn_id": conn_id})
        os.set_blocking(master_fd, False)

        proc_env = os.environ.copy()
        proc_env.update({k: v for k, v in env.items() if isinstance(k, str) and isinstance(v, str)})
        proc_env.setdefault("TERM", "xterm-256color")

        def _preexec() -> None:
            os.setsid()
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except OSError:
                pass

        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(self.cwd),
                env=proc_env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        self._running = True
        self.cols, self.rows = self._read_winsize(default=(cols, rows))

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def shell(self) -> str:
        return self.command[0]

    def is_running(self) -> bool:
        return bool(self._running) and self._proc.poll() is None

    def _read_winsize(self, *, default: Tuple[int, int]) -> Tuple[int, int]:
        try:
            cols, rows = _get_winsize(self._master_fd)
        except OSError:
            return default
        if cols <= 0 or rows <= 0:
            return default
        return cols, rows

    def start(self) -> None:
        if self._thread is not None:
            return
        self._selector.register(self._master_fd, selectors.EVENT_READ)
        self._thread = threading.Thread(target=self._loop, name=f"termbridge-pty:{self.conn_id}", daemon=True)
        self._thread.start()

    def resize(self, *, cols: int, rows: int) -> None:
        """Propagate new dimensions to the PTY; raises OSError on failure."""
        if cols <= 0 or rows <= 0:
            raise ValueError(f"invalid size {cols}x{rows}")
        with self._fd_lock:
            # Once closed, the fd number may already belong to another session.
            if self._fd_closed:
                raise OSError(errno.EBADF, "pty is closed")
            _set_winsize(self._master_fd, cols=int(cols), rows=int(rows))
        self.cols, self.rows = int(cols), int(rows)
        _best_effort_killpg(self.pid, signal.SIGWINCH)

    def _write_once(self, data: bytes) -> Optional[int]:
        """One write under the fd lock; None when the fd is already closed."""
        with self._fd_lock:
            if self._fd_closed:
                return None
            return os.write(self._master_fd, data)

    def write_input(self, data: bytes) -> bool:
        """Write input to the PTY master, riding out a full kernel buffer.

        Returns False if the fd is gone or the shell stops reading for ~5s.
        """
        if not data:
            return True

        remaining = data
        max_attempts = 50
        attempt = 0
        while remaining and attempt < max_attempts:
            try:
                written = self._write_once(remaining)
                if not written:
                    return False
                remaining = remaining[written:]
                attempt = 0
            except BlockingIOError:
                attempt += 1
                time.sleep(0.1)
            except OSError:
                return False
        return len(remaining) == 0

    def hangup(self) -> None:
        """Send SIGHUP to the process group without waiting."""
        _best_effort_killpg(self.pid, signal.SIGHUP)

    def stop(self, *, timeout: float = 1.0) -> None:
        # Interactive shells ignore SIGTERM; SIGHUP is what a closing terminal sends.
        self._running = False
        self.hangup()
        deadline = time.monotonic() + max(0.0, timeout)
        while time.monotonic() < deadline:
            if self._proc.poll() is not None:
                break
            time.sleep(0.02)
        if self._proc.poll() is None:
            _best_effort_killpg(self.pid, signal.SIGKILL)
        if self._thread is None:
            self._close_fd()
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("pty process %s did not die", self.pid, extra={"conn_id": self.conn_id})

    def _close_fd(self) -> None:
        with self._fd_lock:
            if self._fd_closed:
                return
            self._fd_closed = True
            try:
                self._selector.unregister(self._master_fd)
            except (KeyError, ValueError):
                pass
            try:
                self._selector.close()
            except Exception:
                pass
            try:
                os.close(self._master_fd)
            except OSError:
                pass

    def _on_pty_readable(self) -> bool:
        while True:
            try:
                chunk = os.read(self._master_fd, 65536)
            except BlockingIOError:
                return True
            except OSError:
                # EIO once the slave side is gone.
                return False
            if not chunk:
                return False
            if self._on_output is not None:
                self._on_output(self, chunk)

    def _loop(self) -> None:
        try:
            while self._running:
                if self._selector.select(timeout=0.1):
                    if not self._on_pty_readable():
                        break
                    continue
                if self._proc.poll() is not None:
                    break
        except Exception:
            logger.exception("pty reader failed", extra={"conn_id": self.conn_id})
        finally:
            self._running = False
            self._close_fd()
            try:
                returncode = self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                _best_effort_killpg(self.pid, signal.SIGKILL)
                returncode = self._proc.wait()
            code, sig = exit_status(returncode)
            logger.info(
                "pty exited code=%s signal=%s",
                code,
                sig,
                extra={"conn_id": self.conn_id, "session_pid": self.pid},
            )
            if self._on_exit is not None:
                try:
                    self._on_exit(self, code, sig)
                except Exception:
                    logger.exception("exit callback failed", extra={"conn_id": self.conn_id})

"""Starting, verifying and stopping the broker process from the client side.

One launch walks idle -> locating-runtime -> locating-install -> spawning ->
verifying -> running | failed. Launches never overlap: concurrently spawned
brokers would fight over the port.
"""
from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional

from ..kernel.settings import Settings
from ..paths import BrokerPaths, default_broker_paths
from ..util.fs import read_int
from .health import check_health
from .install import BROKER_ENTRY, install_candidates, locate_install
from .runtime import locate_runtime
from .strategies import LaunchStrategy, default_strategies

logger = logging.getLogger(__name__)


class LaunchState(str, enum.Enum):
    IDLE = "idle"
    LOCATING_RUNTIME = "locating-runtime"
    LOCATING_INSTALL = "locating-install"
    SPAWNING = "spawning"
    VERIFYING = "verifying"
    RUNNING = "running"
    FAILED = "failed"


class AttemptOutcome(str, enum.Enum):
    PENDING = "pending"
    ALIVE = "alive"
    EXITED = "exited"
    SPAWN_FAILED = "spawn-failed"


class LaunchErrorKind(str, enum.Enum):
    FILES_NOT_FOUND = "files_not_found"
    STRATEGIES_EXHAUSTED = "strategies_exhausted"
    UNRESPONSIVE = "unresponsive"
    EXITED = "exited"


class LaunchError(Exception):
    def __init__(self, kind: LaunchErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass
class LaunchAttempt:
    strategy: str
    runtime: str
    cwd: Path
    process: Optional[subprocess.Popen] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    detail: str = ""


def _forward_output(stream: Optional[IO[bytes]], *, label: str, pid: int) -> None:
    if stream is None:
        return

    def _pump() -> None:
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.info("broker %s: %s", label, line, extra={"pid": pid})

    threading.Thread(target=_pump, name=f"termbridge-broker-{label}:{pid}", daemon=True).start()


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.kill()
    except OSError:
        pass


class Supervisor:
    """Keeps at most one managed broker process for this host.

    `ensure_running()` is cheap once a launch has been verified. Failures are
    reported through `notify` and kept on `last_error`; they never raise.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        strategies: Optional[List[LaunchStrategy]] = None,
        install_dirs: Optional[List[Path]] = None,
        health_check: Optional[Callable[[], bool]] = None,
        notify: Optional[Callable[[str], None]] = None,
        log_path: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
        paths: Optional[BrokerPaths] = None,
    ) -> None:
        self.settings = settings
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self._install_dirs = install_dirs
        self._health_check = health_check
        self._notify_cb = notify
        self._log_path = log_path
        self._sleep = sleep
        self._paths = paths

        self.state = LaunchState.IDLE
        self.process: Optional[subprocess.Popen] = None
        self.attempts: List[LaunchAttempt] = []
        self.last_error: Optional[LaunchError] = None
        self._running = False
        self._launch_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    def _notify(self, message: str) -> None:
        if self._notify_cb is not None:
            try:
                self._notify_cb(message)
            except Exception:
                logger.exception("notify callback failed")

    def check_health(self) -> bool:
        if self._health_check is not None:
            return bool(self._health_check())
        return check_health(self.settings.server_url, timeout=self.settings.health_timeout_s)

    def install_dirs(self) -> List[Path]:
        if self._install_dirs is not None:
            return list(self._install_dirs)
        return install_candidates(self.settings)

    def ensure_running(self) -> bool:
        if self._running:
            return True
        with self._launch_lock:
            if self._running:
                return True
            self.last_error = None
            try:
                self._launch()
            except LaunchError as e:
                self.state = LaunchState.FAILED
                self.last_error = e
                logger.error("broker launch failed (%s): %s", e.kind.value, e.message)
                self._notify(f"Failed to start terminal server: {e.message}")
                return False
            return True

    def _mark_running(self, process: Optional[subprocess.Popen]) -> None:
        self.process = process
        self._running = True
        self.state = LaunchState.RUNNING
        if process is not None:
            threading.Thread(
                target=self._watch, args=(process,), name=f"termbridge-broker-watch:{process.pid}", daemon=True
            ).start()

    def _launch(self) -> None:
        self.attempts = []
        if self.check_health():
            logger.info("broker already answering at %s", self.settings.server_url)
            self._mark_running(None)
            return

        self.state = LaunchState.LOCATING_RUNTIME
        runtime = locate_runtime(self.settings.runtime_path)
        logger.info("using runtime %s (%s)", runtime.path, runtime.source, extra={"runtime": runtime.path})

        self.state = LaunchState.LOCATING_INSTALL
        dirs = self.install_dirs()
        install_dir = locate_install(dirs)
        if install_dir is None:
            looked = ", ".join(str(d) for d in dirs)
            raise LaunchError(
                LaunchErrorKind.FILES_NOT_FOUND,
                f"Terminal server files not found: no {BROKER_ENTRY.as_posix()} under {looked}",
            )

        # Another host may have started a broker while we were looking around.
        if self.check_health():
            self._mark_running(None)
            return

        self._notify("Starting terminal server...")
        self.state = LaunchState.SPAWNING
        proc = self._spawn(runtime.path, install_dir)

        self.state = LaunchState.VERIFYING
        self._verify(proc)

    def _environment(self, runtime: str) -> Dict[str, str]:
        env = os.environ.copy()
        env["TERMBRIDGE_PORT"] = str(self.settings.server_port)
        env["TERMBRIDGE_ENV"] = "production"
        env["TERMBRIDGE_RUNTIME"] = runtime
        return env

    def _spawn_one(self, strategy: LaunchStrategy, runtime: str, install_dir: Path, env: Dict[str, str]) -> subprocess.Popen:
        if self._log_path is None:
            proc = strategy.spawn(runtime, install_dir, env)
            _forward_output(proc.stdout, label="stdout", pid=proc.pid)
            _forward_output(proc.stderr, label="stderr", pid=proc.pid)
            return proc
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("ab") as log_f:
            return strategy.spawn(runtime, install_dir, env, stdout=log_f, stderr=log_f)

    def _spawn(self, runtime: str, install_dir: Path) -> subprocess.Popen:
        env = self._environment(runtime)
        failures: List[str] = []
        for strategy in self.strategies:
            attempt = LaunchAttempt(strategy=strategy.name, runtime=runtime, cwd=install_dir)
            self.attempts.append(attempt)
            try:
                proc = self._spawn_one(strategy, runtime, install_dir, env)
            except (OSError, subprocess.SubprocessError) as e:
                attempt.outcome = AttemptOutcome.SPAWN_FAILED
                attempt.detail = str(e)
                failures.append(f"{strategy.name}: {e}")
                logger.info("startup approach failed: %s", e, extra={"strategy": strategy.name})
                continue

            self._sleep(self.settings.spawn_wait_s)
            if proc.poll() is None:
                attempt.process = proc
                attempt.outcome = AttemptOutcome.ALIVE
                logger.info("broker process alive", extra={"strategy": strategy.name, "pid": proc.pid})
                return proc

            attempt.outcome = AttemptOutcome.EXITED
            attempt.detail = f"exited with code {proc.returncode}"
            failures.append(f"{strategy.name}: {attempt.detail}")
            logger.info("startup approach exited early: %s", attempt.detail, extra={"strategy": strategy.name})
            _terminate(proc)

        raise LaunchError(
            LaunchErrorKind.STRATEGIES_EXHAUSTED,
            "All server startup approaches failed (" + "; ".join(failures or ["no strategies configured"]) + ")",
        )

    def _verify(self, proc: subprocess.Popen) -> None:
        self._sleep(self.settings.verify_wait_s)
        if self.check_health():
            self._mark_running(proc)
            logger.info("broker verified", extra={"pid": proc.pid, "port": self.settings.server_port})
            self._notify("Terminal server started successfully!")
            return

        for attempt in self.attempts:
            if attempt.process is proc:
                attempt.process = None
        if proc.poll() is not None:
            raise LaunchError(
                LaunchErrorKind.EXITED,
                f"Server process exited with code {proc.returncode} before answering health checks",
            )
        _terminate(proc)
        raise LaunchError(
            LaunchErrorKind.UNRESPONSIVE,
            f"Server process is running but not answering health checks at {self.settings.server_url}/health",
        )

    def _watch(self, proc: subprocess.Popen) -> None:
        code = proc.wait()
        if self.process is proc:
            logger.info("broker exited with code %s", code, extra={"pid": proc.pid})
            self.process = None
            self._running = False
            self.state = LaunchState.IDLE

    def stop(self) -> bool:
        """Ask the managed broker to exit; does not wait for it.

        Without a process handle (broker started by another process) the
        broker's pid file is used. Returns True when a signal was sent.
        """
        proc = self.process
        self.process = None
        self._running = False
        self.state = LaunchState.IDLE
        if proc is not None:
            if proc.poll() is None:
                proc.send_signal(signal.SIGTERM)
                return True
            return False

        paths = self._paths or default_broker_paths()
        pid = read_int(paths.pid_path)
        if pid <= 0:
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            logger.info("could not signal broker pid %s: %s", pid, e)
            return False
        return True

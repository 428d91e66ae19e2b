import os
import signal
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from termbridge.supervisor.strategies import LaunchStrategy

_SLEEPER = "import time; time.sleep(30)"
_QUITTER = "import sys; sys.exit(4)"


class CodeStrategy(LaunchStrategy):
    """Runs a Python snippet in place of the broker and keeps every process it starts."""

    def __init__(self, name: str, code: str) -> None:
        self.name = name
        self.code = code
        self.spawned = []

    def command(self, runtime, install_dir):
        return [runtime, "-c", self.code]

    def spawn(self, runtime, install_dir, env, **kw):
        proc = super().spawn(runtime, install_dir, env, **kw)
        self.spawned.append(proc)
        return proc


class RefusingStrategy(LaunchStrategy):
    name = "refusing"

    def __init__(self) -> None:
        self.calls = []

    def spawn(self, runtime, install_dir, env, **kw):
        self.calls.append((runtime, install_dir, dict(env)))
        raise OSError("cannot start")


def _settings(**kw):
    from termbridge.kernel.settings import Settings

    base = dict(spawn_wait_s=0.3, verify_wait_s=0.0, runtime_path=sys.executable)
    base.update(kw)
    return Settings(**base)


class TestSupervisor(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        entry = self.root / "install" / "termbridge" / "broker" / "__main__.py"
        entry.parent.mkdir(parents=True)
        entry.write_text("", encoding="utf-8")
        self.notes = []
        self._strategies = []

    def tearDown(self) -> None:
        for strategy in self._strategies:
            for p in getattr(strategy, "spawned", []):
                if p.poll() is None:
                    p.kill()
                p.wait()
        self._td.cleanup()

    def _supervisor(self, strategies, *, health, install_dirs=None, **kw):
        from termbridge.paths import BrokerPaths
        from termbridge.supervisor import Supervisor

        self._strategies.extend(strategies)
        return Supervisor(
            _settings(**kw),
            strategies=strategies,
            install_dirs=install_dirs if install_dirs is not None else [self.root / "install"],
            health_check=health,
            notify=self.notes.append,
            paths=BrokerPaths(home=self.root / "home"),
        )

    def test_already_healthy_spawns_nothing(self) -> None:
        refusing = RefusingStrategy()
        sup = self._supervisor([refusing], health=lambda: True)
        self.assertTrue(sup.ensure_running())
        self.assertTrue(sup.is_running)
        self.assertEqual(refusing.calls, [])
        self.assertIsNone(sup.process)
        self.assertEqual(self.notes, [])
        self.assertTrue(sup.ensure_running())

    def test_missing_install_is_reported_without_spawning(self) -> None:
        from termbridge.supervisor import LaunchErrorKind, LaunchState

        refusing = RefusingStrategy()
        empty = self.root / "empty"
        empty.mkdir()
        sup = self._supervisor([refusing], health=lambda: False, install_dirs=[empty])
        self.assertFalse(sup.ensure_running())
        self.assertEqual(refusing.calls, [])
        self.assertEqual(sup.state, LaunchState.FAILED)
        self.assertEqual(sup.last_error.kind, LaunchErrorKind.FILES_NOT_FOUND)
        self.assertEqual(len(self.notes), 1)
        self.assertTrue(self.notes[0].startswith("Failed to start terminal server:"))

    def test_falls_through_to_next_strategy(self) -> None:
        from termbridge.supervisor import AttemptOutcome, LaunchState

        first = CodeStrategy("quits", _QUITTER)
        second = CodeStrategy("stays", _SLEEPER)
        sup = self._supervisor([first, second], health=lambda: bool(second.spawned))

        self.assertTrue(sup.ensure_running())
        self.assertEqual(sup.state, LaunchState.RUNNING)
        self.assertEqual([a.strategy for a in sup.attempts], ["quits", "stays"])
        self.assertEqual(sup.attempts[0].outcome, AttemptOutcome.EXITED)
        self.assertIn("exited with code 4", sup.attempts[0].detail)
        self.assertEqual(sup.attempts[1].outcome, AttemptOutcome.ALIVE)
        self.assertIs(sup.process, second.spawned[0])
        self.assertIsNone(sup.process.poll())
        self.assertEqual(self.notes, ["Starting terminal server...", "Terminal server started successfully!"])

    def test_broker_environment(self) -> None:
        sup = self._supervisor([], health=lambda: False, server_port=4555)
        env = sup._environment(sys.executable)
        self.assertEqual(env["TERMBRIDGE_PORT"], "4555")
        self.assertEqual(env["TERMBRIDGE_ENV"], "production")
        self.assertEqual(env["TERMBRIDGE_RUNTIME"], sys.executable)

    def test_all_strategies_failing_aggregates_errors(self) -> None:
        from termbridge.supervisor import LaunchErrorKind

        sup = self._supervisor([CodeStrategy("one", _QUITTER), CodeStrategy("two", _QUITTER)], health=lambda: False)
        self.assertFalse(sup.ensure_running())
        err = sup.last_error
        self.assertEqual(err.kind, LaunchErrorKind.STRATEGIES_EXHAUSTED)
        self.assertIn("All server startup approaches failed", err.message)
        self.assertIn("one", err.message)
        self.assertIn("two", err.message)
        self.assertIsNone(sup.process)
        self.assertFalse(sup.is_running)

    def test_spawn_errors_move_on(self) -> None:
        from termbridge.supervisor import AttemptOutcome, LaunchErrorKind

        refusing = RefusingStrategy()
        sup = self._supervisor([refusing], health=lambda: False)
        self.assertFalse(sup.ensure_running())
        self.assertEqual(len(refusing.calls), 1)
        self.assertEqual(sup.attempts[0].outcome, AttemptOutcome.SPAWN_FAILED)
        self.assertEqual(sup.last_error.kind, LaunchErrorKind.STRATEGIES_EXHAUSTED)

    def test_unresponsive_broker_is_killed(self) -> None:
        from termbridge.supervisor import LaunchErrorKind

        mute = CodeStrategy("mute", _SLEEPER)
        sup = self._supervisor([mute], health=lambda: False)
        self.assertFalse(sup.ensure_running())
        self.assertEqual(sup.last_error.kind, LaunchErrorKind.UNRESPONSIVE)
        self.assertIn("not answering health checks", sup.last_error.message)
        mute.spawned[0].wait(timeout=5)
        self.assertIsNone(sup.process)

    def test_broker_exiting_during_verification(self) -> None:
        from termbridge.supervisor import LaunchErrorKind

        brief = CodeStrategy("brief", "import time; time.sleep(0.5)")
        sup = self._supervisor([brief], health=lambda: False, spawn_wait_s=0.1, verify_wait_s=1.5)
        self.assertFalse(sup.ensure_running())
        self.assertEqual(sup.last_error.kind, LaunchErrorKind.EXITED)
        self.assertIn("exited with code 0", sup.last_error.message)

    def test_log_path_receives_broker_output(self) -> None:
        from termbridge.paths import BrokerPaths
        from termbridge.supervisor import Supervisor

        talker = CodeStrategy("talker", "import sys, time; print('hello from broker', flush=True); time.sleep(30)")
        self._strategies.append(talker)
        log_path = self.root / "home" / "broker" / "broker.log"
        sup = Supervisor(
            _settings(),
            strategies=[talker],
            install_dirs=[self.root / "install"],
            health_check=lambda: bool(talker.spawned),
            log_path=log_path,
            paths=BrokerPaths(home=self.root / "home"),
        )
        self.assertTrue(sup.ensure_running())
        self.assertIn("hello from broker", log_path.read_text(encoding="utf-8"))

    @unittest.skipIf(os.name == "nt", "POSIX signals only")
    def test_stop_signals_managed_process(self) -> None:
        stays = CodeStrategy("stays", _SLEEPER)
        sup = self._supervisor([stays], health=lambda: bool(stays.spawned))
        self.assertTrue(sup.ensure_running())
        proc = sup.process

        self.assertTrue(sup.stop())
        self.assertEqual(proc.wait(timeout=5), -signal.SIGTERM)
        self.assertFalse(sup.is_running)
        self.assertIsNone(sup.process)

    @unittest.skipIf(os.name == "nt", "POSIX signals only")
    def test_stop_uses_pid_file_without_handle(self) -> None:
        from termbridge.util.fs import atomic_write_text

        proc = subprocess.Popen([sys.executable, "-c", _SLEEPER])
        try:
            sup = self._supervisor([], health=lambda: True)
            atomic_write_text(sup._paths.pid_path, f"{proc.pid}\n")
            self.assertTrue(sup.stop())
            self.assertEqual(proc.wait(timeout=5), -signal.SIGTERM)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_stop_without_anything_running(self) -> None:
        sup = self._supervisor([], health=lambda: False)
        self.assertFalse(sup.stop())


class TestStrategies(unittest.TestCase):
    def test_direct_strategy_runs_module(self) -> None:
        from termbridge.supervisor import DirectRuntimeStrategy

        cmd = DirectRuntimeStrategy().command("/usr/bin/python3", Path("/opt/x"))
        self.assertEqual(cmd, ["/usr/bin/python3", "-m", "termbridge.broker"])

    def test_console_script_must_exist(self) -> None:
        from termbridge.supervisor import ConsoleScriptStrategy

        with self.assertRaises(FileNotFoundError):
            ConsoleScriptStrategy("termbridge-no-such-script").command("python", Path("."))


if __name__ == "__main__":
    unittest.main()

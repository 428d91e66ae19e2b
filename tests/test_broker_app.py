import os
import time
import unittest


def _receive_until(ws, pred, *, limit: int = 500):
    """Read frames until pred(frame) is true; frames are bytes or decoded JSON dicts."""
    import json

    seen = []
    for _ in range(limit):
        message = ws.receive()
        if message.get("bytes") is not None:
            frame = message["bytes"]
        elif message.get("text") is not None:
            frame = json.loads(message["text"])
        else:
            raise AssertionError(f"socket closed: {message!r}")
        seen.append(frame)
        if pred(frame):
            return seen
    raise AssertionError(f"condition not met after {limit} frames")


def _is_event(kind: str):
    return lambda f: isinstance(f, dict) and f.get("type") == kind


class TestBrokerHttp(unittest.TestCase):
    def test_health_shape(self) -> None:
        from fastapi.testclient import TestClient

        from termbridge.broker.app import create_app
        from termbridge.broker.manager import SessionManager

        app = create_app(SessionManager(shell="/bin/sh"))
        with TestClient(app) as client:
            resp = client.get("/health")
            self.assertEqual(resp.status_code, 200)
            body = resp.json()
            self.assertEqual(body["status"], "ok")
            self.assertEqual(body["terminals"], 0)
            self.assertIsInstance(body["platform"], str)
            self.assertGreaterEqual(body["uptime"], 0)
            self.assertIsInstance(body["memory"], dict)

    def test_cors_allows_any_origin(self) -> None:
        from fastapi.testclient import TestClient

        from termbridge.broker.app import create_app

        with TestClient(create_app()) as client:
            resp = client.get("/health", headers={"Origin": "app://obsidian.md"})
            self.assertEqual(resp.headers.get("access-control-allow-origin"), "*")


@unittest.skipIf(os.name == "nt", "POSIX PTY only")
class TestBrokerWebSocket(unittest.TestCase):
    def setUp(self) -> None:
        from fastapi.testclient import TestClient

        from termbridge.broker.app import create_app
        from termbridge.broker.manager import SessionManager

        self.manager = SessionManager(shell="/bin/sh", stop_timeout=0.5)
        self.client = TestClient(create_app(self.manager))
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)

    def test_session_round_trip(self) -> None:
        with self.client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "create-terminal", "shell": "/bin/sh", "cols": 100, "rows": 30, "cwd": "/tmp"})
            created = ws.receive_json()
            self.assertEqual(created["type"], "terminal-created")
            self.assertEqual(created["shell"], "/bin/sh")
            self.assertEqual((created["cols"], created["rows"]), (100, 30))
            self.assertTrue(created["id"])
            self.assertEqual(self.client.get("/health").json()["terminals"], 1)

            ws.send_json({"type": "terminal-input", "data": "echo $((6*7))\n"})
            _receive_until(ws, lambda f: isinstance(f, bytes) and b"42" in f)

            ws.send_bytes(b"echo $((7*8))\n")
            _receive_until(ws, lambda f: isinstance(f, bytes) and b"56" in f)

            ws.send_json({"type": "terminal-resize", "cols": 120, "rows": 40})
            ws.send_json({"type": "terminal-input", "data": "exit\n"})
            frames = _receive_until(ws, _is_event("terminal-exit"))
            self.assertEqual(frames[-1]["exitCode"], 0)
            self.assertIsNone(frames[-1]["signal"])

        deadline = time.time() + 5
        while self.manager.active_count() and time.time() < deadline:
            time.sleep(0.05)
        self.assertEqual(self.manager.active_count(), 0)

    def test_invalid_messages_are_reported(self) -> None:
        with self.client.websocket_connect("/terminal") as ws:
            ws.send_text("not json")
            err = ws.receive_json()
            self.assertEqual(err["type"], "terminal-error")
            self.assertEqual(err["code"], "BAD_MESSAGE")

            ws.send_json({"type": "launch-missiles"})
            self.assertEqual(ws.receive_json()["code"], "BAD_MESSAGE")

            ws.send_json({"type": "terminal-resize", "cols": 0, "rows": 10})
            self.assertEqual(ws.receive_json()["code"], "BAD_MESSAGE")

    def test_input_before_create_reports_no_terminal(self) -> None:
        with self.client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "terminal-input", "data": "ls\n"})
            err = ws.receive_json()
            self.assertEqual(err["code"], "NO_TERMINAL")
            ws.send_bytes(b"ls\n")
            self.assertEqual(ws.receive_json()["code"], "NO_TERMINAL")
        self.assertEqual(self.manager.active_count(), 0)

    def test_create_failure_is_reported(self) -> None:
        with self.client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "create-terminal", "shell": "/nonexistent/termbridge-sh"})
            err = ws.receive_json()
            self.assertEqual(err["type"], "terminal-error")
            self.assertEqual(err["code"], "TERMINAL_CREATE_FAILED")
        self.assertEqual(self.manager.active_count(), 0)

    def test_disconnect_kills_the_shell(self) -> None:
        with self.client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "create-terminal", "cwd": "/"})
            self.assertEqual(ws.receive_json()["type"], "terminal-created")
            conn_id = self.manager.connection_ids()[0]
            session = self.manager.get(conn_id)

        deadline = time.time() + 5
        while session._proc.poll() is None and time.time() < deadline:
            time.sleep(0.05)
        self.assertIsNotNone(session._proc.poll())
        self.assertEqual(self.manager.active_count(), 0)

    def test_connections_do_not_share_sessions(self) -> None:
        with self.client.websocket_connect("/terminal") as a, self.client.websocket_connect("/terminal") as b:
            a.send_json({"type": "create-terminal", "cwd": "/"})
            b.send_json({"type": "create-terminal", "cwd": "/"})
            id_a = a.receive_json()["id"]
            id_b = b.receive_json()["id"]
            self.assertNotEqual(id_a, id_b)
            self.assertEqual(self.manager.active_count(), 2)


if __name__ == "__main__":
    unittest.main()

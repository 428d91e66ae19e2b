import io
import json
import logging
import unittest


class TestJsonlFormatter(unittest.TestCase):
    def test_record_carries_component_and_context(self) -> None:
        from termbridge.util.obslog import JsonlFormatter

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonlFormatter(component="broker"))
        log = logging.getLogger("termbridge.test.obslog")
        log.propagate = False
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        try:
            log.info("terminal created %sx%s", 80, 24, extra={"conn_id": "abc", "session_pid": 42, "shell": " "})
        finally:
            log.removeHandler(handler)

        doc = json.loads(stream.getvalue().strip())
        self.assertEqual(doc["component"], "broker")
        self.assertEqual(doc["level"], "INFO")
        self.assertEqual(doc["msg"], "terminal created 80x24")
        self.assertEqual(doc["conn_id"], "abc")
        self.assertEqual(doc["session_pid"], "42")
        self.assertNotIn("shell", doc)
        self.assertTrue(doc["ts"].endswith("Z"))
        self.assertNotIn("thread", doc)

    def test_worker_thread_is_named(self) -> None:
        from termbridge.util.obslog import JsonlFormatter

        record = logging.LogRecord("termbridge.runners.pty", logging.INFO, __file__, 1, "pty exited", None, None)
        record.threadName = "termbridge-pty:abc"
        doc = json.loads(JsonlFormatter(component="broker").format(record))
        self.assertEqual(doc["thread"], "termbridge-pty:abc")

    def test_parse_level(self) -> None:
        from termbridge.util.obslog import parse_level

        self.assertEqual(parse_level("debug"), logging.DEBUG)
        self.assertEqual(parse_level(""), logging.INFO)
        self.assertEqual(parse_level("nonsense", logging.WARNING), logging.WARNING)

    def test_setup_retunes_instead_of_stacking(self) -> None:
        from termbridge.util.obslog import JsonlFormatter, setup_root_json_logging

        root = logging.getLogger()
        saved = (list(root.handlers), root.level)
        try:
            first = setup_root_json_logging(component="cli", level="WARNING", stream=io.StringIO())
            second = setup_root_json_logging(component="broker", level="debug")
            self.assertIs(first, second)
            self.assertEqual(root.handlers.count(first), 1)
            self.assertEqual(first.formatter.component, "broker")
            self.assertIsInstance(first.formatter, JsonlFormatter)
            self.assertEqual(root.level, logging.DEBUG)
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


if __name__ == "__main__":
    unittest.main()

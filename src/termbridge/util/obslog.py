from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, TextIO, Tuple

# Correlation fields picked up from `logger.info(..., extra={...})`.
CONTEXT_KEYS = ("conn_id", "session_pid", "shell", "strategy", "runtime", "pid", "port")

_root_handler: Optional[logging.Handler] = None


def _context(record: logging.LogRecord) -> Iterator[Tuple[str, str]]:
    for key in CONTEXT_KEYS:
        value = record.__dict__.get(key)
        text = "" if value is None else str(value).strip()
        if text:
            yield key, text


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; broker and supervisor logs are meant to be grepped."""

    def __init__(self, *, component: str):
        super().__init__()
        self.component = str(component or "").strip() or "termbridge"

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "component": self.component,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # PTY readers and output pumps run on named threads.
        if record.threadName not in (None, "", "MainThread"):
            doc["thread"] = record.threadName
        doc.update(_context(record))
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


def parse_level(level: str, default: int = logging.INFO) -> int:
    name = str(level or "").strip().upper()
    value = logging.getLevelName(name) if name else default
    return value if isinstance(value, int) else default


def setup_root_json_logging(*, component: str, level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Handler:
    """Send root logging through a single JSONL handler.

    A repeated call retunes the handler it installed earlier (component and
    level) rather than stacking a second one.
    """
    global _root_handler
    root = logging.getLogger()
    if _root_handler is None or _root_handler not in root.handlers:
        _root_handler = logging.StreamHandler(stream or sys.stderr)
        root.addHandler(_root_handler)
    lvl = parse_level(level)
    _root_handler.setFormatter(JsonlFormatter(component=component))
    _root_handler.setLevel(lvl)
    root.setLevel(lvl)
    return _root_handler

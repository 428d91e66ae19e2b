"""PTY session broker: FastAPI app serving /health and the /terminal WebSocket."""
from __future__ import annotations

from .app import create_app
from .manager import SessionChannel, SessionManager

__all__ = ["SessionChannel", "SessionManager", "create_app"]

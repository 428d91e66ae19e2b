from __future__ import annotations

from .health import HealthSnapshot
from .terminal import (
    CLIENT_MESSAGE,
    ClientMessage,
    CreateTerminal,
    ErrorCode,
    ServerEvent,
    TerminalCreated,
    TerminalError,
    TerminalExit,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
)

__all__ = [
    "CLIENT_MESSAGE",
    "ClientMessage",
    "CreateTerminal",
    "ErrorCode",
    "HealthSnapshot",
    "ServerEvent",
    "TerminalCreated",
    "TerminalError",
    "TerminalExit",
    "TerminalInput",
    "TerminalOutput",
    "TerminalResize",
]

"""Locating, launching and verifying the broker process."""
from __future__ import annotations

from .health import check_health, fetch_health
from .launcher import AttemptOutcome, LaunchAttempt, LaunchError, LaunchErrorKind, LaunchState, Supervisor
from .runtime import RuntimeChoice, locate_runtime, verify_runtime
from .strategies import ConsoleScriptStrategy, DirectRuntimeStrategy, LaunchStrategy, default_strategies

__all__ = [
    "AttemptOutcome",
    "ConsoleScriptStrategy",
    "DirectRuntimeStrategy",
    "LaunchAttempt",
    "LaunchError",
    "LaunchErrorKind",
    "LaunchState",
    "LaunchStrategy",
    "RuntimeChoice",
    "Supervisor",
    "check_health",
    "default_strategies",
    "fetch_health",
    "locate_runtime",
    "verify_runtime",
]

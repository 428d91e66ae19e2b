from __future__ import annotations

import sys
import time
from typing import Any, Dict

import psutil

from ..contracts.v1 import HealthSnapshot
from .manager import SessionManager


def _memory_usage(proc: psutil.Process) -> Dict[str, Any]:
    try:
        return {k: int(v) for k, v in proc.memory_info()._asdict().items()}
    except psutil.Error:
        return {}


def health_snapshot(manager: SessionManager) -> HealthSnapshot:
    """Liveness and resource usage of this broker process; reads the registry only."""
    proc = psutil.Process()
    try:
        uptime = max(0.0, time.time() - proc.create_time())
    except psutil.Error:
        uptime = 0.0
    return HealthSnapshot(
        status="ok",
        terminals=manager.active_count(),
        platform=sys.platform,
        uptime=round(uptime, 3),
        memory=_memory_usage(proc),
    )

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class HealthSnapshot(BaseModel):
    status: str = "ok"
    terminals: int = 0
    platform: str = ""
    uptime: float = 0.0
    memory: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

"""Client-side settings for termbridge.

Settings are stored in ~/.termbridge/settings.yaml (or $TERMBRIDGE_HOME) and
shared by the supervisor, the terminal controller and the CLI:
- where the broker listens (server_url / server_port)
- which shell to ask for and how to size the terminal
- how to find and launch the broker (runtime_path, plugin_data_dir, timings)
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..paths import ensure_home, termbridge_home
from ..util.fs import atomic_write_text

logger = logging.getLogger(__name__)

AUTO_RUNTIME = "auto"
DEFAULT_PORT = 3001


def default_shell(platform: Optional[str] = None) -> str:
    plat = platform or sys.platform
    if plat == "win32":
        return "powershell.exe"
    if plat == "darwin":
        return "/bin/zsh"
    if not Path("/bin/bash").exists():
        return "sh"
    return "/bin/bash"


def url_for_port(port: int) -> str:
    return f"http://localhost:{int(port)}"


def _default_plugin_dir() -> str:
    return str(termbridge_home() / "plugin")


class Settings(BaseModel):
    server_url: str = Field(default=url_for_port(DEFAULT_PORT))
    shell: str = Field(default_factory=default_shell)
    font_size: int = Field(default=14, ge=8, le=24)
    theme: str = Field(default="dark")
    auto_start_server: bool = Field(default=True)
    server_port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    runtime_path: str = Field(default=AUTO_RUNTIME)
    plugin_data_dir: str = Field(default_factory=_default_plugin_dir)

    resize_debounce_s: float = Field(default=0.1, ge=0)
    spawn_wait_s: float = Field(default=1.0, ge=0)
    verify_wait_s: float = Field(default=3.0, ge=0)
    health_timeout_s: float = Field(default=3.0, gt=0)
    connect_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("runtime_path")
    @classmethod
    def _blank_runtime_is_auto(cls, v: str) -> str:
        return str(v or "").strip() or AUTO_RUNTIME

    @property
    def ws_url(self) -> str:
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):] + "/terminal"
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):] + "/terminal"
        return base + "/terminal"


def _merge_defaults(raw: Dict[str, Any]) -> Settings:
    """Build Settings from a loaded document, dropping keys that do not validate."""
    known = {k: v for k, v in raw.items() if k in Settings.model_fields}
    try:
        return Settings(**known)
    except ValidationError as e:
        bad = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
        for key in sorted(bad):
            logger.warning("ignoring invalid setting %s=%r", key, known.get(key))
        return Settings(**{k: v for k, v in known.items() if k not in bad})


class SettingsStore:
    """Loads settings once, merges defaults and persists on every change."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or (ensure_home() / "settings.yaml")
        self.settings = Settings()

    def load(self) -> Settings:
        raw: Dict[str, Any] = {}
        if self.path.exists():
            try:
                doc = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
                raw = doc if isinstance(doc, dict) else {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("could not read %s: %s", self.path, e)
        self.settings = _merge_defaults(raw)
        if "auto_start_server" not in raw:
            self.save()
        return self.settings

    def save(self) -> None:
        doc = self.settings.model_dump()
        atomic_write_text(self.path, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))

    def update(self, **changes: Any) -> Settings:
        """Apply changes, validate the result and persist it.

        Changing `server_port` rewrites `server_url` to match.
        """
        data = self.settings.model_dump()
        data.update(changes)
        if "server_port" in changes and "server_url" not in changes:
            data["server_url"] = url_for_port(int(changes["server_port"]))
        self.settings = Settings(**data)
        self.save()
        return self.settings

    def set_port(self, port: int) -> Settings:
        return self.update(server_port=int(port))


def load_settings(path: Optional[Path] = None) -> SettingsStore:
    store = SettingsStore(path)
    store.load()
    return store

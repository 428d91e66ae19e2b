from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


def _health_url(server_url: str) -> str:
    return server_url.rstrip("/") + "/health"


def fetch_health(server_url: str, *, timeout: float = 3.0) -> Optional[Dict[str, Any]]:
    """GET /health; the parsed snapshot, or None when the broker is not answering."""
    try:
        resp = requests.get(_health_url(server_url), timeout=timeout)
    except requests.RequestException as e:
        logger.debug("health probe failed: %s", e)
        return None
    if not resp.ok:
        logger.debug("health probe returned HTTP %s", resp.status_code)
        return None
    try:
        doc = resp.json()
    except ValueError:
        return {}
    return doc if isinstance(doc, dict) else {}


def check_health(server_url: str, *, timeout: float = 3.0) -> bool:
    return fetch_health(server_url, timeout=timeout) is not None

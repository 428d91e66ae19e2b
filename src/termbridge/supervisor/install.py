from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from ..kernel.settings import Settings

logger = logging.getLogger(__name__)

BROKER_ENTRY = Path("termbridge") / "broker" / "__main__.py"


def install_candidates(settings: Settings) -> List[Path]:
    """Directories that may hold the broker package, in probe order."""
    out: List[Path] = [Path(settings.plugin_data_dir).expanduser(), Path.cwd(), Path.cwd() / "src"]
    # <root>/termbridge/supervisor/install.py -> <root>
    out.append(Path(__file__).resolve().parents[2])
    if sys.argv and sys.argv[0]:
        out.append(Path(sys.argv[0]).resolve().parent)
    return out


def locate_install(candidates: Iterable[Path]) -> Optional[Path]:
    for root in candidates:
        if (root / BROKER_ENTRY).is_file():
            return root
        logger.debug("no broker entry under %s", root)
    return None

"""Import-path and environment bootstrap for scripts run directly from a checkout."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def bootstrap() -> Path:
    """Put the repository root on ``sys.path`` and load ``<root>/.env`` when present."""
    root_str = str(ROOT)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)

    from core.env_utils import load_dotenv_if_available

    load_dotenv_if_available(ROOT / ".env")
    return ROOT

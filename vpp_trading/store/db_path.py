"""Database path resolver for execution modes.

Paper and live trading keep separate ledgers so that paper fills never
reach a live settlement.
"""

from __future__ import annotations

from pathlib import Path

from vpp_trading.config import settings
from vpp_trading.store.schema import DEFAULT_DB_PATH

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _normalize_db_path(path_str: str) -> str:
    p = Path(path_str).expanduser()
    if p.is_absolute():
        return str(p)
    return str((PROJECT_ROOT / p).resolve())


def resolve_db_path(
    *,
    execution_mode: str | None = None,
    explicit_db_path: str | None = None,
) -> str:
    """Resolve DB path: explicit override, then the mode's setting, then the default."""
    if explicit_db_path:
        return _normalize_db_path(explicit_db_path)

    mode = (execution_mode or settings.execution_mode or "paper").strip().lower()
    path = settings.live_db_path if mode == "live" else settings.paper_db_path
    if not path:
        return str(DEFAULT_DB_PATH)
    return _normalize_db_path(path)

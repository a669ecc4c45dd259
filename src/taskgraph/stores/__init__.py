from __future__ import annotations

from .db import Database
from .state import now_ms, resolve_state_dir

__all__ = [
    "Database",
    "now_ms",
    "resolve_state_dir",
]

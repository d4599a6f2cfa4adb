from __future__ import annotations

from .state import find_project_root, now_ms, resolve_state_dir
from .store import Store, StoreTransaction

__all__ = [
    "Store",
    "StoreTransaction",
    "find_project_root",
    "now_ms",
    "resolve_state_dir",
]

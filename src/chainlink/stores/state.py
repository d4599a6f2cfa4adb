"""Locating the per-project state directory."""

from __future__ import annotations

import os
import time
from pathlib import Path

STATE_DIR_NAME = ".chainlink"
STATE_DIR_ENV = "CHAINLINK_STATE_DIR"
# A directory holding one of these is a project root; lookups never cross it.
PROJECT_MARKERS = (".git", ".hg", ".jj")


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def find_project_root(start: Path) -> Path | None:
    for base in (start, *start.parents):
        if any((base / marker).exists() for marker in PROJECT_MARKERS):
            return base
    return None


def _nearest_state_dir(start: Path, stop: Path | None) -> Path | None:
    for base in (start, *start.parents):
        candidate = base / STATE_DIR_NAME
        if candidate.is_dir():
            return candidate
        if base == stop:
            break
    return None


def resolve_state_dir(cwd: Path | None = None, *, create: bool = True) -> Path:
    """Return the chainlink state directory for ``cwd``.

    ``CHAINLINK_STATE_DIR`` wins when set. Otherwise the nearest ``.chainlink``
    between ``cwd`` and its project root is used, and a fresh one lives at the
    project root (or in ``cwd`` outside any project).
    """
    override = os.environ.get(STATE_DIR_ENV, "").strip()
    if override:
        state_dir = Path(override).expanduser().resolve()
    else:
        start = (cwd or Path.cwd()).resolve()
        root = find_project_root(start)
        state_dir = _nearest_state_dir(start, root) or (root or start) / STATE_DIR_NAME

    if create:
        state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir

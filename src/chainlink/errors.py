"""Typed failures returned by engine operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import TimeEntry


class ChainlinkError(Exception):
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class NotFoundError(ChainlinkError, LookupError):
    kind = "not_found"

    # LookupError would otherwise repr the message like a KeyError.
    def __str__(self) -> str:
        return self.message


class CycleError(ChainlinkError, ValueError):
    kind = "cycle"

    def __init__(self, message: str, *, path: tuple[int, ...] = ()) -> None:
        super().__init__(message)
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["path"] = list(self.path)
        return payload


class TimerAlreadyRunningError(ChainlinkError):
    kind = "timer_running"

    def __init__(self, message: str, *, entry: TimeEntry | None = None) -> None:
        super().__init__(message)
        self.entry = entry

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.entry is not None:
            payload["issue_id"] = self.entry.issue_id
        return payload


class NoActiveTimerError(ChainlinkError):
    kind = "no_active_timer"


class ValidationError(ChainlinkError, ValueError):
    kind = "validation"


class StorageError(ChainlinkError):
    kind = "storage"


EXIT_CODES = {
    "not_found": 3,
    "cycle": 4,
    "timer_running": 5,
    "no_active_timer": 5,
    "validation": 2,
    "storage": 70,
}


def exit_code_for(error: ChainlinkError) -> int:
    """Process exit code a CLI layer should use for ``error``."""
    return EXIT_CODES.get(error.kind, 1)

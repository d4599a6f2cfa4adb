from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable

from .errors import ValidationError

ISSUE_STATUSES = (
    "open",
    "closed",
)
PRIORITIES = (
    "low",
    "medium",
    "high",
    "critical",
)
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}
DEFAULT_PRIORITY = "medium"


def normalize_status(status: str) -> str:
    value = str(status).strip().lower()
    if value not in ISSUE_STATUSES:
        raise ValidationError(f"invalid status: {status}")
    return value


def normalize_priority(priority: str) -> str:
    value = str(priority).strip().lower()
    if value not in PRIORITY_RANK:
        expected = ", ".join(PRIORITIES)
        raise ValidationError(f"invalid priority: {priority} (expected one of: {expected})")
    return value


def normalize_title(title: str) -> str:
    value = str(title or "").strip()
    if not value:
        raise ValidationError("title cannot be empty")
    return value


def normalize_labels(labels: Iterable[str] | None) -> tuple[str, ...]:
    return tuple(sorted({str(label).strip() for label in (labels or ()) if str(label).strip()}))


@dataclass(frozen=True)
class Issue:
    id: int | None
    title: str
    description: str | None = None
    priority: str = DEFAULT_PRIORITY
    status: str = "open"
    labels: tuple[str, ...] = ()
    parent: int | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK[self.priority]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["labels"] = list(self.labels)
        return payload


@dataclass(frozen=True)
class DependencyEdge:
    """``blocked_id`` cannot be ready while ``blocker_id`` is open."""

    blocked_id: int
    blocker_id: int
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Session:
    active: bool = False
    current_issue_id: int | None = None
    handoff_notes: str | None = None
    last_issue_id: int | None = None
    started_at: int | None = None
    ended_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimeEntry:
    id: int | None
    issue_id: int
    started_at: int
    stopped_at: int | None = None

    @property
    def running(self) -> bool:
        return self.stopped_at is None

    @property
    def duration_ms(self) -> int:
        if self.stopped_at is None:
            return 0
        return max(0, self.stopped_at - self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Comment:
    id: int | None
    issue_id: int
    body: str
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IssueFilter:
    status: str | None = None
    priority: str | None = None
    label: str | None = None
    parent: int | None = None
    search: str | None = None

"""Ready-set computation and "next issue" recommendation."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable

from .graph import blockers_by_issue
from .models import DependencyEdge, Issue, Session, TimeEntry
from .stores.store import Store

logger = logging.getLogger(__name__)

PROGRESS_SESSION = "session_working_issue"
PROGRESS_TIME = "time_tracked"
PROGRESS_SUBTREE = "subtree_in_progress"


@dataclass(frozen=True)
class ScheduleSnapshot:
    issues: tuple[Issue, ...]
    edges: tuple[DependencyEdge, ...]
    time_entries: tuple[TimeEntry, ...] = ()
    current_issue_id: int | None = None


@dataclass(frozen=True)
class RankedIssue:
    issue: Issue
    progress: tuple[str, ...] = ()

    @property
    def progress_score(self) -> int:
        return len(self.progress)

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue.to_dict(), "progress": list(self.progress)}


@dataclass(frozen=True)
class Recommendation:
    status: str  # "recommended", "no_candidates"
    issue: Issue | None = None
    progress: tuple[str, ...] = ()
    candidates: int = 0

    @property
    def found(self) -> bool:
        return self.issue is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "issue": self.issue.to_dict() if self.issue is not None else None,
            "progress": list(self.progress),
            "candidates": self.candidates,
        }


def _creation_key(issue: Issue) -> tuple[int, int]:
    return (issue.created_at, issue.id or 0)


def ready_issues(snapshot: ScheduleSnapshot) -> list[Issue]:
    """Open issues without open blockers, highest priority first, then oldest."""
    open_ids = {issue.id for issue in snapshot.issues if issue.is_open}
    adjacency = blockers_by_issue(snapshot.edges)

    ready = [
        issue
        for issue in snapshot.issues
        if issue.is_open
        and not any(blocker in open_ids for blocker in adjacency.get(issue.id, []))
    ]
    ready.sort(key=lambda issue: (-issue.priority_rank, *_creation_key(issue)))
    return ready


def _descendant_statuses(
    issue_id: int,
    children_by_parent: dict[int, list[Issue]],
) -> list[str]:
    statuses: list[str] = []
    seen: set[int] = {issue_id}
    queue: deque[int] = deque([issue_id])
    while queue:
        node = queue.popleft()
        for child in children_by_parent.get(node, []):
            if child.id in seen:
                continue
            seen.add(child.id)
            statuses.append(child.status)
            queue.append(child.id)
    return statuses


def children_by_parent(issues: Iterable[Issue]) -> dict[int, list[Issue]]:
    children: dict[int, list[Issue]] = {}
    for issue in issues:
        if issue.parent is not None:
            children.setdefault(issue.parent, []).append(issue)
    return children


def progress_signals(
    issue: Issue,
    snapshot: ScheduleSnapshot,
    children: dict[int, list[Issue]] | None = None,
) -> tuple[str, ...]:
    """Evidence that work on ``issue`` has already started.

    ``children`` is the parent index of ``snapshot.issues``; it is built here
    when not given.
    """
    signals: list[str] = []
    if snapshot.current_issue_id is not None and snapshot.current_issue_id == issue.id:
        signals.append(PROGRESS_SESSION)
    if any(entry.issue_id == issue.id for entry in snapshot.time_entries):
        signals.append(PROGRESS_TIME)

    if children is None:
        children = children_by_parent(snapshot.issues)
    statuses = _descendant_statuses(issue.id, children)
    if "closed" in statuses and "open" in statuses:
        signals.append(PROGRESS_SUBTREE)
    return tuple(signals)


def rank_candidates(
    snapshot: ScheduleSnapshot,
    *,
    progress_weighting: bool = True,
) -> list[RankedIssue]:
    """Order ready issues for recommendation.

    Priority always dominates. Within one priority, issues with more progress
    signals come first, then creation order.
    """
    children = children_by_parent(snapshot.issues)
    ranked = [
        RankedIssue(issue=issue, progress=progress_signals(issue, snapshot, children))
        for issue in ready_issues(snapshot)
    ]
    if progress_weighting:
        ranked.sort(
            key=lambda item: (
                -item.issue.priority_rank,
                -item.progress_score,
                *_creation_key(item.issue),
            )
        )
    return ranked


@dataclass
class Scheduler:
    store: Store
    progress_weighting: bool = True

    def snapshot(self) -> ScheduleSnapshot:
        with self.store.read() as tx:
            return ScheduleSnapshot(
                issues=tuple(tx.list_issues()),
                edges=tuple(tx.get_edges()),
                time_entries=tuple(tx.list_time_entries()),
                current_issue_id=_working_issue(tx.get_session()),
            )

    def ready_list(self) -> list[Issue]:
        ready = ready_issues(self.snapshot())
        logger.debug("ready list: %d issue(s)", len(ready))
        return ready

    def next(self) -> Recommendation:
        ranked = rank_candidates(
            self.snapshot(),
            progress_weighting=self.progress_weighting,
        )
        if not ranked:
            logger.debug("no ready issues to recommend")
            return Recommendation("no_candidates")

        top = ranked[0]
        logger.debug(
            "recommending issue %s (progress=%s, candidates=%d)",
            top.issue.id,
            ",".join(top.progress) or "-",
            len(ranked),
        )
        return Recommendation(
            "recommended",
            issue=top.issue,
            progress=top.progress,
            candidates=len(ranked),
        )


def _working_issue(session: Session) -> int | None:
    if not session.active:
        return None
    return session.current_issue_id

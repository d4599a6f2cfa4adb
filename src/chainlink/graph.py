"""Blocking dependency graph over issues."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from .errors import CycleError, NotFoundError, ValidationError
from .models import DependencyEdge, Issue, IssueFilter
from .stores.state import now_ms
from .stores.store import Store, StoreTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockedIssue:
    issue: Issue
    blocker_ids: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue.to_dict(), "blocker_ids": list(self.blocker_ids)}


def blockers_by_issue(edges: Iterable[DependencyEdge]) -> dict[int, list[int]]:
    """Adjacency from each blocked issue to the issues blocking it."""
    adjacency: dict[int, list[int]] = {}
    for edge in edges:
        adjacency.setdefault(edge.blocked_id, []).append(edge.blocker_id)
    return adjacency


def find_path(
    adjacency: dict[int, list[int]],
    start: int,
    goal: int,
    *,
    allowed: set[int],
) -> list[int] | None:
    """BFS from ``start`` to ``goal`` visiting only ``allowed`` nodes."""
    if start not in allowed or goal not in allowed:
        return None

    previous: dict[int, int | None] = {start: None}
    queue: deque[int] = deque([start])
    while queue:
        node = queue.popleft()
        if node == goal:
            path = [node]
            step = previous[node]
            while step is not None:
                path.append(step)
                step = previous[step]
            path.reverse()
            return path
        for nxt in sorted(adjacency.get(node, [])):
            if nxt in previous or nxt not in allowed:
                continue
            previous[nxt] = node
            queue.append(nxt)
    return None


def _format_cycle(path: list[int]) -> str:
    return " -> ".join(str(issue_id) for issue_id in path)


def _open_issue_ids(tx: StoreTransaction) -> set[int]:
    return {int(issue.id) for issue in tx.list_issues(IssueFilter(status="open"))}


def open_blockers(tx: StoreTransaction, issue_id: int) -> list[int]:
    blockers: list[int] = []
    for edge in tx.get_edges(blocked_id=issue_id):
        blocker = tx.get_issue(edge.blocker_id)
        if blocker is not None and blocker.is_open:
            blockers.append(edge.blocker_id)
    return sorted(blockers)


def open_blocked(tx: StoreTransaction, issue_id: int) -> list[int]:
    """Open issues waiting on ``issue_id``."""
    blocked: list[int] = []
    for edge in tx.get_edges(blocker_id=issue_id):
        issue = tx.get_issue(edge.blocked_id)
        if issue is not None and issue.is_open:
            blocked.append(edge.blocked_id)
    return sorted(blocked)


def assert_reopen_acyclic(tx: StoreTransaction, issue_id: int) -> None:
    """Fail if reopening ``issue_id`` would close a cycle among open issues."""
    allowed = _open_issue_ids(tx) | {int(issue_id)}
    adjacency = blockers_by_issue(tx.get_edges())
    for blocker_id in sorted(adjacency.get(int(issue_id), [])):
        path = find_path(adjacency, blocker_id, int(issue_id), allowed=allowed)
        if path is None:
            continue
        cycle = [int(issue_id), *path]
        logger.warning("reopen of issue %s rejected: cycle %s", issue_id, _format_cycle(cycle))
        raise CycleError(
            f"reopening issue {issue_id} would create a dependency cycle: "
            f"{_format_cycle(cycle)}",
            path=tuple(cycle),
        )


@dataclass
class DependencyGraph:
    store: Store
    clock: Callable[[], int] = now_ms

    def add_block(self, blocked_id: int, blocker_id: int) -> DependencyEdge:
        """Record that ``blocked_id`` waits on ``blocker_id``."""
        blocked_key = int(blocked_id)
        blocker_key = int(blocker_id)

        with self.store.transaction() as tx:
            blocked = tx.require_issue(blocked_key)
            blocker = tx.require_issue(blocker_key)
            if blocked_key == blocker_key:
                raise ValidationError("an issue cannot block itself")

            existing = tx.get_edges(blocked_id=blocked_key, blocker_id=blocker_key)
            if existing:
                return existing[0]

            if blocked.is_open and blocker.is_open:
                adjacency = blockers_by_issue(tx.get_edges())
                path = find_path(
                    adjacency, blocker_key, blocked_key, allowed=_open_issue_ids(tx)
                )
                if path is not None:
                    cycle = [blocked_key, *path]
                    logger.warning(
                        "block %s <- %s rejected: cycle %s",
                        blocked_key,
                        blocker_key,
                        _format_cycle(cycle),
                    )
                    raise CycleError(
                        f"issue {blocker_key} already depends on issue {blocked_key}; "
                        f"adding this block would create a cycle: {_format_cycle(cycle)}",
                        path=tuple(cycle),
                    )

            now = self.clock()
            edge = tx.put_edge(
                DependencyEdge(blocked_id=blocked_key, blocker_id=blocker_key, created_at=now)
            )
            for issue in (blocked, blocker):
                tx.put_issue(_touched(issue, now))

        logger.info("issue %s is now blocked by issue %s", blocked_key, blocker_key)
        return edge

    def remove_block(self, blocked_id: int, blocker_id: int) -> None:
        blocked_key = int(blocked_id)
        blocker_key = int(blocker_id)
        with self.store.transaction() as tx:
            if not tx.remove_edge(blocked_key, blocker_key):
                raise NotFoundError(
                    f"issue {blocked_key} is not blocked by issue {blocker_key}"
                )
            now = self.clock()
            for issue_id in (blocked_key, blocker_key):
                issue = tx.get_issue(issue_id)
                if issue is not None:
                    tx.put_issue(_touched(issue, now))
        logger.info("issue %s is no longer blocked by issue %s", blocked_key, blocker_key)

    def blockers_of(self, issue_id: int) -> set[int]:
        with self.store.read() as tx:
            tx.require_issue(issue_id)
            return set(open_blockers(tx, int(issue_id)))

    def blocking(self, issue_id: int) -> set[int]:
        """Open issues that ``issue_id`` blocks."""
        with self.store.read() as tx:
            tx.require_issue(issue_id)
            return set(open_blocked(tx, int(issue_id)))

    def is_ready(self, issue_id: int) -> bool:
        with self.store.read() as tx:
            issue = tx.require_issue(issue_id)
            if not issue.is_open:
                return False
            return not open_blockers(tx, int(issue_id))

    def blocked_list(self) -> list[BlockedIssue]:
        """Open issues that have at least one open blocker."""
        with self.store.read() as tx:
            open_issues = tx.list_issues(IssueFilter(status="open"))
            open_ids = {issue.id for issue in open_issues}
            adjacency = blockers_by_issue(tx.get_edges())

        result: list[BlockedIssue] = []
        for issue in open_issues:
            blockers = sorted(b for b in adjacency.get(issue.id, []) if b in open_ids)
            if blockers:
                result.append(BlockedIssue(issue=issue, blocker_ids=tuple(blockers)))
        logger.debug("blocked list: %d issue(s)", len(result))
        return result


def _touched(issue: Issue, now: int) -> Issue:
    return replace(issue, updated_at=now)

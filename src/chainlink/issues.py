"""Issue CRUD, sub-issues, labels, comments and the parent tree."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from .errors import NotFoundError, ValidationError
from .graph import assert_reopen_acyclic, open_blocked, open_blockers
from .models import (
    DEFAULT_PRIORITY,
    Comment,
    Issue,
    IssueFilter,
    normalize_labels,
    normalize_priority,
    normalize_title,
)
from .stores.state import now_ms
from .stores.store import Store, StoreTransaction
from .timer import total_elapsed_ms

logger = logging.getLogger(__name__)

# Sentinel for "leave the parent unchanged" in update().
_UNSET: Any = object()


@dataclass(frozen=True)
class IssueDetails:
    issue: Issue
    blockers: tuple[int, ...]
    blocking: tuple[int, ...]
    children: tuple[Issue, ...]
    comments: tuple[Comment, ...]
    tracked_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue": self.issue.to_dict(),
            "blockers": list(self.blockers),
            "blocking": list(self.blocking),
            "children": [child.to_dict() for child in self.children],
            "comments": [comment.to_dict() for comment in self.comments],
            "tracked_ms": self.tracked_ms,
        }


@dataclass(frozen=True)
class TreeNode:
    issue: Issue
    children: tuple["TreeNode", ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue": self.issue.to_dict(),
            "children": [child.to_dict() for child in self.children],
        }


def _clean_description(description: str | None) -> str | None:
    if description is None:
        return None
    text = description.strip()
    return text or None


def _validate_parent(tx: StoreTransaction, issue_id: int | None, parent_id: int) -> None:
    """Parent must exist and must not be the issue itself or one of its descendants."""
    if issue_id is not None and int(parent_id) == int(issue_id):
        raise ValidationError("an issue cannot be its own parent")
    parent = tx.get_issue(parent_id)
    if parent is None:
        raise NotFoundError(f"unknown parent issue: {parent_id}")
    if issue_id is None:
        return

    seen: set[int] = set()
    cursor: Issue | None = parent
    while cursor is not None and cursor.parent is not None:
        if cursor.parent == int(issue_id):
            raise ValidationError(
                f"issue {parent_id} is a descendant of issue {issue_id}; "
                "parent hierarchy must stay a tree"
            )
        if cursor.parent in seen:
            break
        seen.add(cursor.parent)
        cursor = tx.get_issue(cursor.parent)


@dataclass
class IssueService:
    store: Store
    clock: Callable[[], int] = now_ms

    def create(
        self,
        title: str,
        *,
        description: str | None = None,
        priority: str = DEFAULT_PRIORITY,
        labels: Iterable[str] | None = None,
        parent: int | None = None,
    ) -> Issue:
        issue_title = normalize_title(title)
        issue_priority = normalize_priority(priority)
        now = self.clock()
        with self.store.transaction() as tx:
            if parent is not None:
                _validate_parent(tx, None, parent)
            issue = tx.put_issue(
                Issue(
                    id=None,
                    title=issue_title,
                    description=_clean_description(description),
                    priority=issue_priority,
                    status="open",
                    labels=normalize_labels(labels),
                    parent=int(parent) if parent is not None else None,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("created issue %s: %s", issue.id, issue.title)
        return issue

    def create_subissue(
        self,
        parent_id: int,
        title: str,
        *,
        description: str | None = None,
        priority: str = DEFAULT_PRIORITY,
        labels: Iterable[str] | None = None,
    ) -> Issue:
        return self.create(
            title,
            description=description,
            priority=priority,
            labels=labels,
            parent=parent_id,
        )

    def get(self, issue_id: int) -> Issue:
        with self.store.read() as tx:
            return tx.require_issue(issue_id)

    def show(self, issue_id: int) -> IssueDetails:
        with self.store.read() as tx:
            issue = tx.require_issue(issue_id)
            return IssueDetails(
                issue=issue,
                blockers=tuple(open_blockers(tx, int(issue_id))),
                blocking=tuple(open_blocked(tx, int(issue_id))),
                children=tuple(tx.list_issues(IssueFilter(parent=int(issue_id)))),
                comments=tuple(tx.list_comments(issue_id)),
                tracked_ms=total_elapsed_ms(tx.list_time_entries(issue_id)),
            )

    def list(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        label: str | None = None,
        parent: int | None = None,
        search: str | None = None,
    ) -> list[Issue]:
        issue_filter = IssueFilter(
            status=status,
            priority=priority,
            label=label,
            parent=parent,
            search=search,
        )
        with self.store.read() as tx:
            return tx.list_issues(issue_filter)

    def update(
        self,
        issue_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        parent: int | None = _UNSET,
    ) -> Issue:
        """Change issue fields; ``parent=None`` detaches the issue from its parent."""
        changes: dict[str, Any] = {}
        if title is not None:
            changes["title"] = normalize_title(title)
        if description is not None:
            changes["description"] = _clean_description(description)
        if priority is not None:
            changes["priority"] = normalize_priority(priority)

        with self.store.transaction() as tx:
            current = tx.require_issue(issue_id)
            if parent is not _UNSET:
                if parent is not None:
                    _validate_parent(tx, int(issue_id), parent)
                changes["parent"] = int(parent) if parent is not None else None
            if not changes:
                return current
            issue = tx.put_issue(replace(current, updated_at=self.clock(), **changes))
        logger.info("updated issue %s (%s)", issue_id, ", ".join(sorted(changes)))
        return issue

    def set_parent(self, issue_id: int, parent_id: int | None) -> Issue:
        return self.update(issue_id, parent=parent_id)

    def close(self, issue_id: int) -> Issue:
        return self._set_status(issue_id, "closed")

    def reopen(self, issue_id: int) -> Issue:
        return self._set_status(issue_id, "open")

    def _set_status(self, issue_id: int, status: str) -> Issue:
        with self.store.transaction() as tx:
            current = tx.require_issue(issue_id)
            if current.status == status:
                return current
            if status == "open":
                assert_reopen_acyclic(tx, int(issue_id))
            issue = tx.put_issue(replace(current, status=status, updated_at=self.clock()))
        logger.info("issue %s is now %s", issue_id, status)
        return issue

    def delete(self, issue_id: int) -> Issue:
        """Delete an issue with its edges, comments and time entries.

        Sub-issues are detached, not deleted.
        """
        with self.store.transaction() as tx:
            issue = tx.require_issue(issue_id)
            children = tx.list_issues(IssueFilter(parent=int(issue_id)))
            tx.delete_issue(issue_id)
        logger.info(
            "deleted issue %s (%d sub-issue(s) detached)", issue_id, len(children)
        )
        return issue

    def add_label(self, issue_id: int, label: str) -> Issue:
        value = label.strip()
        if not value:
            raise ValidationError("label cannot be empty")
        with self.store.transaction() as tx:
            current = tx.require_issue(issue_id)
            if value in current.labels:
                return current
            labels = normalize_labels([*current.labels, value])
            issue = tx.put_issue(replace(current, labels=labels, updated_at=self.clock()))
        logger.info("added label %r to issue %s", value, issue_id)
        return issue

    def remove_label(self, issue_id: int, label: str) -> Issue:
        value = label.strip()
        with self.store.transaction() as tx:
            current = tx.require_issue(issue_id)
            if value not in current.labels:
                raise NotFoundError(f"issue {issue_id} has no label {value!r}")
            labels = tuple(item for item in current.labels if item != value)
            issue = tx.put_issue(replace(current, labels=labels, updated_at=self.clock()))
        logger.info("removed label %r from issue %s", value, issue_id)
        return issue

    def add_comment(self, issue_id: int, body: str) -> Comment:
        text = str(body or "").strip()
        if not text:
            raise ValidationError("comment cannot be empty")
        now = self.clock()
        with self.store.transaction() as tx:
            current = tx.require_issue(issue_id)
            comment = tx.add_comment(
                Comment(id=None, issue_id=int(issue_id), body=text, created_at=now)
            )
            tx.put_issue(replace(current, updated_at=now))
        logger.info("added comment %s to issue %s", comment.id, issue_id)
        return comment

    def comments(self, issue_id: int) -> list[Comment]:
        with self.store.read() as tx:
            tx.require_issue(issue_id)
            return tx.list_comments(issue_id)

    def tree(self, root_id: int | None = None) -> list[TreeNode]:
        """Parent/child hierarchy; every root issue when ``root_id`` is None."""
        with self.store.read() as tx:
            if root_id is not None:
                tx.require_issue(root_id)
            issues = tx.list_issues()

        by_parent: dict[int | None, list[Issue]] = {}
        for issue in issues:
            by_parent.setdefault(issue.parent, []).append(issue)

        def build(issue: Issue, seen: frozenset[int]) -> TreeNode:
            children = [
                build(child, seen | {child.id})
                for child in by_parent.get(issue.id, [])
                if child.id not in seen
            ]
            return TreeNode(issue=issue, children=tuple(children))

        if root_id is not None:
            roots = [issue for issue in issues if issue.id == int(root_id)]
        else:
            roots = by_parent.get(None, [])
        return [build(root, frozenset({root.id})) for root in roots]

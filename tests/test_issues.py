from __future__ import annotations

from dataclasses import replace

import pytest

from chainlink.engine import Chainlink
from chainlink.errors import NotFoundError, ValidationError


def test_create_normalizes_fields_and_stamps_times(engine: Chainlink, clock) -> None:
    issue = engine.issues.create(
        "  Fix login  ",
        description="   ",
        priority="HIGH",
        labels=["bug", " bug ", "auth", ""],
    )

    assert issue.id == 1
    assert issue.title == "Fix login"
    assert issue.description is None
    assert issue.priority == "high"
    assert issue.status == "open"
    assert issue.labels == ("auth", "bug")
    assert issue.created_at == issue.updated_at == clock.now


def test_create_rejects_blank_title_and_unknown_priority(engine: Chainlink) -> None:
    with pytest.raises(ValidationError, match="title cannot be empty"):
        engine.issues.create("   ")
    with pytest.raises(ValidationError, match="invalid priority: urgent"):
        engine.issues.create("Task", priority="urgent")

    assert engine.issues.list() == []


def test_close_then_reopen_only_changes_status_and_updated_at(
    engine: Chainlink, clock
) -> None:
    original = engine.issues.create(
        "Task", description="details", priority="low", labels=["x"]
    )
    clock.advance(100)

    closed = engine.issues.close(original.id)
    clock.advance(100)
    reopened = engine.issues.reopen(original.id)

    assert closed.status == "closed"
    assert reopened.status == "open"
    assert reopened.updated_at == original.updated_at + 200
    assert replace(reopened, updated_at=original.updated_at) == original


def test_close_is_idempotent(engine: Chainlink, clock) -> None:
    issue = engine.issues.create("Task")
    first = engine.issues.close(issue.id)
    clock.advance(50)

    assert engine.issues.close(issue.id) == first


def test_update_changes_only_given_fields(engine: Chainlink, clock) -> None:
    issue = engine.issues.create("Task", description="old")
    clock.advance(10)

    updated = engine.issues.update(issue.id, title="Task v2", priority="critical")

    assert updated.title == "Task v2"
    assert updated.priority == "critical"
    assert updated.description == "old"
    assert updated.updated_at == issue.updated_at + 10
    assert engine.issues.update(issue.id) == updated


def test_update_unknown_issue_raises_not_found(engine: Chainlink) -> None:
    with pytest.raises(NotFoundError, match="unknown issue: 8"):
        engine.issues.update(8, title="nope")


def test_subissue_parent_can_be_moved_and_detached(engine: Chainlink) -> None:
    epic = engine.issues.create("Epic")
    other = engine.issues.create("Other epic")
    child = engine.issues.create_subissue(epic.id, "Slice")

    assert child.parent == epic.id

    moved = engine.issues.set_parent(child.id, other.id)
    assert moved.parent == other.id

    detached = engine.issues.update(child.id, parent=None)
    assert detached.parent is None


def test_parent_must_exist_and_keep_hierarchy_a_tree(engine: Chainlink) -> None:
    root = engine.issues.create("Root")
    mid = engine.issues.create_subissue(root.id, "Mid")
    leaf = engine.issues.create_subissue(mid.id, "Leaf")

    with pytest.raises(NotFoundError, match="unknown parent issue: 77"):
        engine.issues.create_subissue(77, "Orphan")
    with pytest.raises(ValidationError, match="own parent"):
        engine.issues.set_parent(root.id, root.id)
    with pytest.raises(ValidationError, match="must stay a tree"):
        engine.issues.set_parent(root.id, leaf.id)

    assert engine.issues.get(root.id).parent is None


def test_delete_removes_issue_and_detaches_children(engine: Chainlink) -> None:
    epic = engine.issues.create("Epic")
    child = engine.issues.create_subissue(epic.id, "Slice")
    other = engine.issues.create("Other")
    engine.graph.add_block(other.id, epic.id)
    engine.issues.add_comment(epic.id, "note")

    deleted = engine.issues.delete(epic.id)

    assert deleted.id == epic.id
    with pytest.raises(NotFoundError):
        engine.issues.get(epic.id)
    assert engine.issues.get(child.id).parent is None
    assert engine.graph.is_ready(other.id) is True
    with pytest.raises(NotFoundError):
        engine.issues.delete(epic.id)


def test_labels_are_added_once_and_removed(engine: Chainlink) -> None:
    issue = engine.issues.create("Task", labels=["b"])

    issue = engine.issues.add_label(issue.id, "a")
    assert issue.labels == ("a", "b")
    assert engine.issues.add_label(issue.id, "a").labels == ("a", "b")

    issue = engine.issues.remove_label(issue.id, "b")
    assert issue.labels == ("a",)

    with pytest.raises(NotFoundError, match="has no label"):
        engine.issues.remove_label(issue.id, "b")
    with pytest.raises(ValidationError):
        engine.issues.add_label(issue.id, "  ")


def test_list_filters_by_status_label_and_search(engine: Chainlink) -> None:
    bug = engine.issues.create("Crash on save", labels=["bug"])
    feature = engine.issues.create("Dark mode", description="save eyes")
    engine.issues.close(feature.id)

    assert [i.id for i in engine.issues.list(status="open")] == [bug.id]
    assert [i.id for i in engine.issues.list(label="bug")] == [bug.id]
    assert [i.id for i in engine.issues.list(search="save")] == [bug.id, feature.id]
    with pytest.raises(ValidationError, match="invalid status"):
        engine.issues.list(status="pending")


def test_comments_are_kept_in_order(engine: Chainlink, clock) -> None:
    issue = engine.issues.create("Task")
    first = engine.issues.add_comment(issue.id, "first look")
    clock.advance(5)
    second = engine.issues.add_comment(issue.id, "  second look ")

    assert [c.body for c in engine.issues.comments(issue.id)] == [
        "first look",
        "second look",
    ]
    assert second.created_at == first.created_at + 5
    assert engine.issues.get(issue.id).updated_at == second.created_at
    with pytest.raises(ValidationError, match="comment cannot be empty"):
        engine.issues.add_comment(issue.id, "")
    with pytest.raises(NotFoundError):
        engine.issues.add_comment(99, "lost")


def test_show_collects_related_records(engine: Chainlink, clock) -> None:
    epic = engine.issues.create("Epic")
    child = engine.issues.create_subissue(epic.id, "Slice")
    blocker = engine.issues.create("Blocker")
    waiting = engine.issues.create("Waiting")
    engine.graph.add_block(epic.id, blocker.id)
    engine.graph.add_block(waiting.id, epic.id)
    engine.issues.add_comment(epic.id, "kickoff")
    engine.timer.start(epic.id)
    clock.advance(250)
    engine.timer.stop()

    details = engine.issues.show(epic.id)

    assert details.issue.id == epic.id
    assert details.blockers == (blocker.id,)
    assert details.blocking == (waiting.id,)
    assert [c.id for c in details.children] == [child.id]
    assert [c.body for c in details.comments] == ["kickoff"]
    assert details.tracked_ms == 250
    assert details.to_dict()["issue"]["title"] == "Epic"


def test_tree_nests_sub_issues_under_roots(engine: Chainlink) -> None:
    epic = engine.issues.create("Epic")
    slice_a = engine.issues.create_subissue(epic.id, "A")
    engine.issues.create_subissue(slice_a.id, "A.1")
    loose = engine.issues.create("Loose")

    forest = engine.issues.tree()

    assert [node.issue.id for node in forest] == [epic.id, loose.id]
    assert [node.issue.title for node in forest[0].children] == ["A"]
    assert [node.issue.title for node in forest[0].children[0].children] == ["A.1"]

    subtree = engine.issues.tree(slice_a.id)
    assert len(subtree) == 1
    assert subtree[0].to_dict()["children"][0]["issue"]["title"] == "A.1"

    with pytest.raises(NotFoundError):
        engine.issues.tree(500)


def test_show_blocking_lists_only_open_waiting_issues(engine: Chainlink) -> None:
    blocker = engine.issues.create("Blocker")
    waiting = engine.issues.create("Waiting")
    done = engine.issues.create("Done")
    engine.graph.add_block(waiting.id, blocker.id)
    engine.graph.add_block(done.id, blocker.id)
    engine.issues.close(done.id)

    details = engine.issues.show(blocker.id)

    assert details.blocking == (waiting.id,)
    assert engine.graph.blocking(blocker.id) == set(details.blocking)

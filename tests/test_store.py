from __future__ import annotations

import multiprocessing
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest

from chainlink.errors import CycleError, NotFoundError, StorageError, TimerAlreadyRunningError
from chainlink.graph import DependencyGraph
from chainlink.models import DependencyEdge, Issue, IssueFilter, Session, TimeEntry
from chainlink.stores.store import Store
from chainlink.timer import TimeTracker


def _issue(title: str, **fields: object) -> Issue:
    return Issue(id=None, title=title, created_at=1000, updated_at=1000, **fields)


def test_put_issue_assigns_monotonic_ids_that_are_never_reused(store: Store) -> None:
    first = store.put_issue(_issue("First"))
    second = store.put_issue(_issue("Second"))

    with store.transaction() as tx:
        assert tx.delete_issue(second.id)

    third = store.put_issue(_issue("Third"))

    assert first.id == 1
    assert second.id == 2
    assert third.id == 3


def test_put_issue_round_trips_fields_and_labels(store: Store) -> None:
    created = store.put_issue(
        _issue(
            "Write docs",
            description="all of them",
            priority="high",
            labels=("docs", "backlog"),
        )
    )

    loaded = store.get_issue(created.id)

    assert loaded == created
    assert loaded is not None
    assert loaded.labels == ("backlog", "docs")
    assert loaded.description == "all of them"
    assert loaded.priority == "high"
    assert loaded.status == "open"


def test_put_issue_replaces_labels_on_update(store: Store) -> None:
    created = store.put_issue(_issue("Task", labels=("a", "b")))

    updated = store.put_issue(replace(created, labels=("c",), title="Task v2"))

    assert updated.labels == ("c",)
    assert updated.title == "Task v2"


def test_put_issue_update_of_unknown_id_raises_not_found(store: Store) -> None:
    with pytest.raises(NotFoundError, match="unknown issue: 42"):
        store.put_issue(Issue(id=42, title="ghost"))


def test_list_issues_applies_filters(store: Store) -> None:
    parent = store.put_issue(_issue("Epic"))
    bug = store.put_issue(
        _issue("Crash on start", labels=("bug",), priority="critical", parent=parent.id)
    )
    store.put_issue(_issue("Polish copy", description="button text", status="closed"))

    assert [i.id for i in store.list_issues(IssueFilter(label="bug"))] == [bug.id]
    assert [i.id for i in store.list_issues(IssueFilter(priority="critical"))] == [bug.id]
    assert [i.id for i in store.list_issues(IssueFilter(parent=parent.id))] == [bug.id]
    assert [i.title for i in store.list_issues(IssueFilter(status="closed"))] == [
        "Polish copy"
    ]
    assert [i.title for i in store.list_issues(IssueFilter(search="button"))] == [
        "Polish copy"
    ]
    assert len(store.list_issues()) == 3


def test_edges_are_stored_once_and_removed(store: Store) -> None:
    a = store.put_issue(_issue("A"))
    b = store.put_issue(_issue("B"))

    edge = DependencyEdge(blocked_id=a.id, blocker_id=b.id, created_at=5)
    store.put_edge(edge)
    store.put_edge(DependencyEdge(blocked_id=a.id, blocker_id=b.id, created_at=9))

    assert store.get_edges() == [edge]
    assert store.get_edges(blocker_id=b.id) == [edge]
    assert store.get_edges(blocked_id=b.id) == []

    assert store.remove_edge(a.id, b.id) is True
    assert store.remove_edge(a.id, b.id) is False
    assert store.get_edges() == []


def test_deleting_issue_cascades_edges_and_detaches_children(store: Store) -> None:
    parent = store.put_issue(_issue("Parent"))
    child = store.put_issue(_issue("Child", parent=parent.id))
    other = store.put_issue(_issue("Other"))
    store.put_edge(DependencyEdge(blocked_id=other.id, blocker_id=parent.id))

    with store.transaction() as tx:
        tx.delete_issue(parent.id)

    assert store.get_edges() == []
    reloaded = store.get_issue(child.id)
    assert reloaded is not None
    assert reloaded.parent is None


def test_session_defaults_to_inactive_and_round_trips(store: Store) -> None:
    assert store.get_session() == Session()

    issue = store.put_issue(_issue("Work item"))
    saved = store.put_session(
        Session(active=True, current_issue_id=issue.id, handoff_notes="n", started_at=7)
    )

    assert store.get_session() == saved
    assert saved.current_issue_id == issue.id


def test_storage_rejects_second_running_time_entry(store: Store) -> None:
    issue = store.put_issue(_issue("Timed"))
    store.put_time_entry(TimeEntry(id=None, issue_id=issue.id, started_at=10))

    with pytest.raises(TimerAlreadyRunningError):
        store.put_time_entry(TimeEntry(id=None, issue_id=issue.id, started_at=20))

    assert len(store.list_time_entries()) == 1


def test_failed_transaction_leaves_prior_state_unchanged(store: Store) -> None:
    store.put_issue(_issue("Keep"))

    with pytest.raises(RuntimeError, match="boom"):
        with store.transaction() as tx:
            tx.put_issue(_issue("Discard"))
            raise RuntimeError("boom")

    assert [issue.title for issue in store.list_issues()] == ["Keep"]


def test_corrupt_store_file_raises_storage_error(tmp_path: Path) -> None:
    root = tmp_path / ".chainlink"
    root.mkdir()
    (root / "chainlink.sqlite3").write_bytes(b"this is not a sqlite database" * 10)

    with pytest.raises(StorageError):
        Store(root).list_issues()


def test_store_without_create_requires_existing_file(tmp_path: Path) -> None:
    store = Store(tmp_path / ".chainlink", create_on_connect=False)

    with pytest.raises(StorageError, match="no chainlink store"):
        store.get_issue(1)


def test_from_workdir_prefers_nearest_existing_state_dir(tmp_path: Path) -> None:
    (tmp_path / ".chainlink").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    store = Store.from_workdir(nested)

    assert store.root == (tmp_path / ".chainlink").resolve()


def test_from_workdir_honors_state_dir_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "elsewhere"
    monkeypatch.setenv("CHAINLINK_STATE_DIR", str(target))

    store = Store.from_workdir(tmp_path)

    assert store.root == target.resolve()
    assert target.is_dir()


def test_from_workdir_stops_at_project_root(tmp_path: Path) -> None:
    (tmp_path / ".chainlink").mkdir()
    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    nested = repo / "pkg" / "mod"
    nested.mkdir(parents=True)

    store = Store.from_workdir(nested)

    assert store.root == (repo / ".chainlink").resolve()
    assert store.root.is_dir()


def test_from_workdir_finds_state_dir_below_project_root(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    sub = tmp_path / "service"
    (sub / ".chainlink").mkdir(parents=True)

    store = Store.from_workdir(sub / "src")

    assert store.root == (sub / ".chainlink").resolve()


# Process targets must be importable by spawned children.
def _timer_start_worker(root: str, issue_id: int, barrier: Any, results: Any) -> None:
    tracker = TimeTracker(Store(Path(root)))
    barrier.wait()
    try:
        tracker.start(issue_id)
    except TimerAlreadyRunningError:
        results.put("running")
    except Exception as exc:
        results.put(type(exc).__name__)
    else:
        results.put("ok")


def _add_block_worker(
    root: str, blocked_id: int, blocker_id: int, barrier: Any, results: Any
) -> None:
    graph = DependencyGraph(Store(Path(root)))
    barrier.wait()
    try:
        graph.add_block(blocked_id, blocker_id)
    except CycleError:
        results.put("cycle")
    except Exception as exc:
        results.put(type(exc).__name__)
    else:
        results.put("ok")


def _race(target: Callable[..., None], arg_sets: list[tuple[Any, ...]]) -> list[str]:
    ctx = multiprocessing.get_context("spawn")
    barrier = ctx.Barrier(len(arg_sets))
    results = ctx.Queue()
    procs = [
        ctx.Process(target=target, args=(*args, barrier, results)) for args in arg_sets
    ]
    for proc in procs:
        proc.start()
    try:
        outcomes = [results.get(timeout=60) for _ in procs]
    finally:
        for proc in procs:
            proc.join(timeout=60)
    return sorted(outcomes)


def test_concurrent_timer_starts_admit_exactly_one(store: Store) -> None:
    ids = [store.put_issue(_issue(f"Issue {n}")).id for n in range(6)]

    outcomes = _race(_timer_start_worker, [(str(store.root), i) for i in ids])

    assert outcomes == ["ok"] + ["running"] * (len(ids) - 1)
    running = [entry for entry in store.list_time_entries() if entry.running]
    assert len(running) == 1
    assert len(store.list_time_entries()) == 1


def test_concurrent_reverse_blocks_admit_exactly_one(store: Store) -> None:
    for round_no in range(3):
        a = store.put_issue(_issue(f"A{round_no}"))
        b = store.put_issue(_issue(f"B{round_no}"))

        outcomes = _race(
            _add_block_worker,
            [(str(store.root), a.id, b.id), (str(store.root), b.id, a.id)],
        )

        assert outcomes == ["cycle", "ok"]
        pair = {a.id, b.id}
        stored = [
            edge
            for edge in store.get_edges()
            if {edge.blocked_id, edge.blocker_id} == pair
        ]
        assert len(stored) == 1

"""SQLite-backed durable store for issues, edges, the session and time entries."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, StorageError, TimerAlreadyRunningError
from ..models import Comment, DependencyEdge, Issue, IssueFilter, Session, TimeEntry
from ..models import normalize_priority, normalize_status
from .state import resolve_state_dir

logger = logging.getLogger(__name__)

DB_FILENAME = "chainlink.sqlite3"
DEFAULT_BUSY_TIMEOUT_MS = 5000

_SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    priority TEXT NOT NULL,
    status TEXT NOT NULL,
    parent_id INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY(parent_id) REFERENCES issues(id) ON DELETE SET NULL
);
CREATE TABLE IF NOT EXISTS issue_labels (
    issue_id INTEGER NOT NULL,
    label TEXT NOT NULL,
    PRIMARY KEY(issue_id, label),
    FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS dependency_edges (
    blocked_id INTEGER NOT NULL,
    blocker_id INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY(blocked_id, blocker_id),
    CHECK(blocked_id <> blocker_id),
    FOREIGN KEY(blocked_id) REFERENCES issues(id) ON DELETE CASCADE,
    FOREIGN KEY(blocker_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS session (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    active INTEGER NOT NULL DEFAULT 0,
    current_issue_id INTEGER,
    handoff_notes TEXT,
    last_issue_id INTEGER,
    started_at INTEGER,
    ended_at INTEGER,
    FOREIGN KEY(current_issue_id) REFERENCES issues(id) ON DELETE SET NULL,
    FOREIGN KEY(last_issue_id) REFERENCES issues(id) ON DELETE SET NULL
);
CREATE TABLE IF NOT EXISTS time_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id INTEGER NOT NULL,
    started_at INTEGER NOT NULL,
    stopped_at INTEGER,
    FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS issue_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id INTEGER NOT NULL,
    body TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status, priority);
CREATE INDEX IF NOT EXISTS idx_issues_parent ON issues(parent_id);
CREATE INDEX IF NOT EXISTS idx_issue_labels_label ON issue_labels(label);
CREATE INDEX IF NOT EXISTS idx_dependency_edges_blocker ON dependency_edges(blocker_id);
CREATE INDEX IF NOT EXISTS idx_time_entries_issue ON time_entries(issue_id, started_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_time_entries_one_running
    ON time_entries((stopped_at IS NULL)) WHERE stopped_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_issue_comments_issue ON issue_comments(issue_id, created_at);
"""

_ISSUE_COLUMNS = (
    "id, title, description, priority, status, parent_id, created_at, updated_at"
)


def _optional_int(value: object) -> int | None:
    return int(value) if value is not None else None


def _issue_from_row(row: sqlite3.Row, labels: list[str]) -> Issue:
    return Issue(
        id=int(row["id"]),
        title=str(row["title"]),
        description=(str(row["description"]) if row["description"] is not None else None),
        priority=str(row["priority"]),
        status=str(row["status"]),
        labels=tuple(labels),
        parent=_optional_int(row["parent_id"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def _edge_from_row(row: sqlite3.Row) -> DependencyEdge:
    return DependencyEdge(
        blocked_id=int(row["blocked_id"]),
        blocker_id=int(row["blocker_id"]),
        created_at=int(row["created_at"]),
    )


def _time_entry_from_row(row: sqlite3.Row) -> TimeEntry:
    return TimeEntry(
        id=int(row["id"]),
        issue_id=int(row["issue_id"]),
        started_at=int(row["started_at"]),
        stopped_at=_optional_int(row["stopped_at"]),
    )


class StoreTransaction:
    """Record operations bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # -- issues -------------------------------------------------------------

    def get_issue(self, issue_id: int) -> Issue | None:
        row = self.conn.execute(
            f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE id = ?",
            (int(issue_id),),
        ).fetchone()
        if row is None:
            return None
        labels = self._labels_for_ids([int(row["id"])]).get(int(row["id"]), [])
        return _issue_from_row(row, labels)

    def require_issue(self, issue_id: int) -> Issue:
        issue = self.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"unknown issue: {issue_id}")
        return issue

    def put_issue(self, issue: Issue) -> Issue:
        """Insert ``issue`` when it has no id, otherwise replace the stored record."""
        values = (
            issue.title,
            issue.description,
            normalize_priority(issue.priority),
            normalize_status(issue.status),
            issue.parent,
            int(issue.created_at),
            int(issue.updated_at),
        )
        if issue.id is None:
            cur = self.conn.execute(
                """
                INSERT INTO issues(
                    title, description, priority, status, parent_id, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            issue_id = int(cur.lastrowid)
        else:
            issue_id = int(issue.id)
            cur = self.conn.execute(
                """
                UPDATE issues
                SET title = ?, description = ?, priority = ?, status = ?,
                    parent_id = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (*values, issue_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"unknown issue: {issue_id}")
            self.conn.execute("DELETE FROM issue_labels WHERE issue_id = ?", (issue_id,))

        for label in sorted(set(issue.labels)):
            self.conn.execute(
                "INSERT INTO issue_labels(issue_id, label) VALUES(?, ?)",
                (issue_id, label),
            )
        return self.require_issue(issue_id)

    def delete_issue(self, issue_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM issues WHERE id = ?", (int(issue_id),))
        return cur.rowcount > 0

    def list_issues(self, issue_filter: IssueFilter | None = None) -> list[Issue]:
        where: list[str] = []
        params: list[Any] = []
        flt = issue_filter or IssueFilter()

        if flt.status:
            where.append("i.status = ?")
            params.append(normalize_status(flt.status))
        if flt.priority:
            where.append("i.priority = ?")
            params.append(normalize_priority(flt.priority))
        if flt.parent is not None:
            where.append("i.parent_id = ?")
            params.append(int(flt.parent))
        if flt.label:
            where.append(
                "EXISTS (SELECT 1 FROM issue_labels l WHERE l.issue_id = i.id AND l.label = ?)"
            )
            params.append(flt.label.strip())
        if flt.search:
            text = flt.search.strip()
            if text:
                like = f"%{text}%"
                where.append("(i.title LIKE ? OR IFNULL(i.description, '') LIKE ?)")
                params.extend((like, like))

        query = f"SELECT {_ISSUE_COLUMNS} FROM issues i"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY i.id ASC"

        rows = self.conn.execute(query, tuple(params)).fetchall()
        labels = self._labels_for_ids([int(row["id"]) for row in rows])
        return [_issue_from_row(row, labels.get(int(row["id"]), [])) for row in rows]

    def _labels_for_ids(self, issue_ids: list[int]) -> dict[int, list[str]]:
        if not issue_ids:
            return {}

        placeholders = ", ".join("?" for _ in issue_ids)
        rows = self.conn.execute(
            f"""
            SELECT issue_id, label
            FROM issue_labels
            WHERE issue_id IN ({placeholders})
            ORDER BY label ASC
            """,
            tuple(issue_ids),
        ).fetchall()

        labels: dict[int, list[str]] = {issue_id: [] for issue_id in issue_ids}
        for row in rows:
            labels[int(row["issue_id"])].append(str(row["label"]))
        return labels

    # -- dependency edges ---------------------------------------------------

    def get_edges(
        self,
        *,
        blocked_id: int | None = None,
        blocker_id: int | None = None,
    ) -> list[DependencyEdge]:
        where: list[str] = []
        params: list[Any] = []
        if blocked_id is not None:
            where.append("blocked_id = ?")
            params.append(int(blocked_id))
        if blocker_id is not None:
            where.append("blocker_id = ?")
            params.append(int(blocker_id))

        query = "SELECT blocked_id, blocker_id, created_at FROM dependency_edges"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY blocked_id ASC, blocker_id ASC"
        return [_edge_from_row(row) for row in self.conn.execute(query, tuple(params))]

    def put_edge(self, edge: DependencyEdge) -> DependencyEdge:
        self.conn.execute(
            """
            INSERT OR IGNORE INTO dependency_edges(blocked_id, blocker_id, created_at)
            VALUES(?, ?, ?)
            """,
            (int(edge.blocked_id), int(edge.blocker_id), int(edge.created_at)),
        )
        stored = self.get_edges(blocked_id=edge.blocked_id, blocker_id=edge.blocker_id)
        return stored[0]

    def remove_edge(self, blocked_id: int, blocker_id: int) -> bool:
        cur = self.conn.execute(
            "DELETE FROM dependency_edges WHERE blocked_id = ? AND blocker_id = ?",
            (int(blocked_id), int(blocker_id)),
        )
        return cur.rowcount > 0

    # -- session ------------------------------------------------------------

    def get_session(self) -> Session:
        row = self.conn.execute(
            """
            SELECT active, current_issue_id, handoff_notes, last_issue_id, started_at, ended_at
            FROM session
            WHERE id = 1
            """
        ).fetchone()
        if row is None:
            return Session()
        return Session(
            active=bool(row["active"]),
            current_issue_id=_optional_int(row["current_issue_id"]),
            handoff_notes=(
                str(row["handoff_notes"]) if row["handoff_notes"] is not None else None
            ),
            last_issue_id=_optional_int(row["last_issue_id"]),
            started_at=_optional_int(row["started_at"]),
            ended_at=_optional_int(row["ended_at"]),
        )

    def put_session(self, session: Session) -> Session:
        self.conn.execute(
            """
            INSERT INTO session(
                id, active, current_issue_id, handoff_notes, last_issue_id, started_at, ended_at
            )
            VALUES(1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                active = excluded.active,
                current_issue_id = excluded.current_issue_id,
                handoff_notes = excluded.handoff_notes,
                last_issue_id = excluded.last_issue_id,
                started_at = excluded.started_at,
                ended_at = excluded.ended_at
            """,
            (
                1 if session.active else 0,
                session.current_issue_id,
                session.handoff_notes,
                session.last_issue_id,
                session.started_at,
                session.ended_at,
            ),
        )
        return self.get_session()

    # -- time entries -------------------------------------------------------

    def get_active_timer(self) -> TimeEntry | None:
        row = self.conn.execute(
            """
            SELECT id, issue_id, started_at, stopped_at
            FROM time_entries
            WHERE stopped_at IS NULL
            ORDER BY id ASC
            LIMIT 1
            """
        ).fetchone()
        return _time_entry_from_row(row) if row is not None else None

    def put_time_entry(self, entry: TimeEntry) -> TimeEntry:
        try:
            if entry.id is None:
                cur = self.conn.execute(
                    "INSERT INTO time_entries(issue_id, started_at, stopped_at) VALUES(?, ?, ?)",
                    (int(entry.issue_id), int(entry.started_at), entry.stopped_at),
                )
                entry_id = int(cur.lastrowid)
            else:
                entry_id = int(entry.id)
                cur = self.conn.execute(
                    """
                    UPDATE time_entries
                    SET issue_id = ?, started_at = ?, stopped_at = ?
                    WHERE id = ?
                    """,
                    (int(entry.issue_id), int(entry.started_at), entry.stopped_at, entry_id),
                )
                if cur.rowcount == 0:
                    raise NotFoundError(f"unknown time entry: {entry_id}")
        except sqlite3.IntegrityError as exc:
            if entry.stopped_at is None and "time_entries" in str(exc):
                raise TimerAlreadyRunningError(
                    "a timer is already running", entry=self.get_active_timer()
                ) from exc
            raise

        row = self.conn.execute(
            "SELECT id, issue_id, started_at, stopped_at FROM time_entries WHERE id = ?",
            (entry_id,),
        ).fetchone()
        return _time_entry_from_row(row)

    def list_time_entries(self, issue_id: int | None = None) -> list[TimeEntry]:
        query = "SELECT id, issue_id, started_at, stopped_at FROM time_entries"
        params: tuple[Any, ...] = ()
        if issue_id is not None:
            query += " WHERE issue_id = ?"
            params = (int(issue_id),)
        query += " ORDER BY started_at ASC, id ASC"
        return [_time_entry_from_row(row) for row in self.conn.execute(query, params)]

    # -- comments -----------------------------------------------------------

    def add_comment(self, comment: Comment) -> Comment:
        cur = self.conn.execute(
            "INSERT INTO issue_comments(issue_id, body, created_at) VALUES(?, ?, ?)",
            (int(comment.issue_id), comment.body, int(comment.created_at)),
        )
        return Comment(
            id=int(cur.lastrowid),
            issue_id=int(comment.issue_id),
            body=comment.body,
            created_at=int(comment.created_at),
        )

    def list_comments(self, issue_id: int) -> list[Comment]:
        rows = self.conn.execute(
            """
            SELECT id, issue_id, body, created_at
            FROM issue_comments
            WHERE issue_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (int(issue_id),),
        ).fetchall()
        return [
            Comment(
                id=int(row["id"]),
                issue_id=int(row["issue_id"]),
                body=str(row["body"]),
                created_at=int(row["created_at"]),
            )
            for row in rows
        ]


@dataclass
class Store:
    root: Path
    create_on_connect: bool = True
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> "Store":
        return cls(
            resolve_state_dir(cwd, create=create),
            create_on_connect=create,
            busy_timeout_ms=busy_timeout_ms,
        )

    @property
    def db_path(self) -> Path:
        return self.root / DB_FILENAME

    def _connect(self) -> sqlite3.Connection:
        if self.create_on_connect:
            self.root.mkdir(parents=True, exist_ok=True)
        elif not self.db_path.exists():
            raise StorageError(f"no chainlink store at {self.db_path}")
        conn = sqlite3.connect(
            self.db_path,
            timeout=max(0, self.busy_timeout_ms) / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(_SCHEMA)
        return conn

    @contextlib.contextmanager
    def _begin(self, statement: str) -> Iterator[StoreTransaction]:
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as exc:
            logger.error("cannot open store %s: %s", self.db_path, exc)
            raise StorageError(f"cannot open store {self.db_path}: {exc}") from exc

        try:
            conn.execute(statement)
            yield StoreTransaction(conn)
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(conn)
            logger.error("store operation failed on %s: %s", self.db_path, exc)
            raise StorageError(f"store operation failed: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")

    def transaction(self) -> contextlib.AbstractContextManager[StoreTransaction]:
        """Open a write transaction holding the database write lock until it ends."""
        return self._begin("BEGIN IMMEDIATE")

    def read(self) -> contextlib.AbstractContextManager[StoreTransaction]:
        return self._begin("BEGIN")

    # -- single-operation conveniences --------------------------------------

    def get_issue(self, issue_id: int) -> Issue | None:
        with self.read() as tx:
            return tx.get_issue(issue_id)

    def put_issue(self, issue: Issue) -> Issue:
        with self.transaction() as tx:
            return tx.put_issue(issue)

    def list_issues(self, issue_filter: IssueFilter | None = None) -> list[Issue]:
        with self.read() as tx:
            return tx.list_issues(issue_filter)

    def get_edges(
        self,
        *,
        blocked_id: int | None = None,
        blocker_id: int | None = None,
    ) -> list[DependencyEdge]:
        with self.read() as tx:
            return tx.get_edges(blocked_id=blocked_id, blocker_id=blocker_id)

    def put_edge(self, edge: DependencyEdge) -> DependencyEdge:
        with self.transaction() as tx:
            return tx.put_edge(edge)

    def remove_edge(self, blocked_id: int, blocker_id: int) -> bool:
        with self.transaction() as tx:
            return tx.remove_edge(blocked_id, blocker_id)

    def get_session(self) -> Session:
        with self.read() as tx:
            return tx.get_session()

    def put_session(self, session: Session) -> Session:
        with self.transaction() as tx:
            return tx.put_session(session)

    def get_active_timer(self) -> TimeEntry | None:
        with self.read() as tx:
            return tx.get_active_timer()

    def put_time_entry(self, entry: TimeEntry) -> TimeEntry:
        with self.transaction() as tx:
            return tx.put_time_entry(entry)

    def list_time_entries(self, issue_id: int | None = None) -> list[TimeEntry]:
        with self.read() as tx:
            return tx.list_time_entries(issue_id)

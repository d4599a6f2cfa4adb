"""Work-session lifecycle and handoff notes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from .errors import NotFoundError
from .models import Session
from .stores.state import now_ms
from .stores.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStart:
    session: Session
    previous_notes: str | None = None
    previous_issue_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "previous_notes": self.previous_notes,
            "previous_issue_id": self.previous_issue_id,
        }


@dataclass(frozen=True)
class SessionStatus:
    session: Session
    elapsed_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"session": self.session.to_dict(), "elapsed_ms": self.elapsed_ms}


@dataclass
class SessionManager:
    """Single session record kept in the store, never in process memory."""

    store: Store
    clock: Callable[[], int] = now_ms

    def start(self) -> SessionStart:
        """Begin a session, surfacing the notes left by the last ``end``.

        Starting while a session is active resets it. Handoff notes are left in
        place; only the next ``end`` replaces them.
        """
        with self.store.transaction() as tx:
            previous = tx.get_session()
            if previous.active:
                logger.info("resetting active session started at %s", previous.started_at)
            session = tx.put_session(
                replace(
                    previous,
                    active=True,
                    current_issue_id=None,
                    started_at=self.clock(),
                    ended_at=None,
                )
            )
        logger.info("session started")
        return SessionStart(
            session=session,
            previous_notes=previous.handoff_notes,
            previous_issue_id=previous.last_issue_id,
        )

    def work(self, issue_id: int) -> Session:
        with self.store.transaction() as tx:
            tx.require_issue(issue_id)
            session = tx.get_session()
            if not session.active:
                raise NotFoundError("no active session; run session start first")
            session = tx.put_session(replace(session, current_issue_id=int(issue_id)))
        logger.info("session now working on issue %s", issue_id)
        return session

    def end(self, notes: str | None = None) -> Session:
        """Close the active session, replacing the handoff notes with ``notes``."""
        text = notes if notes is not None and notes.strip() else None
        with self.store.transaction() as tx:
            session = tx.get_session()
            if not session.active:
                raise NotFoundError("no active session to end")
            session = tx.put_session(
                replace(
                    session,
                    active=False,
                    current_issue_id=None,
                    handoff_notes=text,
                    last_issue_id=session.current_issue_id,
                    ended_at=self.clock(),
                )
            )
        logger.info("session ended (notes=%s)", "yes" if session.handoff_notes else "no")
        return session

    def status(self) -> SessionStatus | None:
        session = self.store.get_session()
        if not session.active:
            return None
        elapsed = max(0, self.clock() - (session.started_at or 0))
        return SessionStatus(session=session, elapsed_ms=elapsed)

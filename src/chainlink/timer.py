"""Globally exclusive work timer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from .errors import NoActiveTimerError, TimerAlreadyRunningError
from .models import TimeEntry
from .stores.state import now_ms
from .stores.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerStatus:
    entry: TimeEntry
    elapsed_ms: int

    @property
    def issue_id(self) -> int:
        return self.entry.issue_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.entry.issue_id,
            "entry": self.entry.to_dict(),
            "elapsed_ms": self.elapsed_ms,
        }


def total_elapsed_ms(entries: list[TimeEntry]) -> int:
    """Sum of completed entry durations; running entries do not count yet."""
    return sum(entry.duration_ms for entry in entries if not entry.running)


@dataclass
class TimeTracker:
    store: Store
    clock: Callable[[], int] = now_ms

    def start(self, issue_id: int) -> TimeEntry:
        with self.store.transaction() as tx:
            tx.require_issue(issue_id)
            active = tx.get_active_timer()
            if active is not None:
                logger.warning(
                    "timer start for issue %s rejected: issue %s is running",
                    issue_id,
                    active.issue_id,
                )
                raise TimerAlreadyRunningError(
                    f"timer already running for issue {active.issue_id}; stop it first",
                    entry=active,
                )
            entry = tx.put_time_entry(
                TimeEntry(id=None, issue_id=int(issue_id), started_at=self.clock())
            )
        logger.info("timer started for issue %s", issue_id)
        return entry

    def stop(self) -> TimeEntry:
        with self.store.transaction() as tx:
            active = tx.get_active_timer()
            if active is None:
                raise NoActiveTimerError("no timer is running")
            stopped_at = max(active.started_at, self.clock())
            entry = tx.put_time_entry(replace(active, stopped_at=stopped_at))
        logger.info(
            "timer stopped for issue %s after %d ms", entry.issue_id, entry.duration_ms
        )
        return entry

    def status(self) -> TimerStatus | None:
        active = self.store.get_active_timer()
        if active is None:
            return None
        return TimerStatus(entry=active, elapsed_ms=max(0, self.clock() - active.started_at))

    def entries(self, issue_id: int) -> list[TimeEntry]:
        with self.store.read() as tx:
            tx.require_issue(issue_id)
            return tx.list_time_entries(issue_id)

    def total(self, issue_id: int) -> int:
        return total_elapsed_ms(self.entries(issue_id))

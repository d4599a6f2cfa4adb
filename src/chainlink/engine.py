"""Engine facade wiring every component over one store."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .config import ChainlinkConfig, load_config
from .graph import DependencyGraph
from .issues import IssueService
from .logging_setup import setup_logging
from .scheduler import Scheduler
from .sessions import SessionManager
from .stores.state import now_ms, resolve_state_dir
from .stores.store import Store
from .timer import TimeTracker


@dataclass
class Chainlink:
    store: Store
    config: ChainlinkConfig = field(default_factory=ChainlinkConfig)
    clock: Callable[[], int] = now_ms

    def __post_init__(self) -> None:
        self.issues = IssueService(self.store, clock=self.clock)
        self.graph = DependencyGraph(self.store, clock=self.clock)
        self.scheduler = Scheduler(
            self.store, progress_weighting=self.config.progress_weighting
        )
        self.sessions = SessionManager(self.store, clock=self.clock)
        self.timer = TimeTracker(self.store, clock=self.clock)

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
        configure_logging: bool = False,
    ) -> "Chainlink":
        state_dir = resolve_state_dir(cwd, create=create)
        config = load_config(state_dir)
        if configure_logging:
            setup_logging(config.log_level_number, log_file=config.log_file)
        store = Store(
            state_dir,
            create_on_connect=create,
            busy_timeout_ms=config.busy_timeout_ms,
        )
        return cls(store, config=config)

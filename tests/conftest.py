from __future__ import annotations

from pathlib import Path

import pytest

from chainlink.engine import Chainlink
from chainlink.stores.store import Store


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CHAINLINK_STATE_DIR", raising=False)
    monkeypatch.delenv("CHAINLINK_LOG_LEVEL", raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(tmp_path / ".chainlink")


@pytest.fixture
def engine(store: Store, clock: FakeClock) -> Chainlink:
    return Chainlink(store, clock=clock)

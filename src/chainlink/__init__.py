from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import (
    ChainlinkError,
    CycleError,
    NoActiveTimerError,
    NotFoundError,
    StorageError,
    TimerAlreadyRunningError,
    ValidationError,
)

__all__ = [
    "__version__",
    "Chainlink",
    "ChainlinkError",
    "CycleError",
    "NoActiveTimerError",
    "NotFoundError",
    "StorageError",
    "TimerAlreadyRunningError",
    "ValidationError",
]

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

if TYPE_CHECKING:
    from .engine import Chainlink


def __getattr__(name: str):
    if name == "Chainlink":
        from .engine import Chainlink

        return Chainlink
    raise AttributeError(f"module 'chainlink' has no attribute {name!r}")

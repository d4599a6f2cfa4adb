from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_HANDLER_MARK = "_chainlink_handler"


def setup_logging(
    level: int = logging.WARNING,
    *,
    log_file: str | Path | None = None,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """Route ``chainlink.*`` logs to stderr via rich, plus an optional log file.

    Safe to call more than once; earlier chainlink handlers are replaced.
    """
    logger = logging.getLogger("chainlink")
    logger.setLevel(min(level, file_level) if log_file else level)
    logger.propagate = False

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            logger.removeHandler(handler)
            handler.close()

    console = RichHandler(
        console=Console(file=sys.stderr, highlight=False),
        show_path=False,
        rich_tracebacks=False,
    )
    console.setLevel(level)
    setattr(console, _HANDLER_MARK, True)
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path), encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        setattr(fh, _HANDLER_MARK, True)
        logger.addHandler(fh)

    return logger

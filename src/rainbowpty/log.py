from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from rich.console import Console
from rich.logging import RichHandler

LOG_FILENAME = "rainbowpty.log"


@contextmanager
def file_logging(level: str, log_path: Path) -> Iterator[logging.Logger]:
    """Send logs to a file for the duration of the context.

    Standard output carries the child's screen, so logs can never go there.

    Args:
        level: Level name, e.g. "WARNING".
        log_path: Path to the log file.
    """
    logger = logging.getLogger("rainbowpty")
    with log_path.open("a", encoding="utf-8") as log_file:
        console = Console(file=log_file, force_terminal=False, width=120)
        handler = RichHandler(console=console, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        previous_level = logger.level
        logger.addHandler(handler)
        logger.setLevel(level)
        try:
            yield logger
        finally:
            logger.removeHandler(handler)
            logger.setLevel(previous_level)

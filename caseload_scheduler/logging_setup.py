from __future__ import annotations

import logging


def setup_logging(level: str = "INFO") -> None:
    """Configure console logging for the scheduler.

    Safe to call multiple times (won't double-add handlers).
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    console = logging.StreamHandler()
    console.setFormatter(formatter)

    logging.basicConfig(level=level.upper(), handlers=[console])

    # SQL echo is noisy at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

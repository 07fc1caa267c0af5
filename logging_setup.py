"""Application logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(log_path: str | Path = "grace.log") -> logging.Logger:
    logger = logging.getLogger("grace")
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))
    logger.addHandler(file_handler)

    # stdout belongs to the supervised command's output
    console_handler = RichHandler(
        console=Console(stderr=True),
        markup=False,
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)
    return logger

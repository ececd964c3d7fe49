from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s"
DATE_FORMAT = "%H:%M:%S"


class TerminalFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *, use_color: bool = True) -> None:
        super().__init__(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if not self.use_color:
            return text
        color = self.COLORS.get(record.levelname, self.RESET)
        return f"{color}{text}{self.RESET}"


def resolve_level(level: str | int | None = None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("SQUARES_LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None) -> None:
    """Send log records from every module to stderr.

    The level comes from the argument, then SQUARES_LOG_LEVEL, then INFO.
    Calling this again replaces the handler instead of stacking a second one.
    """
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    for h in list(root.handlers):
        if getattr(h, "_squares_handler", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TerminalFormatter(use_color=sys.stderr.isatty()))
    handler._squares_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)

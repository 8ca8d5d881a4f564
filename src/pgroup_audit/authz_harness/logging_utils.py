"""Logging helpers for the authorization harness."""

from __future__ import annotations

import logging
from pathlib import Path


class FindingFilter(logging.Filter):
    """Keep warnings and above plus records explicitly tagged as findings."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if record.levelno >= logging.WARNING:
            return True
        return bool(getattr(record, "finding", False))


def configure_logging(level: int = logging.INFO, log_paths: list[str] | None = None) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for index, entry in enumerate(log_paths or []):
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        if index > 0:
            handler.addFilter(FindingFilter())
        handlers.append(handler)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )

"""Logging setup shared by the app and its runner."""

import logging

from ..config import settings


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once. Level defaults to ``LOG_LEVEL``."""
    level_name = (level or settings.LOG_LEVEL).upper()
    resolved = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            level=resolved,
        )
    root.setLevel(resolved)

"""Logging setup for the bridge process.

Every module logs through a named logger under the ``opencode-bridge.``
prefix; this module only wires handlers and levels.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "opencode-bridge"

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "telegram", "aiohttp.access", "Lark")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure console (and optional rotating file) logging.

    Args:
        level: Level name for the bridge loggers
        log_file: Optional path for a rotating log file

    Returns:
        The bridge root logger
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    formatter = logging.Formatter(_FORMAT)
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    if not any(getattr(h, "_bridge_handler", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._bridge_handler = True  # type: ignore[attr-defined]
        root.addHandler(console)

        if log_file:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            file_handler._bridge_handler = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    bridge_logger = logging.getLogger(ROOT_LOGGER)
    bridge_logger.setLevel(resolved)
    return bridge_logger

"""Stdout logging shared by the CLI, the worker and the API server."""

import logging
import sys

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

_LOGGING_INITIALIZED = False


def setup_logging(level: str = "INFO", force: bool = False) -> None:
    """Route root, uvicorn and fastapi loggers through one stdout handler."""
    global _LOGGING_INITIALIZED
    if _LOGGING_INITIALIZED and not force:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        log = logging.getLogger(logger_name)
        log.handlers = [handler]
        log.propagate = False

    logging.basicConfig(level=level, handlers=[handler], force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _LOGGING_INITIALIZED = True
    logging.getLogger(__name__).debug("Logging initialized at %s", level)

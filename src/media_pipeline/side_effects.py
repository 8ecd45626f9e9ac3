"""Log-only execution mode for non-critical steps.

Auto-tagging, default-voice lookup and thumbnail-like extras must never fail
the generation that triggered them. Call sites route them through
``run_best_effort`` instead of wrapping each one in its own try/except.
"""

import logging
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_best_effort(label: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Call ``fn`` and return its result, or None if it raised.

    Failures are logged with traceback under ``label`` and never propagate.
    """
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.warning("Best-effort step '%s' failed", label, exc_info=True)
        return None

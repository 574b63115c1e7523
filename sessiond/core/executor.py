"""
Background execution helpers.
"""

import logging
from concurrent.futures import Executor
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def submit_else_execute(executor: Optional[Executor], fn: Callable, *args) -> None:
    """Run ``fn`` on the executor, or in the calling thread if there is no
    executor or it no longer accepts work."""
    if executor is not None:
        try:
            executor.submit(_guarded, fn, *args)
            return
        except RuntimeError:
            # Executor shut down
            pass
    _guarded(fn, *args)


def _guarded(fn: Callable, *args) -> None:
    try:
        fn(*args)
    except Exception as e:
        logger.error(f"Background task {getattr(fn, '__name__', fn)} failed: {e}")

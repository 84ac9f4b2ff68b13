"""
In-flight guard for checkout attempts.
Rejects a second submission for the same caller context while one is running,
so a double-clicked "add to cart" cannot create two bundles.
"""
import logging
import time
from typing import Dict

logger = logging.getLogger(__name__)


class InFlightGuard:
    """
    Per-context mutual exclusion without waiting:
    - acquisition is non-blocking; a held context is rejected immediately
    - no retries or queueing, the caller decides whether to re-submit
    - release always happens in ``finally`` so a failed attempt never leaks
    """

    def __init__(self) -> None:
        self._active: Dict[str, float] = {}

    def try_acquire(self, context_id: str) -> bool:
        # No await between check and set: atomic under a single event loop.
        if context_id in self._active:
            held_for = time.monotonic() - self._active[context_id]
            logger.warning(f"Checkout already in flight for context {context_id} ({held_for:.1f}s)")
            return False
        self._active[context_id] = time.monotonic()
        return True

    def release(self, context_id: str) -> None:
        if self._active.pop(context_id, None) is None:
            logger.debug(f"Release for context {context_id} that was not held")

    def is_active(self, context_id: str) -> bool:
        return context_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)


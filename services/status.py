"""
Status reporting for checkout attempts.
Fans pipeline messages out to an optional caller sink and the service log.
The sink is presentation-agnostic: the pipeline never assumes a UI exists.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

StatusSink = Callable[[str, bool], None]

LOG_PREFIX = "[Checkout]"


class StatusReporter:
    """Wraps an optional ``(message, is_error)`` sink.

    Keeps the full message history so HTTP callers can return it, and the last
    error so a UI can display it after a failed attempt.
    """

    def __init__(self, sink: Optional[StatusSink] = None) -> None:
        self._sink = sink
        self.messages: List[Tuple[str, bool]] = []
        self.last_error: Optional[str] = None

    def info(self, message: str) -> None:
        logger.info("%s %s", LOG_PREFIX, message)
        self._emit(message, False)

    def warning(self, message: str) -> None:
        """Non-fatal problem; reported to the sink as a regular status."""
        logger.warning("%s %s", LOG_PREFIX, message)
        self._emit(message, False)

    def error(self, message: str) -> None:
        logger.error("%s %s", LOG_PREFIX, message)
        self.last_error = message
        self._emit(message, True)

    def _emit(self, message: str, is_error: bool) -> None:
        self.messages.append((message, is_error))
        if self._sink is None:
            return
        try:
            self._sink(message, is_error)
        except Exception:
            logger.exception("%s status sink raised; ignoring", LOG_PREFIX)

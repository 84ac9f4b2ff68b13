"""Wait bounds for polling an external dependency during a checkout attempt."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

# Floor for a single poll sleep so a nearly expired bound still yields to the loop
MIN_TICK_S = 0.001


@dataclass
class Deadline:
    """Monotonic wait bound.

    Built with ``Deadline.from_ms(8000)`` around the bundle-service readiness
    poll. ``next_tick(interval_s)`` never sleeps past the bound, so the poll
    gives up within one tick of ``timeout_ms`` rather than a full interval late.
    """

    seconds: float
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def from_ms(cls, timeout_ms: int) -> "Deadline":
        return cls(seconds=max(0, timeout_ms) / 1000.0)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def remaining(self) -> float:
        return max(0.0, self.started + self.seconds - time.monotonic())

    def next_tick(self, interval_s: float) -> float:
        return min(interval_s, max(self.remaining(), MIN_TICK_S))

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

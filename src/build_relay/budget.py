"""Time budget for phase commands within one execution window."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from build_relay.constants import (
    DEFAULT_FALLBACK_MINUTES,
    DEFAULT_FLOOR_MINUTES,
    DEFAULT_WINDOW_CAP_MINUTES,
)

logger = logging.getLogger(__name__)


def compute_budget(
    total_cap: float,
    elapsed: float,
    floor: float = DEFAULT_FLOOR_MINUTES * 60,
    fallback: float = DEFAULT_FALLBACK_MINUTES * 60,
) -> float:
    """
    Compute the seconds a bounded phase may run in this window.

    Args:
        total_cap: Window cap in seconds (already below the host's hard cap)
        elapsed: Seconds spent in the window so far
        floor: Minimum useful budget for a positive remainder
        fallback: Budget used when the window is already past its cap

    Returns:
        remaining = total_cap - elapsed, except:
          - remaining <= 0 -> fallback (still attempt partial progress)
          - 0 < remaining < floor -> floor
    """
    remaining = total_cap - elapsed

    if remaining <= 0:
        logger.warning(
            "Window past its cap by %.0fs, using fallback budget of %.0f minutes",
            -remaining, fallback / 60,
        )
        return fallback

    if remaining < floor:
        logger.warning(
            "Remaining %.0f minutes is below the floor, using %.0f minutes",
            remaining / 60, floor / 60,
        )
        return floor

    return remaining


@dataclass
class ExecutionWindow:
    """In-memory record of the current window. Never persisted."""

    cap_seconds: float = DEFAULT_WINDOW_CAP_MINUTES * 60
    floor_seconds: float = DEFAULT_FLOOR_MINUTES * 60
    fallback_seconds: float = DEFAULT_FALLBACK_MINUTES * 60
    resumed: bool = False
    clock: Callable[[], float] = time.monotonic
    started_at: Optional[float] = field(default=None)

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def budget(self) -> float:
        """Budget for a bounded phase started now."""
        elapsed = self.elapsed()
        budget = compute_budget(
            self.cap_seconds,
            elapsed,
            floor=self.floor_seconds,
            fallback=self.fallback_seconds,
        )
        logger.info(
            "Elapsed %.2fh of %.2fh window, budget %.0f minutes",
            elapsed / 3600, self.cap_seconds / 3600, budget / 60,
        )
        return budget

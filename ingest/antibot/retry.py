"""Backoff schedule and block cooldown for re-scrape loops."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """Exponential backoff capped by delay and attempt count."""

    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 300.0

    def should_retry(self, attempts: int) -> bool:
        """Check whether another attempt is allowed.

        Parameters
        ----------
        attempts : int
            Attempts already made

        Returns
        -------
        bool
            True while under the attempt ceiling
        """
        return attempts < self.max_attempts

    def delay(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failures."""
        exponent = max(0, attempts - 1)
        return min(self.backoff_base * (self.backoff_multiplier ** exponent), self.max_backoff)


class CooldownState(str, Enum):
    """Block cooldown states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Too many consecutive blocks, pause new work


class BlockCooldown:
    """Pause submissions after a run of consecutive ``blocked`` outcomes."""

    def __init__(
        self,
        max_consecutive: int = 5,
        cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_consecutive = max_consecutive
        self.cooldown = cooldown
        self.clock = clock
        self.state = CooldownState.CLOSED
        self.consecutive_blocks = 0
        self.opened_at: Optional[float] = None

    def record_block(self) -> None:
        self.consecutive_blocks += 1
        if self.state == CooldownState.CLOSED and self.consecutive_blocks >= self.max_consecutive:
            LOGGER.warning(
                "%d consecutive blocks, cooling down for %.0fs",
                self.consecutive_blocks,
                self.cooldown,
            )
            self.state = CooldownState.OPEN
            self.opened_at = self.clock()

    def record_success(self) -> None:
        self.consecutive_blocks = 0

    def remaining(self) -> float:
        """Seconds left before new work may start; 0 when closed."""
        if self.state == CooldownState.CLOSED or self.opened_at is None:
            return 0.0
        left = self.cooldown - (self.clock() - self.opened_at)
        if left <= 0:
            LOGGER.info("Block cooldown elapsed, resuming")
            self.reset()
            return 0.0
        return left

    def reset(self) -> None:
        self.state = CooldownState.CLOSED
        self.consecutive_blocks = 0
        self.opened_at = None

"""Healing task state machine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..antibot.retry import BackoffPolicy
from ..errors import ScrapeStatus
from ..models import ExternalListing, Platform, QualityClass

LOGGER = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Lifecycle of one listing inside a healing run."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED_TERMINAL)


TRANSITIONS = {
    TaskState.PENDING: {TaskState.IN_FLIGHT},
    TaskState.IN_FLIGHT: {TaskState.SUCCEEDED, TaskState.FAILED_RETRYABLE, TaskState.FAILED_TERMINAL},
    TaskState.FAILED_RETRYABLE: {TaskState.IN_FLIGHT},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED_TERMINAL: set(),
}


class InvalidTransition(Exception):
    """Task moved between states the lifecycle does not allow."""


@dataclass
class ScrapeTask:
    """One listing scheduled for re-scrape."""

    listing: ExternalListing
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    last_status: Optional[ScrapeStatus] = None
    last_error: Optional[str] = None
    next_attempt_at: float = 0.0
    quality_before: QualityClass = QualityClass.MISSING
    quality_after: Optional[QualityClass] = None

    @property
    def identity(self) -> str:
        return self.listing.identity

    @property
    def platform(self) -> Platform:
        return self.listing.platform

    def _move(self, target: TaskState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.identity}: {self.state.value} -> {target.value}")
        self.state = target

    def start(self) -> None:
        self._move(TaskState.IN_FLIGHT)
        self.attempts += 1

    def succeed(self, quality: QualityClass, status: ScrapeStatus = ScrapeStatus.OK) -> None:
        """Attempt produced a detail; ``quality`` may still be bad."""
        self._move(TaskState.SUCCEEDED)
        self.quality_after = quality
        self.last_status = status
        self.last_error = None

    def fail(
        self,
        status: ScrapeStatus,
        error: Optional[str],
        policy: BackoffPolicy,
        now: float,
    ) -> TaskState:
        """Record a failed attempt and pick the next state.

        Parameters
        ----------
        status : ScrapeStatus
            Outcome of the attempt
        error : str, optional
            Error message kept for the summary
        policy : BackoffPolicy
            Attempt ceiling and delay schedule
        now : float
            Current monotonic time

        Returns
        -------
        TaskState
            ``FAILED_RETRYABLE`` with ``next_attempt_at`` set, or ``FAILED_TERMINAL``
        """
        self.last_status = status
        self.last_error = error
        if status.retryable and policy.should_retry(self.attempts):
            self._move(TaskState.FAILED_RETRYABLE)
            self.next_attempt_at = now + policy.delay(self.attempts)
        else:
            self._move(TaskState.FAILED_TERMINAL)
        return self.state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing.id,
            "identity": self.identity,
            "platform": self.platform.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_status": self.last_status.value if self.last_status else None,
            "last_error": self.last_error,
            "quality_before": self.quality_before.value,
            "quality_after": self.quality_after.value if self.quality_after else None,
        }

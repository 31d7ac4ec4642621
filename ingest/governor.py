"""Admission control for scrape attempts: rate limit, concurrency ceiling, de-duplication."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

from .config import GovernorConfig
from .errors import ScrapeStatus
from .models import Platform

LOGGER = logging.getLogger(__name__)

SHARED_BUCKET = "*"


class Admission(str, Enum):
    """Governor decision for one scrape request."""

    ADMITTED = "admitted"
    RATE_LIMITED = "rate_limited"
    BUSY = "busy"
    ALREADY_IN_PROGRESS = "already_in_progress"

    @property
    def status(self) -> Optional[ScrapeStatus]:
        """Matching scrape status for rejections; None when admitted."""
        if self is Admission.ADMITTED:
            return None
        return ScrapeStatus(self.value)


class TokenBucket:
    """Token bucket with atomic take."""

    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self.clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    @classmethod
    def per_minute(cls, tokens: int, clock: Callable[[], float] = time.monotonic) -> "TokenBucket":
        return cls(tokens, tokens / 60.0, clock)

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated = now

    def try_take(self, tokens: float = 1.0) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class ConcurrencyGovernor:
    """Gate every scrape attempt.

    Checks run in order: listing already in flight, concurrency ceiling, then
    rate limit, so a rejected request never spends a token.
    """

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize governor.

        Parameters
        ----------
        config : GovernorConfig, optional
            Rate, concurrency ceiling and bucket partitioning
        clock : callable
            Monotonic clock (tests pass a fake)
        """
        self.config = config or GovernorConfig()
        self.clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, TokenBucket] = {}
        self._in_flight: Dict[str, float] = {}
        self.max_observed = 0

    def _bucket(self, platform: Optional[Platform]) -> TokenBucket:
        key = platform.value if (self.config.per_platform and platform is not None) else SHARED_BUCKET
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket.per_minute(self.config.rate_per_minute, self.clock)
            self._buckets[key] = bucket
        return bucket

    def try_admit(self, identity: str, platform: Optional[Platform] = None) -> Admission:
        """Admit ``identity`` or say why not.

        Returns
        -------
        Admission
            ``ADMITTED`` (caller must later :meth:`release`), or the rejection
        """
        with self._lock:
            if identity in self._in_flight:
                decision = Admission.ALREADY_IN_PROGRESS
            elif len(self._in_flight) >= self.config.max_concurrent:
                decision = Admission.BUSY
            elif not self._bucket(platform).try_take():
                decision = Admission.RATE_LIMITED
            else:
                self._in_flight[identity] = self.clock()
                self.max_observed = max(self.max_observed, len(self._in_flight))
                decision = Admission.ADMITTED

        if decision is not Admission.ADMITTED:
            LOGGER.debug("Rejected %s: %s", identity, decision.value)
        return decision

    def release(self, identity: str) -> None:
        with self._lock:
            started = self._in_flight.pop(identity, None)
        if started is None:
            LOGGER.warning("Release of %s which was not in flight", identity)

    def is_in_flight(self, identity: str) -> bool:
        with self._lock:
            return identity in self._in_flight

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @contextmanager
    def admitted(self, identity: str, platform: Optional[Platform] = None) -> Iterator[Admission]:
        """Hold an admission for the duration of a ``with`` block.

        Yields the decision; the slot is released on exit only when it was granted.
        """
        decision = self.try_admit(identity, platform)
        try:
            yield decision
        finally:
            if decision is Admission.ADMITTED:
                self.release(identity)

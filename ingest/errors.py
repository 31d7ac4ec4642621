"""Failure taxonomy for scrape attempts."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ScrapeStatus(str, Enum):
    """Structured outcome of a scrape trigger."""

    OK = "ok"
    CACHED = "cached"
    EXTRACTION_EMPTY = "extraction_empty"
    NETWORK_ERROR = "network_error"
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BUSY = "busy"
    ALREADY_IN_PROGRESS = "already_in_progress"

    @property
    def produced_detail(self) -> bool:
        return self in (ScrapeStatus.OK, ScrapeStatus.CACHED, ScrapeStatus.EXTRACTION_EMPTY)

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_STATUSES


RETRYABLE_STATUSES = frozenset(
    {
        ScrapeStatus.NETWORK_ERROR,
        ScrapeStatus.BLOCKED,
        ScrapeStatus.RATE_LIMITED,
        ScrapeStatus.BUSY,
        ScrapeStatus.ALREADY_IN_PROGRESS,
    }
)


class FetchError(Exception):
    """Single fetch attempt failed."""

    kind = ScrapeStatus.NETWORK_ERROR

    def __init__(self, message: str, *, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NetworkError(FetchError):
    """Transport failure, timeout or unexpected status."""

    kind = ScrapeStatus.NETWORK_ERROR


class BlockedError(FetchError):
    """Anti-bot defense detected by status code or challenge markup."""

    kind = ScrapeStatus.BLOCKED


class NotFoundError(FetchError):
    """Listing page no longer exists."""

    kind = ScrapeStatus.NOT_FOUND

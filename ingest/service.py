"""Scrape trigger: governor admission, result cache, hard timeout and catalog write."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import contract
from .catalog import CatalogStore, CatalogWriter
from .config import FetchConfig, GovernorConfig
from .errors import FetchError, ScrapeStatus
from .governor import Admission, ConcurrencyGovernor
from .models import ExternalListing, NormalizedDetail, Pair, PriceTier, QualityClass
from .pipeline import DetailPipeline, PipelineOutcome

LOGGER = logging.getLogger(__name__)


@dataclass
class ScrapeResult:
    """Structured outcome returned to every trigger caller."""

    status: ScrapeStatus
    listing_id: str
    detail: Optional[NormalizedDetail] = None
    quality: QualityClass = QualityClass.MISSING
    correct: bool = False
    error: Optional[str] = None
    cached: bool = False
    written: bool = False
    missing: List[str] = field(default_factory=list)

    @property
    def attributes(self) -> List[Pair]:
        return list(self.detail.attributes) if self.detail else []

    @property
    def price_tiers(self) -> List[PriceTier]:
        return list(self.detail.price_tiers) if self.detail else []

    @property
    def debug_source(self) -> Optional[str]:
        return self.detail.debug_source if self.detail else None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "listing_id": self.listing_id,
            "quality": self.quality.value,
            "correct": self.correct,
            "cached": self.cached,
            "written": self.written,
            "error": self.error,
            "missing": self.missing,
            "debug_source": self.debug_source,
            "detail": self.detail.model_dump(mode="json") if self.detail else None,
        }


class ScrapeService:
    """Run scrapes on demand, never raising to callers.

    Admitted attempts run on a private thread pool sized to the governor's
    concurrency ceiling. An attempt that outlives ``attempt_timeout`` is
    reported as ``network_error``; its governor slot is freed only when the
    worker thread actually finishes and its late result is dropped.
    """

    def __init__(
        self,
        pipeline: DetailPipeline,
        catalog: CatalogStore,
        governor: Optional[ConcurrencyGovernor] = None,
        config: Optional[GovernorConfig] = None,
        attempt_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        writer: Optional[CatalogWriter] = None,
    ) -> None:
        """Initialize service.

        Parameters
        ----------
        pipeline : DetailPipeline
            Per-listing fetch/extract/normalize pipeline
        catalog : CatalogStore
            Listing source and detail sink
        governor : ConcurrencyGovernor, optional
            Shared admission control (built from ``config`` when omitted)
        config : GovernorConfig, optional
            Concurrency ceiling and result cache settings
        attempt_timeout : float, optional
            Hard ceiling per attempt in seconds
        clock : callable
            Monotonic clock for cache expiry
        writer : CatalogWriter, optional
            Completion-ordered writer (defaults to one over ``catalog``)
        """
        self.pipeline = pipeline
        self.catalog = catalog
        self.config = config or (governor.config if governor else GovernorConfig())
        self.governor = governor or ConcurrencyGovernor(self.config, clock=clock)
        self.attempt_timeout = attempt_timeout if attempt_timeout is not None else FetchConfig.attempt_timeout
        self.clock = clock
        self.writer = writer or CatalogWriter(catalog)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_concurrent),
            thread_name_prefix="scrape",
        )
        self._cache: Dict[str, Tuple[float, ScrapeResult]] = {}
        self._cache_lock = threading.Lock()

    def trigger(self, listing: Union[ExternalListing, str], force: bool = False) -> ScrapeResult:
        """Scrape one listing now.

        Parameters
        ----------
        listing : ExternalListing or str
            Listing or its catalog id
        force : bool
            Bypass the result cache

        Returns
        -------
        ScrapeResult
            Outcome; ``status`` tells success from each failure kind
        """
        if isinstance(listing, str):
            listing_id = listing
            try:
                found = self.catalog.get_listing(listing_id)
            except Exception as exc:
                LOGGER.error("Catalog lookup of %s failed: %s", listing_id, exc, exc_info=True)
                return ScrapeResult(ScrapeStatus.NETWORK_ERROR, listing_id, error=f"catalog unavailable: {exc}")
            if found is None:
                return ScrapeResult(ScrapeStatus.NOT_FOUND, listing_id, error="listing not in catalog")
            listing = found

        if not force:
            cached = self._cached(listing.id)
            if cached is not None:
                LOGGER.debug("Serving cached result for %s", listing.id)
                return cached

        identity = listing.identity
        decision = self.governor.try_admit(identity, listing.platform)
        if decision is not Admission.ADMITTED:
            LOGGER.warning("Scrape of %s not admitted: %s", listing.id, decision.value)
            return self._with_prior(ScrapeResult(decision.status, listing.id, error=decision.value))

        try:
            future = self._executor.submit(self._run, listing, identity)
        except RuntimeError as exc:
            self.governor.release(identity)
            return self._with_prior(ScrapeResult(ScrapeStatus.BUSY, listing.id, error=str(exc)))

        result = self._await(listing, future)
        if result.status.produced_detail and result.error is None:
            self._remember(listing.id, result)
        return result

    def _run(self, listing: ExternalListing, identity: str) -> PipelineOutcome:
        # Slot is freed before the future resolves, even for abandoned attempts
        try:
            return self.pipeline.run(listing)
        finally:
            self.governor.release(identity)

    def _await(self, listing: ExternalListing, future: "Future[PipelineOutcome]") -> ScrapeResult:
        try:
            outcome = future.result(timeout=self.attempt_timeout)
        except FutureTimeoutError:
            LOGGER.warning("Scrape of %s exceeded %.0fs, discarding", listing.id, self.attempt_timeout)
            return self._with_prior(
                ScrapeResult(
                    ScrapeStatus.NETWORK_ERROR,
                    listing.id,
                    error=f"attempt timed out after {self.attempt_timeout:.0f}s",
                )
            )
        except FetchError as exc:
            LOGGER.warning("Scrape of %s failed (%s): %s", listing.id, exc.kind.value, exc)
            return self._with_prior(ScrapeResult(exc.kind, listing.id, error=str(exc)))
        except Exception as exc:
            LOGGER.error("Unexpected error scraping %s: %s", listing.id, exc, exc_info=True)
            return self._with_prior(ScrapeResult(ScrapeStatus.NETWORK_ERROR, listing.id, error=str(exc)))

        error = None
        try:
            detail, written = self.writer.apply(listing.id, outcome.detail, outcome.completed_at)
        except Exception as exc:
            LOGGER.error("Catalog write for %s failed: %s", listing.id, exc, exc_info=True)
            detail, written, error = outcome.detail, False, f"catalog write failed: {exc}"
        status = ScrapeStatus.EXTRACTION_EMPTY if outcome.extraction_empty else ScrapeStatus.OK
        quality = contract.classify_quality(detail)
        missing = contract.missing_fields(detail)
        log = LOGGER.info if status is ScrapeStatus.OK else LOGGER.warning
        log(
            "Scraped %s: status=%s quality=%s correct=%s source=%s",
            listing.id,
            status.value,
            quality.value,
            not missing,
            detail.debug_source,
        )
        return ScrapeResult(
            status=status,
            listing_id=listing.id,
            detail=detail,
            quality=quality,
            correct=not missing,
            error=error,
            written=written,
            missing=missing,
        )

    def _with_prior(self, result: ScrapeResult) -> ScrapeResult:
        """Attach the stored detail's quality to a failure result."""
        try:
            prior = self.catalog.get_detail(result.listing_id)
        except Exception as exc:
            LOGGER.error("Could not read stored detail for %s: %s", result.listing_id, exc)
            return result
        result.quality = contract.classify_quality(prior)
        result.correct = contract.is_correct(prior)
        return result

    def _cached(self, listing_id: str) -> Optional[ScrapeResult]:
        now = self.clock()
        with self._cache_lock:
            entry = self._cache.get(listing_id)
            if entry is None:
                return None
            stored_at, result = entry
            if now - stored_at > self.config.cache_ttl:
                del self._cache[listing_id]
                return None
        return ScrapeResult(
            status=ScrapeStatus.CACHED,
            listing_id=result.listing_id,
            detail=result.detail,
            quality=result.quality,
            correct=result.correct,
            cached=True,
            missing=list(result.missing),
        )

    def _remember(self, listing_id: str, result: ScrapeResult) -> None:
        now = self.clock()
        with self._cache_lock:
            self._cache[listing_id] = (now, result)
            if len(self._cache) > self.config.cache_max_entries:
                expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at > self.config.cache_ttl]
                for key in expired:
                    del self._cache[key]
                LOGGER.debug("Pruned %d expired cache entries", len(expired))

    @property
    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ScrapeService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

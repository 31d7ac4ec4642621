"""Catalog store contract and the non-regressing, completion-ordered writer."""
from __future__ import annotations

import logging
import os
import threading
from typing import Dict, Iterator, Optional, Protocol, Tuple

import psycopg2
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import Json, RealDictCursor
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from . import contract
from .models import ExternalListing, NormalizedDetail, Platform, QualityClass

LOGGER = logging.getLogger(__name__)


class CatalogStore(Protocol):
    """External catalog collaborator."""

    def get_listing(self, listing_id: str) -> Optional[ExternalListing]:
        ...

    def iter_listings(self, platform: Optional[Platform] = None) -> Iterator[ExternalListing]:
        ...

    def get_detail(self, listing_id: str) -> Optional[NormalizedDetail]:
        ...

    def save_detail(
        self,
        listing_id: str,
        detail: NormalizedDetail,
        quality: QualityClass,
        completed_at: Optional[float] = None,
    ) -> bool:
        """Persist a merged detail unless a later completion is already stored.

        Returns False when the stored completion stamp is newer than ``completed_at``.
        """
        ...


class InMemoryCatalogStore:
    """Dictionary-backed store for tests and one-off CLI scrapes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listings: Dict[str, ExternalListing] = {}
        self._details: Dict[str, NormalizedDetail] = {}
        self._quality: Dict[str, QualityClass] = {}
        self._completed: Dict[str, float] = {}
        self.writes = 0

    def add_listing(self, listing: ExternalListing, detail: Optional[NormalizedDetail] = None) -> None:
        with self._lock:
            self._listings[listing.id] = listing
            if detail is not None:
                self._details[listing.id] = detail
                self._quality[listing.id] = contract.classify_quality(detail)

    def get_listing(self, listing_id: str) -> Optional[ExternalListing]:
        with self._lock:
            return self._listings.get(listing_id)

    def iter_listings(self, platform: Optional[Platform] = None) -> Iterator[ExternalListing]:
        with self._lock:
            listings = list(self._listings.values())
        for listing in listings:
            if platform is None or listing.platform == platform:
                yield listing

    def get_detail(self, listing_id: str) -> Optional[NormalizedDetail]:
        with self._lock:
            return self._details.get(listing_id)

    def get_quality(self, listing_id: str) -> Optional[QualityClass]:
        with self._lock:
            return self._quality.get(listing_id)

    def save_detail(
        self,
        listing_id: str,
        detail: NormalizedDetail,
        quality: QualityClass,
        completed_at: Optional[float] = None,
    ) -> bool:
        with self._lock:
            if completed_at is not None:
                stored = self._completed.get(listing_id)
                if stored is not None and completed_at < stored:
                    return False
                self._completed[listing_id] = completed_at
            self._details[listing_id] = detail
            self._quality[listing_id] = quality
            self.writes += 1
            return True


def get_db_connection() -> PGConnection:
    """Return a psycopg2 connection using the DSN from the environment."""
    dsn = os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if not dsn:
        raise RuntimeError("PG_DSN is not set")
    return psycopg2.connect(dsn)


_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_random(1, 3),
    retry=retry_if_exception_type(psycopg2.OperationalError),
    reraise=True,
)


class PostgresCatalogStore:
    """Catalog rows in ``external_listings`` with the detail kept as JSONB."""

    COLUMNS = "id, platform, url, title, price_raw, price_min, price_max, currency, moq, orders_raw, image"

    def __init__(self, dsn: Optional[str] = None) -> None:
        self.dsn = dsn

    def _connect(self) -> PGConnection:
        return psycopg2.connect(self.dsn) if self.dsn else get_db_connection()

    @staticmethod
    def _listing(row: dict) -> ExternalListing:
        return ExternalListing(**{key: row[key] for key in row if key not in (("detail", "detail_quality"))})

    @_transient
    def get_listing(self, listing_id: str) -> Optional[ExternalListing]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {self.COLUMNS} FROM external_listings WHERE id = %s", (listing_id,))
                row = cur.fetchone()
        return self._listing(row) if row else None

    def iter_listings(self, platform: Optional[Platform] = None) -> Iterator[ExternalListing]:
        query = f"SELECT {self.COLUMNS} FROM external_listings"
        params: Tuple = ()
        if platform is not None:
            query += " WHERE platform = %s"
            params = (platform.value,)
        query += " ORDER BY id"
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        for row in rows:
            yield self._listing(row)

    @_transient
    def get_detail(self, listing_id: str) -> Optional[NormalizedDetail]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT detail FROM external_listings WHERE id = %s", (listing_id,))
                row = cur.fetchone()
        if not row or not row[0]:
            return None
        return NormalizedDetail.model_validate(row[0])

    @_transient
    def save_detail(
        self,
        listing_id: str,
        detail: NormalizedDetail,
        quality: QualityClass,
        completed_at: Optional[float] = None,
    ) -> bool:
        """Store the detail and refresh coarse listing fields without blanking them.

        The row is only updated when its ``detail_completed_at`` is not newer
        than ``completed_at``.
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE external_listings
                    SET detail = %s,
                        detail_quality = %s,
                        detail_updated_at = NOW(),
                        detail_completed_at = COALESCE(%s, detail_completed_at),
                        title = COALESCE(NULLIF(%s, ''), title),
                        moq = COALESCE(%s, moq)
                    WHERE id = %s
                      AND (%s IS NULL OR detail_completed_at IS NULL OR detail_completed_at <= %s)
                    """,
                    (
                        Json(detail.model_dump(mode="json")),
                        quality.value,
                        completed_at,
                        detail.title,
                        detail.moq if not contract.has_synthesized_tiers(detail) else None,
                        listing_id,
                        completed_at,
                        completed_at,
                    ),
                )
                updated = cur.rowcount > 0
            conn.commit()
        return updated


class CatalogWriter:
    """Apply scrape results to a catalog store.

    Every write is merged with the stored detail through
    :func:`ingest.contract.preserve`. A result that completed before the last
    applied one for the same listing is dropped, both here and by the store's
    conditional write, so a slow older result can never land after a newer one.
    """

    def __init__(self, store: CatalogStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._applied: Dict[str, float] = {}

    def _is_stale(self, listing_id: str, completed_at: float) -> bool:
        with self._lock:
            last = self._applied.get(listing_id)
            return last is not None and completed_at < last

    def _mark_applied(self, listing_id: str, completed_at: float) -> None:
        with self._lock:
            self._applied[listing_id] = max(completed_at, self._applied.get(listing_id, completed_at))

    def apply(
        self,
        listing_id: str,
        detail: NormalizedDetail,
        completed_at: float,
    ) -> Tuple[NormalizedDetail, bool]:
        """Write ``detail`` if it is the newest completion.

        Returns
        -------
        tuple[NormalizedDetail, bool]
            Detail now in the catalog and whether this call wrote it
        """
        prior = self.store.get_detail(listing_id)
        if self._is_stale(listing_id, completed_at):
            LOGGER.warning("Dropped stale result for %s (completed %.3f)", listing_id, completed_at)
            return prior or detail, False

        merged = contract.preserve(prior, detail)
        regressed = contract.regressed_fields(prior, detail)
        if regressed:
            LOGGER.info("Kept existing %s for %s", ", ".join(regressed), listing_id)
        if not self.store.save_detail(listing_id, merged, contract.classify_quality(merged), completed_at):
            LOGGER.warning("Dropped stale result for %s: a newer completion was stored first", listing_id)
            return self.store.get_detail(listing_id) or merged, False

        self._mark_applied(listing_id, completed_at)
        return merged, True

import threading
import time

import pytest

from ingest import contract
from ingest.catalog import InMemoryCatalogStore
from ingest.config import GovernorConfig
from ingest.errors import BlockedError, NetworkError, NotFoundError, ScrapeStatus
from ingest.fetcher import FetchResult
from ingest.governor import ConcurrencyGovernor
from ingest.models import DraftDetail, PriceTier, QualityClass, Supplier
from ingest.pipeline import PipelineOutcome
from ingest.service import ScrapeService


def rich_draft() -> DraftDetail:
    return DraftDetail(
        title="Stainless Steel Water Bottle",
        price_tiers=[PriceTier(price="US$2.50", range="100 - 499"), PriceTier(price="US$1.80", range="≥ 500")],
        moq=100,
        attributes=[(f"Attribute {i}", f"Value {i}") for i in range(12)],
        protections=["Trade Assurance"],
        supplier=Supplier(name="Ningbo AquaPro"),
        hero_image="https://s.alicdn.com/@sc04/kf/Hmain0001_960x960.jpg",
        debug_source="range-price",
    )


class StubPipeline:
    """Pipeline double returning a fixed draft, raising, or blocking on a gate."""

    def __init__(self, clock, draft=None, error=None, gate=None):
        self.clock = clock
        self.draft = draft if draft is not None else rich_draft()
        self.error = error
        self.gate = gate
        self.calls = 0

    def run(self, listing):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        draft = self.draft.model_copy(deep=True)
        return PipelineOutcome(
            listing=listing,
            detail=contract.normalize(draft, listing.fallback()),
            draft=draft,
            fetch=FetchResult(url=listing.url, final_url=listing.url, status_code=200, body=""),
            hero=None,
            completed_at=self.clock(),
        )


@pytest.fixture
def catalog(make_listing):
    store = InMemoryCatalogStore()
    store.add_listing(make_listing("L1"))
    return store


def _service(pipeline, catalog, clock, config=None, **kwargs):
    config = config or GovernorConfig(rate_per_minute=600, max_concurrent=4, cache_ttl=300)
    return ScrapeService(pipeline, catalog, config=config, clock=clock, **kwargs)


def _wait_until_released(governor, identity):
    for _ in range(500):
        if not governor.is_in_flight(identity):
            return
        time.sleep(0.01)
    raise AssertionError(f"{identity} still in flight")


def test_trigger_writes_detail(catalog, clock):
    pipeline = StubPipeline(clock)

    with _service(pipeline, catalog, clock) as service:
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.OK
    assert result.written
    assert result.correct
    assert result.quality is QualityClass.GOOD
    assert result.debug_source == "range-price"
    assert [tier.price for tier in result.price_tiers] == ["US$1.80", "US$2.50"]
    assert len(result.attributes) == 12
    assert catalog.get_detail("L1") == result.detail
    assert catalog.get_quality("L1") is QualityClass.GOOD


def test_unknown_listing_id_is_not_found(catalog, clock):
    pipeline = StubPipeline(clock)

    with _service(pipeline, catalog, clock) as service:
        result = service.trigger("missing")

    assert result.status is ScrapeStatus.NOT_FOUND
    assert pipeline.calls == 0


def test_cache_hit_and_force(catalog, clock):
    pipeline = StubPipeline(clock)

    with _service(pipeline, catalog, clock) as service:
        first = service.trigger("L1")
        second = service.trigger("L1")
        forced = service.trigger("L1", force=True)

    assert first.status is ScrapeStatus.OK
    assert second.status is ScrapeStatus.CACHED
    assert second.cached
    assert second.detail == first.detail
    assert not second.written
    assert forced.status is ScrapeStatus.OK
    assert pipeline.calls == 2


def test_cache_hit_spends_no_token(catalog, clock):
    pipeline = StubPipeline(clock)
    config = GovernorConfig(rate_per_minute=1, max_concurrent=2)

    with _service(pipeline, catalog, clock, config=config) as service:
        service.trigger("L1")
        cached = service.trigger("L1")
        limited = service.trigger("L1", force=True)

    assert cached.status is ScrapeStatus.CACHED
    assert limited.status is ScrapeStatus.RATE_LIMITED
    assert limited.quality is QualityClass.GOOD
    assert pipeline.calls == 1


def test_cache_expires_after_ttl(catalog, clock):
    pipeline = StubPipeline(clock)

    with _service(pipeline, catalog, clock) as service:
        service.trigger("L1")
        clock.advance(301)
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.OK
    assert pipeline.calls == 2


def test_expired_entries_pruned_over_capacity(make_listing, clock):
    store = InMemoryCatalogStore()
    for index in range(3):
        store.add_listing(make_listing(f"L{index}"))
    config = GovernorConfig(rate_per_minute=600, max_concurrent=2, cache_ttl=10, cache_max_entries=2)

    with _service(StubPipeline(clock), store, clock, config=config) as service:
        service.trigger("L0")
        service.trigger("L1")
        clock.advance(11)
        service.trigger("L2")

        assert service.cache_size == 1


@pytest.mark.parametrize(
    "error,status",
    [
        (BlockedError("captcha"), ScrapeStatus.BLOCKED),
        (NotFoundError("gone", status_code=404), ScrapeStatus.NOT_FOUND),
        (NetworkError("reset"), ScrapeStatus.NETWORK_ERROR),
        (RuntimeError("parser bug"), ScrapeStatus.NETWORK_ERROR),
    ],
)
def test_failures_become_statuses(catalog, clock, error, status):
    pipeline = StubPipeline(clock, error=error)

    with _service(pipeline, catalog, clock) as service:
        first = service.trigger("L1")
        second = service.trigger("L1")

    assert first.status is status
    assert first.error == str(error)
    assert first.detail is None
    assert first.quality is QualityClass.MISSING
    assert not first.written
    assert second.status is status
    assert pipeline.calls == 2
    assert service.governor.in_flight_count == 0


def test_failure_reports_stored_quality(make_listing, good_detail, clock):
    store = InMemoryCatalogStore()
    store.add_listing(make_listing("L1"), good_detail)

    with _service(StubPipeline(clock, error=BlockedError("captcha")), store, clock) as service:
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.BLOCKED
    assert result.quality is QualityClass.GOOD
    assert result.correct
    assert store.get_detail("L1") == good_detail


def test_empty_extraction_keeps_good_detail(make_listing, good_detail, clock):
    store = InMemoryCatalogStore()
    store.add_listing(make_listing("L1"), good_detail)
    pipeline = StubPipeline(clock, draft=DraftDetail())

    with _service(pipeline, store, clock) as service:
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.EXTRACTION_EMPTY
    assert result.written
    assert result.quality is QualityClass.GOOD
    assert store.get_detail("L1").attributes == good_detail.attributes
    assert store.get_detail("L1").price_tiers == good_detail.price_tiers


class BrokenStore(InMemoryCatalogStore):
    """Store whose reads or writes raise like a database that went away."""

    def __init__(self, fail_reads=False, fail_writes=False, fail_lookups=False):
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.fail_lookups = fail_lookups

    def get_listing(self, listing_id):
        if self.fail_lookups:
            raise RuntimeError("db down")
        return super().get_listing(listing_id)

    def get_detail(self, listing_id):
        if self.fail_reads:
            raise RuntimeError("db down")
        return super().get_detail(listing_id)

    def save_detail(self, listing_id, detail, quality, completed_at=None):
        if self.fail_writes:
            raise RuntimeError("db down")
        return super().save_detail(listing_id, detail, quality, completed_at)


def test_failed_write_returns_result(make_listing, clock):
    store = BrokenStore(fail_writes=True)
    store.add_listing(make_listing("L1"))

    with _service(StubPipeline(clock), store, clock) as service:
        result = service.trigger("L1")
        assert service.cache_size == 0

    assert result.status is ScrapeStatus.OK
    assert not result.written
    assert "db down" in result.error
    assert result.detail.title == "Stainless Steel Water Bottle"


def test_failed_lookup_returns_result(make_listing, clock):
    store = BrokenStore(fail_lookups=True)
    pipeline = StubPipeline(clock)

    with _service(pipeline, store, clock) as service:
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.NETWORK_ERROR
    assert "db down" in result.error
    assert pipeline.calls == 0


def test_failed_prior_read_keeps_failure_status(make_listing, clock):
    store = BrokenStore(fail_reads=True)
    store.add_listing(make_listing("L1"))

    with _service(StubPipeline(clock, error=BlockedError("captcha")), store, clock) as service:
        result = service.trigger("L1")

    assert result.status is ScrapeStatus.BLOCKED
    assert result.quality is QualityClass.MISSING
    assert not result.correct


def test_rejections_do_not_run_pipeline(catalog, make_listing, clock):
    pipeline = StubPipeline(clock)
    listing = catalog.get_listing("L1")
    governor = ConcurrencyGovernor(GovernorConfig(rate_per_minute=600, max_concurrent=1), clock=clock)

    with _service(pipeline, catalog, clock, governor=governor, config=governor.config) as service:
        governor.try_admit(listing.identity)
        duplicate = service.trigger(listing)
        busy = service.trigger(make_listing("L2"))

    assert duplicate.status is ScrapeStatus.ALREADY_IN_PROGRESS
    assert busy.status is ScrapeStatus.BUSY
    assert pipeline.calls == 0


def test_timed_out_attempt_holds_slot_until_thread_ends(catalog, clock):
    gate = threading.Event()
    pipeline = StubPipeline(clock, gate=gate)
    listing = catalog.get_listing("L1")

    with _service(pipeline, catalog, clock, attempt_timeout=0.05) as service:
        timed_out = service.trigger(listing)
        duplicate = service.trigger(listing, force=True)

        assert timed_out.status is ScrapeStatus.NETWORK_ERROR
        assert "timed out" in timed_out.error
        assert duplicate.status is ScrapeStatus.ALREADY_IN_PROGRESS

        gate.set()
        _wait_until_released(service.governor, listing.identity)

        assert catalog.writes == 0
        assert catalog.get_detail("L1") is None

        service.attempt_timeout = 5
        retried = service.trigger(listing, force=True)

    assert retried.status is ScrapeStatus.OK
    assert catalog.writes == 1


def test_result_to_dict(catalog, clock):
    with _service(StubPipeline(clock), catalog, clock) as service:
        payload = service.trigger("L1").to_dict()

    assert payload["status"] == "ok"
    assert payload["quality"] == "good"
    assert payload["detail"]["title"] == "Stainless Steel Water Bottle"
    assert payload["missing"] == []

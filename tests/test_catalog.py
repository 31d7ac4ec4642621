import os
import threading

import pytest

from ingest import contract
from ingest.catalog import CatalogWriter, InMemoryCatalogStore, PostgresCatalogStore
from ingest.models import DraftDetail, Platform, QualityClass


@pytest.fixture
def store(make_listing):
    catalog = InMemoryCatalogStore()
    catalog.add_listing(make_listing("L1"))
    catalog.add_listing(make_listing("L2", Platform.INDIAMART))
    return catalog


def test_iter_listings_filters_platform(store):
    assert [listing.id for listing in store.iter_listings()] == ["L1", "L2"]
    assert [listing.id for listing in store.iter_listings(Platform.INDIAMART)] == ["L2"]


def test_writer_saves_first_result(store, good_detail):
    detail, written = CatalogWriter(store).apply("L1", good_detail, completed_at=10.0)

    assert written
    assert detail == good_detail
    assert store.get_quality("L1") is QualityClass.GOOD
    assert store.writes == 1


def test_writer_drops_older_completion(store, good_detail):
    writer = CatalogWriter(store)
    newer = good_detail.model_copy(update={"title": "Newer title"})
    older = good_detail.model_copy(update={"title": "Older title"})

    writer.apply("L1", newer, completed_at=20.0)
    detail, written = writer.apply("L1", older, completed_at=15.0)

    assert not written
    assert detail.title == "Newer title"
    assert store.get_detail("L1").title == "Newer title"
    assert store.writes == 1


def test_writer_orders_per_listing(store, good_detail):
    writer = CatalogWriter(store)

    writer.apply("L1", good_detail, completed_at=20.0)
    _, written = writer.apply("L2", good_detail, completed_at=5.0)

    assert written


def test_writer_never_regresses(store, good_detail, make_listing):
    writer = CatalogWriter(store)
    writer.apply("L1", good_detail, completed_at=1.0)
    empty = contract.normalize(DraftDetail(), make_listing("L1").fallback())

    detail, written = writer.apply("L1", empty, completed_at=2.0)

    assert written
    assert contract.classify_quality(detail) is QualityClass.GOOD
    assert detail.attributes == good_detail.attributes
    assert detail.hero_image == good_detail.hero_image
    assert store.get_quality("L1") is QualityClass.GOOD


class GatedStore(InMemoryCatalogStore):
    """Store whose first ``save_detail`` waits until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()
        self._first = True

    def save_detail(self, listing_id, detail, quality, completed_at=None):
        if self._first:
            self._first = False
            self.entered.set()
            self.gate.wait(5)
        return super().save_detail(listing_id, detail, quality, completed_at)


def test_slow_older_write_cannot_land_after_newer(good_detail, make_listing):
    store = GatedStore()
    store.add_listing(make_listing("L1"))
    writer = CatalogWriter(store)
    older = good_detail.model_copy(update={"title": "older"})
    newer = good_detail.model_copy(update={"title": "newer"})
    results = {}

    def apply(name, detail, completed_at):
        results[name] = writer.apply("L1", detail, completed_at)

    first = threading.Thread(target=apply, args=("older", older, 1.0))
    first.start()
    assert store.entered.wait(5)
    apply("newer", newer, 2.0)
    store.gate.set()
    first.join(5)

    assert store.get_detail("L1").title == "newer"
    assert store.writes == 1
    assert results["newer"][1]
    assert results["older"] == (store.get_detail("L1"), False)


def test_store_rejects_older_completion_stamp(good_detail, make_listing):
    store = InMemoryCatalogStore()
    store.add_listing(make_listing("L1"))

    assert store.save_detail("L1", good_detail, QualityClass.GOOD, completed_at=5.0)
    assert not store.save_detail("L1", good_detail, QualityClass.GOOD, completed_at=4.0)
    assert store.save_detail("L1", good_detail, QualityClass.GOOD)


class FailingStore(InMemoryCatalogStore):
    fail = True

    def save_detail(self, listing_id, detail, quality, completed_at=None):
        if self.fail:
            raise RuntimeError("db down")
        return super().save_detail(listing_id, detail, quality, completed_at)


def test_failed_save_is_not_recorded_as_applied(good_detail, make_listing):
    store = FailingStore()
    store.add_listing(make_listing("L1"))
    writer = CatalogWriter(store)

    with pytest.raises(RuntimeError):
        writer.apply("L1", good_detail, completed_at=5.0)
    store.fail = False
    _, written = writer.apply("L1", good_detail, completed_at=4.0)

    assert written


@pytest.mark.skipif(not os.getenv("PG_DSN"), reason="PG_DSN not set")
def test_postgres_round_trip(good_detail):
    catalog = PostgresCatalogStore(os.environ["PG_DSN"])
    listing = next(iter(catalog.iter_listings()), None)
    if listing is None:
        pytest.skip("external_listings is empty")

    prior = catalog.get_detail(listing.id)
    catalog.save_detail(listing.id, good_detail, QualityClass.GOOD)
    try:
        assert catalog.get_detail(listing.id) == good_detail
    finally:
        if prior is not None:
            catalog.save_detail(listing.id, prior, contract.classify_quality(prior))

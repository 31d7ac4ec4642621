import pytest

from ingest import contract
from ingest.models import DraftDetail, ListingFallback, PriceTier, QualityClass, Supplier


def _rich_draft(**overrides) -> DraftDetail:
    data = dict(
        title="Stainless Steel Water Bottle",
        price_text="US$1.80 - US$2.50",
        moq=100,
        price_tiers=[PriceTier(price="US$2.50", range="100 - 499"), PriceTier(price="US$1.80", range="≥ 500")],
        attributes=[(f"Attribute {i}", f"Value {i}") for i in range(12)],
        protections=["Trade Assurance"],
        supplier=Supplier(name="Ningbo AquaPro"),
        hero_image="https://s.alicdn.com/@sc04/kf/Hmain0001_960x960.jpg",
    )
    data.update(overrides)
    return DraftDetail(**data)


def test_rich_draft_is_good_and_correct():
    detail = contract.normalize(_rich_draft())

    assert contract.classify_quality(detail) == QualityClass.GOOD
    assert contract.is_correct(detail)
    assert contract.missing_fields(detail) == []


def test_empty_draft_uses_fallback_title_and_image():
    fallback = ListingFallback(title="Cotton Bag", image="https://5.imimg.com/data5/bag-500x500.jpg")

    detail = contract.normalize(DraftDetail(), fallback)

    assert detail.title == "Cotton Bag"
    assert detail.hero_image == fallback.image
    assert detail.price_tiers == [PriceTier(price="—", range="≥ 1")]
    assert detail.moq == 1
    assert detail.attributes == []
    assert contract.classify_quality(detail) in (QualityClass.BAD, QualityClass.MISSING)
    assert not contract.is_correct(detail)
    assert contract.SYNTH_TIER in detail.debug


def test_hero_falls_back_to_seed_placeholder():
    detail = contract.normalize(DraftDetail(title="Bottle"))

    assert detail.hero_image == contract.SEED_PLACEHOLDER
    assert contract.SEED_HERO in detail.debug


def test_hero_prefers_gallery_over_fallback():
    draft = DraftDetail(gallery=["https://s.alicdn.com/kf/Ha_800x800.jpg"])
    fallback = ListingFallback(image="https://s.alicdn.com/kf/Hb_800x800.jpg")

    assert contract.normalize(draft, fallback).hero_image == "https://s.alicdn.com/kf/Ha_800x800.jpg"


def test_price_text_from_fallback_range():
    fallback = ListingFallback(price_min=1.5, price_max=3, currency="USD", moq=50)

    detail = contract.normalize(DraftDetail(), fallback)

    assert detail.price_text == "US$1.50 - US$3"
    assert detail.price_tiers[0].price == "US$1.50 - US$3"
    assert detail.price_tiers[0].range == "≥ 50"


def test_price_text_prefers_listing_price_raw(make_listing):
    listing = make_listing("L1", price_raw=" US$2.10 - US$2.90 ", price_min=1.5, price_max=3)

    detail = contract.normalize(DraftDetail(), listing.fallback())

    assert detail.price_text == "US$2.10 - US$2.90"
    assert detail.price_tiers[0].price == "US$2.10 - US$2.90"
    assert "normalize:price-from-fallback" in detail.debug


def test_tiers_sorted_ascending_with_unparseable_last():
    draft = DraftDetail(
        price_tiers=[
            PriceTier(price="Negotiable", range="1+"),
            PriceTier(price="US$3.00", range="1 - 9"),
            PriceTier(price="US$1,200.00", range="≥ 10"),
            PriceTier(price="US$2.10", range="10 - 99"),
        ]
    )

    prices = [tier.price for tier in contract.normalize(draft).price_tiers]

    assert prices == ["US$2.10", "US$3.00", "US$1,200.00", "Negotiable"]


def test_moq_from_text_and_floor():
    assert contract.normalize(DraftDetail(moq_text="≥ 1,000 pieces")).moq == 1000
    assert contract.normalize(DraftDetail(moq=0), ListingFallback(moq=0)).moq == 1


def test_sold_count_fallbacks():
    assert contract.normalize(DraftDetail(sold_text="2,345 sold")).sold_count == 2345
    assert contract.normalize(DraftDetail(), ListingFallback(orders_raw="56 orders")).sold_count == 56
    assert contract.normalize(DraftDetail()).sold_count is None


@pytest.mark.parametrize(
    "currency,expected",
    [(None, "US$"), ("usd", "US$"), ("CNY", "¥"), ("RMB", "¥"), ("INR", "₹"), ("EUR", "EUR")],
)
def test_currency_symbol(currency, expected):
    assert contract.currency_symbol(currency) == expected


def test_format_range():
    assert contract.format_range(None, None) is None
    assert contract.format_range(1200, None, "INR") == "₹1,200"
    assert contract.format_range(2, 2) == "US$2"


def test_parsers_reject_garbage():
    assert contract.parse_moq_text("contact supplier") is None
    assert contract.parse_moq_text("0 pieces") is None
    assert contract.parse_orders("sold out") is None
    assert contract.parse_price_value("Negotiable") is None


def test_correct_requires_every_conjunct():
    detail = contract.normalize(_rich_draft(protections=[]))

    assert contract.classify_quality(detail) == QualityClass.GOOD
    assert not contract.is_correct(detail)
    assert contract.missing_fields(detail) == ["protections"]


def test_correct_with_packaging_instead_of_attributes():
    detail = contract.normalize(_rich_draft(attributes=[("Material", "Steel")], packaging=[("Selling Units", "Single")]))

    assert contract.is_correct(detail)
    assert contract.classify_quality(detail) == QualityClass.PARTIAL


def test_packaging_without_attributes_is_bad():
    detail = contract.normalize(_rich_draft(attributes=[], packaging=[("Selling Units", "Single")]))

    assert contract.is_correct(detail)
    assert contract.classify_quality(detail) == QualityClass.BAD


def test_quality_missing_for_no_detail():
    assert contract.classify_quality(None) == QualityClass.MISSING
    assert not contract.is_correct(None)


def test_preserve_keeps_good_detail_after_empty_scrape(good_detail):
    fallback = ListingFallback(title=good_detail.title, image=good_detail.hero_image)
    fresh = contract.normalize(DraftDetail(), fallback)

    merged = contract.preserve(good_detail, fresh)

    assert contract.classify_quality(merged) == QualityClass.GOOD
    assert contract.is_correct(merged)
    assert merged.price_tiers == good_detail.price_tiers
    assert merged.attributes == good_detail.attributes
    assert merged.sold_count == 1234
    assert contract.SYNTH_TIER not in merged.debug
    assert "preserve:attributes" in merged.debug


def test_preserve_keeps_real_hero_over_seed(good_detail):
    fresh = contract.normalize(_rich_draft(hero_image=None))

    assert fresh.hero_image == contract.SEED_PLACEHOLDER
    assert contract.preserve(good_detail, fresh).hero_image == good_detail.hero_image


def test_preserve_takes_fresh_values_and_fills_gaps(good_detail):
    fresh = contract.normalize(_rich_draft(title="Insulated Bottle 1L", protections=["Refund policy"]))

    merged = contract.preserve(good_detail, fresh)

    assert merged.title == "Insulated Bottle 1L"
    assert merged.protections == ["Refund policy"]
    assert merged.packaging == good_detail.packaging
    assert merged.gallery == good_detail.gallery
    assert sorted(contract.regressed_fields(good_detail, fresh)) == ["gallery", "packaging", "sold_count"]


def test_preserve_returns_fresh_when_nothing_regresses(good_detail):
    fresh = good_detail.model_copy(update={"title": "Renamed"})

    assert contract.preserve(good_detail, fresh) is fresh


def test_preserve_without_prior_returns_fresh():
    fresh = contract.normalize(DraftDetail(title="Bottle"))

    assert contract.preserve(None, fresh) is fresh
    assert contract.regressed_fields(None, fresh) == []

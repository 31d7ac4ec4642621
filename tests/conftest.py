import io
from pathlib import Path

import pytest
from PIL import Image

from ingest.config import GovernorConfig, HealingConfig, ImageConfig
from ingest.models import ExternalListing, NormalizedDetail, Platform, PriceTier, Supplier

FIXTURES = Path(__file__).parent / "fixtures"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


def noise_png(size=(400, 400), sigma: float = 64.0) -> bytes:
    buffer = io.BytesIO()
    Image.effect_noise(size, sigma).convert("RGB").save(buffer, format="PNG")
    return buffer.getvalue()


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def image_config(tmp_path):
    return ImageConfig(cache_dir=tmp_path / "images")


@pytest.fixture
def governor_config():
    return GovernorConfig(rate_per_minute=600, max_concurrent=4)


@pytest.fixture
def healing_config(tmp_path):
    return HealingConfig(
        max_attempts=3,
        backoff_base=2.0,
        backoff_max=60.0,
        checkpoint_path=tmp_path / "progress.json",
        progress_every=1,
    )


@pytest.fixture
def make_listing():
    def factory(listing_id: str = "L1", platform: Platform = Platform.ALIBABA, **kwargs) -> ExternalListing:
        hosts = {
            Platform.ALIBABA: "https://www.alibaba.com/product-detail/",
            Platform.MADE_IN_CHINA: "https://www.made-in-china.com/product/",
            Platform.INDIAMART: "https://www.indiamart.com/proddetail/",
        }
        data = {"url": f"{hosts[platform]}{listing_id}.html", "title": f"Listing {listing_id}"}
        data.update(kwargs)
        return ExternalListing(id=listing_id, platform=platform, **data)

    return factory


@pytest.fixture
def good_detail():
    return NormalizedDetail(
        title="Stainless Steel Water Bottle",
        price_text="US$1.80 - US$2.50",
        price_tiers=[PriceTier(price="US$1.80", range="≥ 500"), PriceTier(price="US$2.50", range="100 - 499")],
        moq=100,
        hero_image="https://s.alicdn.com/@sc04/kf/Hmain0001_960x960.jpg",
        attributes=[(f"Attribute {i}", f"Value {i}") for i in range(12)],
        packaging=[("Selling Units", "Single item")],
        protections=["On-time delivery: Refund if the shipment is late"],
        supplier=Supplier(name="Ningbo AquaPro Housewares Co., Ltd."),
        sold_count=1234,
        gallery=["https://s.alicdn.com/@sc04/kf/Hgal0001_720x720.jpg"],
    )


@pytest.fixture
def make_png():
    return noise_png


@pytest.fixture
def page_html():
    return load_fixture

"""Pydantic models shared across ingestion components."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    """Source marketplaces with a detail extractor."""

    ALIBABA = "alibaba"
    MADE_IN_CHINA = "made_in_china"
    INDIAMART = "indiamart"


PLATFORM_HOSTS = {
    Platform.ALIBABA: ("alibaba.com", "alibaba.cn"),
    Platform.MADE_IN_CHINA: ("made-in-china.com",),
    Platform.INDIAMART: ("indiamart.com",),
}

PLATFORM_REFERERS = {
    Platform.ALIBABA: "https://www.alibaba.com/",
    Platform.MADE_IN_CHINA: "https://www.made-in-china.com/",
    Platform.INDIAMART: "https://dir.indiamart.com/",
}


def canonical_url(url: str) -> str:
    """Return listing identity URL (scheme forced, query string and fragment dropped)."""
    url = (url or "").strip()
    if url.startswith("//"):
        url = "https:" + url
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def platform_for_url(url: str) -> Optional[Platform]:
    """Guess the platform from a listing URL host."""
    host = urlsplit(canonical_url(url)).netloc
    for platform, suffixes in PLATFORM_HOSTS.items():
        if any(host == suffix or host.endswith("." + suffix) for suffix in suffixes):
            return platform
    return None


class QualityClass(str, Enum):
    """Coarse triage bucket used to order re-scrapes."""

    GOOD = "good"
    PARTIAL = "partial"
    BAD = "bad"
    MISSING = "missing"


class PriceTier(BaseModel):
    price: str
    range: str = ""


class Supplier(BaseModel):
    name: str = ""
    logo: Optional[str] = None
    location: Optional[str] = None
    business_type: Optional[str] = None


Pair = Tuple[str, str]


class ListingFallback(BaseModel):
    """Snapshot of the catalog row used when a scrape comes back thin."""

    title: str = ""
    image: Optional[str] = None
    price_raw: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    moq: Optional[int] = None
    orders_raw: Optional[str] = None


class ExternalListing(BaseModel):
    id: str
    platform: Platform
    url: str
    title: str = ""
    price_raw: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    moq: Optional[int] = None
    orders_raw: Optional[str] = None
    image: Optional[str] = None

    @property
    def identity(self) -> str:
        return canonical_url(self.url)

    def fallback(self) -> ListingFallback:
        return ListingFallback(
            title=self.title,
            image=self.image,
            price_raw=self.price_raw,
            price_min=self.price_min,
            price_max=self.price_max,
            currency=self.currency,
            moq=self.moq,
            orders_raw=self.orders_raw,
        )


class DraftDetail(BaseModel):
    """Loosely-typed extractor output; every field may be absent."""

    title: Optional[str] = None
    price_text: Optional[str] = None
    moq: Optional[int] = None
    moq_text: Optional[str] = None
    price_tiers: List[PriceTier] = Field(default_factory=list)
    attributes: List[Pair] = Field(default_factory=list)
    packaging: List[Pair] = Field(default_factory=list)
    protections: List[str] = Field(default_factory=list)
    supplier: Supplier = Field(default_factory=Supplier)
    hero_image: Optional[str] = None
    gallery: List[str] = Field(default_factory=list)
    sold_count: Optional[int] = None
    sold_text: Optional[str] = None
    debug: List[str] = Field(default_factory=list)
    debug_source: Optional[str] = None

    def is_empty(self) -> bool:
        """True when the extractor found nothing usable."""
        return not (
            self.title
            or self.price_text
            or self.price_tiers
            or self.attributes
            or self.packaging
            or self.protections
            or self.supplier.name
            or self.hero_image
            or self.gallery
        )


class NormalizedDetail(BaseModel):
    """Canonical detail record; replaced wholesale, never edited in place."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    price_text: Optional[str] = None
    price_tiers: List[PriceTier]
    moq: int = 1
    hero_image: str
    attributes: List[Pair] = Field(default_factory=list)
    packaging: List[Pair] = Field(default_factory=list)
    protections: List[str] = Field(default_factory=list)
    supplier: Supplier = Field(default_factory=Supplier)
    sold_count: Optional[int] = None
    gallery: List[str] = Field(default_factory=list)
    debug: List[str] = Field(default_factory=list)
    debug_source: Optional[str] = None

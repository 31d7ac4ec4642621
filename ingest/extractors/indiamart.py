"""IndiaMART product detail extractor."""
from __future__ import annotations

import re
from typing import List, Optional

from .. import contract
from ..images.urls import normalize_image_url
from ..models import DraftDetail, Pair, Platform, PriceTier, Supplier
from .base import (
    Extractor,
    Page,
    clean_text,
    extract_moq_like,
    extract_price_like,
    tier_from_text,
    unique_images,
    unique_pairs,
)

_TITLE_SUFFIX_RE = re.compile(r"\s+(?:at\s+(?:Rs|₹|INR)\b.*|\|\s*ID:.*)$", re.IGNORECASE)
_MOQ_LABEL_RE = re.compile(r"Minimum\s+Order\s+Quantity|MOQ", re.IGNORECASE)
_PACKAGING_RE = re.compile(r"packag|packing|pack size", re.IGNORECASE)
_BUSINESS_RE = re.compile(r"Nature of Business|Business Type", re.IGNORECASE)
_GST_RE = re.compile(r"GST\s*(?:No\.?|Number)?\s*:?\s*([0-9A-Z]{15})")
_PER_UNIT_RE = re.compile(r"(₹|Rs\.?|INR)\s*([\d,]+(?:\.\d+)?)\s*(/\s*[A-Za-z]+)?", re.IGNORECASE)

SPEC_ROWS = ".specs table tr, .dtlsec1 table tr, .pdp-specs table tr"
SPEC_ITEMS = ".specs li, .pdp-specs li"


def _split_item(text: str) -> Optional[Pair]:
    text = clean_text(text)
    if ":" not in text:
        return None
    label, value = text.split(":", 1)
    return label, value


class IndiaMartExtractor(Extractor):
    platform = Platform.INDIAMART
    base_url = "https://www.indiamart.com"

    def parse(self, page: Page, debug: List[str]) -> DraftDetail:
        title = self.first_of(
            "title",
            [
                ("heading", lambda: page.text("h1, .prd-title, .productTitle")),
                ("og-title", lambda: _TITLE_SUFFIX_RE.sub("", page.meta("og:title"))),
            ],
            debug,
        )

        spec_pairs = page.row_pairs(SPEC_ROWS) + [
            pair for pair in (_split_item(text) for text in page.texts(SPEC_ITEMS)) if pair
        ]

        price_text = self.first_of(
            "price",
            [
                ("price-block", lambda: self._rupee_price(page.text(".p_price, .price, .pdp-price, .r_price"))),
                ("product-meta", lambda: self._meta_price(page)),
                ("json-ld", lambda: self._json_ld_price(page)),
                ("body-scan", lambda: self._rupee_price(page.body_text())),
            ],
            debug,
        )

        tiers = self.first_of(
            "tiers",
            [
                ("quantity-table", lambda: self._quantity_tiers(page)),
            ],
            debug,
        ) or []

        moq_text = self.first_of(
            "moq",
            [
                ("spec-row", lambda: self._moq_from_specs(spec_pairs)),
                ("labelled", lambda: extract_moq_like(page.text(".moq, .min-order, .mnqty"))),
                ("body-scan", lambda: extract_moq_like(page.body_text())),
            ],
            debug,
        )

        attributes = self.first_of(
            "attributes",
            [
                ("specs", lambda: unique_pairs(p for p in spec_pairs if not _PACKAGING_RE.search(p[0]) and not _MOQ_LABEL_RE.search(p[0]))),
                ("definition-list", lambda: unique_pairs(page.definition_pairs())),
                ("any-table", lambda: unique_pairs(page.row_pairs("table tr"))),
            ],
            debug,
        ) or []

        packaging = self.first_of(
            "packaging",
            [("spec-rows", lambda: unique_pairs(p for p in spec_pairs if _PACKAGING_RE.search(p[0])))],
            debug,
        ) or []

        protections = self.first_of(
            "protections",
            [
                ("trust-badges", lambda: page.texts(".trustseal, .tsicon, .verified-exporter, .gst-verified, .leading-supplier")),
                ("trust-text", lambda: self._trust_marks(page)),
            ],
            debug,
        ) or []

        supplier_name = self.first_of(
            "supplier",
            [
                ("company-name", lambda: page.text(".cmp-name, .company-name, .seller-name")),
                ("json-ld", lambda: self._json_ld_brand(page)),
            ],
            debug,
        )
        supplier = Supplier(
            name=supplier_name or "",
            logo=normalize_image_url(page.attr(".cmp-logo img, .company-logo img", "src"), self.base_url),
            location=page.text(".cmp-loc, .city-name, .seller-address") or None,
            business_type=next((value for label, value in spec_pairs if _BUSINESS_RE.search(label)), None)
            or page.labelled_value("table tr", _BUSINESS_RE)
            or None,
        )

        gallery = self.first_of(
            "gallery",
            [
                ("pdp-images", lambda: unique_images(self._images(page, ".pdp-image img, .imgcls img, .thumbImg img"), self.base_url)),
                ("cdn-images", lambda: unique_images(self._images(page, 'img[src*="imimg.com"], img[data-src*="imimg.com"]'), self.base_url)),
            ],
            debug,
        ) or []

        hero = self.first_of(
            "hero",
            [
                ("og-image", lambda: (unique_images([page.meta("og:image")], self.base_url) or [None])[0]),
                ("gallery", lambda: gallery[0] if gallery else None),
            ],
            debug,
        )

        return DraftDetail(
            title=title,
            price_text=price_text,
            moq_text=moq_text,
            moq=contract.parse_moq_text(moq_text),
            price_tiers=tiers,
            attributes=attributes,
            packaging=packaging,
            protections=protections,
            supplier=supplier,
            hero_image=hero,
            gallery=gallery,
            sold_count=None,
            debug_source=self.winner("tiers", debug) or self.winner("price", debug),
        )

    @staticmethod
    def _rupee_price(text: str) -> Optional[str]:
        """``₹ 150/Piece`` style price keeping the unit suffix."""
        match = _PER_UNIT_RE.search(text or "")
        if match:
            unit = (match.group(3) or "").replace(" ", "")
            return f"₹{match.group(2)}{unit}"
        return extract_price_like(text) or None

    @staticmethod
    def _meta_price(page: Page) -> Optional[str]:
        amount = page.meta("product:price:amount") or page.meta("price")
        if not amount:
            return None
        currency = page.meta("product:price:currency") or "INR"
        return contract.format_range(contract.parse_price_value(amount), None, currency)

    @staticmethod
    def _json_ld_price(page: Page) -> Optional[str]:
        for item in page.json_ld():
            offers = item.get("offers")
            if isinstance(offers, dict) and offers.get("price"):
                value = contract.parse_price_value(str(offers["price"]))
                return contract.format_range(value, None, offers.get("priceCurrency") or "INR")
        return None

    @staticmethod
    def _json_ld_brand(page: Page) -> Optional[str]:
        for item in page.json_ld():
            brand = item.get("brand")
            if isinstance(brand, dict) and brand.get("name"):
                return clean_text(brand["name"])
        return None

    @staticmethod
    def _quantity_tiers(page: Page) -> List[PriceTier]:
        tiers = []
        for row in page.all(".qty-price tr, .bulk-price tr, .price-table tr"):
            tier = tier_from_text(row.get_text(" "))
            if tier is not None and tier.range:
                tiers.append(tier)
        return tiers

    @staticmethod
    def _moq_from_specs(pairs: List[Pair]) -> Optional[str]:
        for label, value in pairs:
            if _MOQ_LABEL_RE.search(label):
                return extract_moq_like(f"MOQ {value}")
        return None

    @staticmethod
    def _trust_marks(page: Page) -> List[str]:
        text = page.body_text()
        marks = []
        if re.search(r"TrustSEAL\s+Verified", text, re.IGNORECASE):
            marks.append("TrustSEAL Verified")
        gst = _GST_RE.search(text)
        if gst:
            marks.append(f"GST: {gst.group(1)}")
        if re.search(r"Verified\s+(?:Exporter|Supplier)", text, re.IGNORECASE):
            marks.append("Verified Supplier")
        return marks

    @staticmethod
    def _images(page: Page, selector: str) -> List[str]:
        return [img.get("data-src") or img.get("data-original") or img.get("src") for img in page.all(selector)]

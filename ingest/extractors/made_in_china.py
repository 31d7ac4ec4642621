"""Made-in-China.com product detail extractor."""
from __future__ import annotations

import re
from typing import List, Optional

from .. import contract
from ..images.urls import normalize_image_url
from ..models import DraftDetail, Pair, Platform, PriceTier, Supplier
from .base import (
    Extractor,
    Page,
    extract_moq_like,
    extract_price_like,
    tier_from_text,
    unique_images,
    unique_pairs,
)

_TITLE_SUFFIX_RE = re.compile(r"\s*[-|]\s*Made-in-China\.com.*$", re.IGNORECASE)
_IMAGE_HOST_RE = re.compile(r"made-in-china|micstatic|image\.", re.IGNORECASE)
_MIN_ORDER_RE = re.compile(r"Min\.?\s*Order", re.IGNORECASE)
_PACKAGING_RE = re.compile(r"packag|transport package|package size|gross weight", re.IGNORECASE)
_QUANTITY_RE = re.compile(r"\d[\d,]*\s*(?:-|~|–)?\s*\d*[\d,]*\s*(?:pieces?|pcs|sets?|units?|pairs?|meters?|kg|tons?|bags?|boxes|rolls?)", re.I)

ATTRIBUTE_ROWS = ".sr-proMainInfo-baseInfo-propertyAttr table tr"
DETAIL_ROWS = ".sr-layout-content .detail-table tr, .sr-txt-table tr, .rich-text table tr"
PRICE_BLOCK = ".sr-proMainInfo-baseInfo-propertyPrice"


class MadeInChinaExtractor(Extractor):
    platform = Platform.MADE_IN_CHINA
    base_url = "https://www.made-in-china.com"

    def parse(self, page: Page, debug: List[str]) -> DraftDetail:
        title = self.first_of(
            "title",
            [
                ("base-info-h1", lambda: page.text(".sr-proMainInfo-baseInfoH1")),
                ("h1", lambda: page.text("h1")),
                ("og-title", lambda: _TITLE_SUFFIX_RE.sub("", page.meta("og:title"))),
            ],
            debug,
        )

        tiers = self.first_of(
            "tiers",
            [
                ("price-cells", lambda: self._price_cells(page)),
                ("price-rows", lambda: self._price_rows(page)),
            ],
            debug,
        ) or []

        price_text = self.first_of(
            "price",
            [
                ("property-price", lambda: extract_price_like(page.text(PRICE_BLOCK))),
                ("price-class", lambda: extract_price_like(page.text(".price, .only-one-priceNum"))),
                ("first-tier", lambda: tiers[0].price if tiers else None),
                ("meta-price", lambda: extract_price_like(f"US$ {page.meta('price')}") if page.meta("price") else None),
            ],
            debug,
        )

        moq_text = self.first_of(
            "moq",
            [
                ("min-order-row", lambda: extract_moq_like("MOQ " + page.labelled_value(f"{PRICE_BLOCK} tr, {ATTRIBUTE_ROWS}", _MIN_ORDER_RE))),
                ("price-block", lambda: extract_moq_like(page.text(PRICE_BLOCK))),
                ("first-tier-range", lambda: self._moq_from_tiers(tiers)),
                ("body-scan", lambda: extract_moq_like(page.body_text())),
            ],
            debug,
        )

        attribute_rows = page.row_pairs(ATTRIBUTE_ROWS)
        detail_rows = page.row_pairs(DETAIL_ROWS)
        attributes = self.first_of(
            "attributes",
            [
                ("property-attr", lambda: unique_pairs(self._without_packaging(attribute_rows))),
                ("detail-table", lambda: unique_pairs(self._without_packaging(detail_rows))),
                ("definition-list", lambda: unique_pairs(page.definition_pairs())),
            ],
            debug,
        ) or []

        packaging = self.first_of(
            "packaging",
            [
                ("labelled-rows", lambda: unique_pairs(p for p in attribute_rows + detail_rows if _PACKAGING_RE.search(p[0]))),
            ],
            debug,
        ) or []

        protections = self.first_of(
            "protections",
            [
                ("supplier-badges", lambda: page.texts(".sign-item, .verified-item, .auth-item")),
                ("audit-marks", lambda: self._audit_marks(page)),
            ],
            debug,
        ) or []

        supplier_name = self.first_of(
            "supplier",
            [
                ("com-info-title", lambda: page.text(".sr-comInfo-title .title-txt a")),
                ("company-name", lambda: page.text(".company-name, .com-name, .sr-comInfo-title")),
            ],
            debug,
        )
        supplier = Supplier(
            name=supplier_name or "",
            logo=normalize_image_url(page.attr(".sr-com-logo img, .com-logo img", "src"), self.base_url),
            location=page.text(".sr-comInfo-location, .com-location") or None,
            business_type=page.labelled_value(".sr-comInfo-sign tr, .com-info tr", re.compile(r"Business Type", re.I)) or None,
        )

        gallery = self.first_of(
            "gallery",
            [
                ("main-images", lambda: unique_images(self._images(page, ".sr-proMainInfo-slide img, .swiper-slide img"), self.base_url)),
                ("host-images", lambda: unique_images(self._images(page, "img"), self.base_url)),
                ("og-image", lambda: unique_images([page.meta("og:image")], self.base_url)),
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

        sold = self.first_of("sold", [("text-scan", page.sold_from_text_nodes)], debug)

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
            sold_count=sold,
            debug_source=self.winner("tiers", debug) or self.winner("price", debug),
        )

    @staticmethod
    def _price_cells(page: Page) -> List[PriceTier]:
        """Tiers laid out as one cell per tier holding both price and quantity."""
        tiers = []
        for cell in page.all(f"{PRICE_BLOCK} .only-one-priceNum-tr td, {PRICE_BLOCK} .swiper-slide"):
            tier = tier_from_text(cell.get_text(" "))
            if tier is not None and tier.range:
                tiers.append(tier)
        return tiers

    @staticmethod
    def _price_rows(page: Page) -> List[PriceTier]:
        """Tiers laid out as a price row above a quantity row."""
        prices: List[str] = []
        quantities: List[str] = []
        for row in page.all(f"{PRICE_BLOCK} tr"):
            cells = [cell.get_text(" ") for cell in row.find_all(["td", "th"])]
            row_prices = [extract_price_like(text) for text in cells]
            if any(row_prices):
                prices = [price for price in row_prices if price]
            elif any(_QUANTITY_RE.search(text) for text in cells):
                quantities = [match.group(0) for match in (_QUANTITY_RE.search(t) for t in cells) if match]
        if not prices:
            return []
        if len(quantities) != len(prices):
            quantities = [""] * len(prices)
        return [PriceTier(price=price, range=" ".join(qty.split())) for price, qty in zip(prices, quantities)]

    @staticmethod
    def _moq_from_tiers(tiers: List[PriceTier]) -> Optional[str]:
        for tier in tiers:
            moq = extract_moq_like(f"MOQ {tier.range}")
            if moq:
                return moq
        return None

    @staticmethod
    def _without_packaging(pairs: List[Pair]) -> List[Pair]:
        return [pair for pair in pairs if not _PACKAGING_RE.search(pair[0]) and not _MIN_ORDER_RE.search(pair[0])]

    @staticmethod
    def _audit_marks(page: Page) -> List[str]:
        marks = []
        text = page.body_text()
        for label in ("Audited Supplier", "Secured Trading", "Diamond Member", "Gold Member"):
            if label.lower() in text.lower():
                marks.append(label)
        return marks

    @staticmethod
    def _images(page: Page, selector: str) -> List[str]:
        found = []
        for img in page.all(selector):
            src = img.get("data-original") or img.get("data-src") or img.get("src") or ""
            if _IMAGE_HOST_RE.search(src):
                found.append(src)
        return found

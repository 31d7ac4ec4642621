"""Alibaba.com product detail extractor."""
from __future__ import annotations

import re
from typing import List, Optional

from bs4 import Tag

from .. import contract
from ..images.urls import normalize_image_url
from ..models import DraftDetail, Pair, Platform, PriceTier, Supplier
from .base import (
    CURRENCY,
    Extractor,
    Page,
    clean_text,
    extract_moq_like,
    extract_price_like,
    sold_count_from_text,
    tier_from_text,
    unique_images,
    unique_pairs,
)

_TITLE_SUFFIX_RE = re.compile(r"\s*[-|]\s*(?:Buy\b.*?\bon\s+)?Alibaba\.com.*$", re.IGNORECASE)
_PACKAGING_RE = re.compile(r"packag", re.IGNORECASE)
_PRICE_TOKEN_RE = re.compile(rf"{CURRENCY}\s*\d", re.IGNORECASE)
_RANGE_LINE_RE = re.compile(r"(?:≥|>=)\s*\d|\d\s*[–-]\s*\d")
_BACKGROUND_RE = re.compile(r"background(?:-image)?\s*:\s*url\(['\"]?([^'\")]+)", re.IGNORECASE)
_BAD_ALT_RE = re.compile(r"logo|icon|sprite|qr|avatar", re.IGNORECASE)
_CDN_RE = re.compile(r"alicdn|alibaba|aliimg", re.IGNORECASE)

ATTRIBUTE_MODULE = '[data-module-name="module_attribute"] [data-testid="module-attribute"]'
GRID = ".id-grid.id-grid-cols-2"
GRID_ROW = '[class*="id-grid-cols-[2fr_3fr]"]'
CELL = ".id-text-sm.id-p-4"
PRICE_BLOCKS = (
    '[data-testid="range-price"], [data-testid="ladder-price"], '
    '[data-testid="product-price"], [data-testid="promotion-fixed-price"], '
    '[data-testid="presentation-fixed-price"], .module_price'
)


def _grid_rows(grid: Tag) -> List[Pair]:
    """Label/value pairs from an attribute grid; the label cell carries an ``id-bg*`` class."""
    pairs: List[Pair] = []
    for row in grid.select(GRID_ROW):
        cells = row.select(CELL)
        if not cells:
            continue
        shaded = [cell for cell in cells if any("id-bg" in cls for cls in (cell.get("class") or []))]
        plain = [cell for cell in cells if cell not in shaded]
        left = shaded[0] if shaded else cells[0]
        right = plain[0] if plain else (cells[1] if len(cells) > 1 else None)
        if right is None or right is left:
            continue
        pairs.append((left.get_text(" "), right.get_text(" ")))
    return pairs


class AlibabaExtractor(Extractor):
    platform = Platform.ALIBABA
    base_url = "https://www.alibaba.com"

    def parse(self, page: Page, debug: List[str]) -> DraftDetail:
        title = self.first_of(
            "title",
            [
                ("product-title", lambda: page.text("h1.product-title, h1.title")),
                ("h1", lambda: page.text("h1")),
                ("og-title", lambda: page.meta("og:title")),
            ],
            debug,
            accept=lambda value: len(value) > 3,
        )
        if title:
            title = _TITLE_SUFFIX_RE.sub("", title).strip()

        tiers = self.first_of(
            "tiers",
            [
                ("range-price", lambda: self._tiers(page, '[data-testid="range-price"] .price-item')),
                ("ladder-price", lambda: self._tiers(page, '[data-testid="ladder-price"] .price-item')),
                ("price-table", lambda: self._tiers(page, ".only-one-priceNum-tr td")),
                ("product-price", lambda: self._single_tier(page)),
                ("text-scan", lambda: self._scan_tiers(page)),
            ],
            debug,
        ) or []

        price_text = self.first_of(
            "price",
            [
                ("tier-range", lambda: self._tier_range(tiers)),
                (
                    "promotion-price",
                    lambda: self._strong_price(
                        page, '[data-testid="promotion-fixed-price"], [data-testid="presentation-fixed-price"]'
                    ),
                ),
                ("product-price", lambda: self._strong_price(page, '[data-testid="product-price"]')),
                ("json-ld", lambda: self._json_ld_price(page)),
                ("meta-price", lambda: self._meta_price(page)),
                ("price-class", lambda: extract_price_like(page.text(".price, .offer-price, .product-price, .price-box"))),
                ("body-scan", lambda: extract_price_like(page.body_text())),
            ],
            debug,
        )

        moq_text = self.first_of(
            "moq",
            [
                ("range-price", lambda: self._moq_in(page, '[data-testid="range-price"]', r"Minimum\s+order\s+quantity")),
                ("price-block", lambda: extract_moq_like(" ".join(page.texts(PRICE_BLOCKS)))),
                (
                    "labelled",
                    lambda: extract_moq_like(
                        page.text(".min-order, .moq, .order-quantity, .sku-min-order, .min-order-quantity")
                    ),
                ),
                ("definition", lambda: extract_moq_like("Min. Order " + page.labelled_value("tr", re.compile(r"Min\.?\s*Order", re.I)))),
                ("body-scan", lambda: extract_moq_like(page.body_text())),
            ],
            debug,
        )

        attributes = self.first_of(
            "attributes",
            [
                ("attribute-module", lambda: unique_pairs(self._module_attributes(page))),
                ("attribute-table", lambda: unique_pairs(page.row_pairs(".product-attributes table tr, .attr-list tr"))),
                ("definition-list", lambda: unique_pairs(page.definition_pairs())),
                ("any-table", lambda: unique_pairs(page.row_pairs("table tr"))),
            ],
            debug,
        ) or []

        packaging = self.first_of(
            "packaging",
            [
                ("attribute-module", lambda: unique_pairs(self._module_packaging(page))),
                (
                    "labelled-rows",
                    lambda: unique_pairs(
                        pair for pair in page.row_pairs("table tr") + page.definition_pairs()
                        if re.search(r"packag|package size|gross weight|selling units", pair[0], re.I)
                    ),
                ),
            ],
            debug,
        ) or []

        protections = self.first_of(
            "protections",
            [
                ("trade-assurance", lambda: self._trade_assurance(page)),
                ("assurance-widget", lambda: page.texts('[data-widget="tradeAssurance"] li, [data-widget="tradeAssurance"] h4')),
                ("assurance-badge", lambda: ["Trade Assurance"] if page.first(".ta-icon, .trade-assurance, [class*=trade-assurance]") else []),
            ],
            debug,
        ) or []

        supplier_name = self.first_of(
            "supplier",
            [
                (
                    "company-name",
                    lambda: page.text(".company-name, .store-name, .seller-name, .company-name-wrapper a, .title-txt a"),
                ),
                ("company-link", lambda: page.attr('a[title*="Company"]', "title") or page.text('a[title*="Company"]')),
                ("json-ld", lambda: self._json_ld_seller(page)),
            ],
            debug,
        )
        logo = page.attr(".company-logo img, .shop-logo img, .sr-com-logo img, img[alt*=logo i]", "src")
        supplier = Supplier(
            name=supplier_name or "",
            logo=normalize_image_url(logo, self.base_url),
            location=page.text(".location, .company-location, .supplier-address, .company-address") or None,
            business_type=page.text(".business-type, .info-businessType, .supplier-type, .company-type") or None,
        )

        gallery = self.first_of(
            "gallery",
            [
                ("media-slider", lambda: unique_images(self._img_sources(page, '[data-testid="media-image"] img, .image-list img, .main-image img, .slider img'), self.base_url)),
                ("cdn-images", lambda: unique_images(self._cdn_images(page), self.base_url)),
                ("script-urls", lambda: unique_images(page.script_images(r"alicdn\.com"), self.base_url)),
            ],
            debug,
        ) or []

        hero = self.first_of(
            "hero",
            [
                ("background-image", lambda: self._background_image(page)),
                ("og-image", lambda: (unique_images([page.meta("og:image")], self.base_url) or [None])[0]),
                ("gallery", lambda: gallery[0] if gallery else None),
            ],
            debug,
        )

        sold = self.first_of(
            "sold",
            [
                ("review-cluster", lambda: self._review_sold(page)),
                ("text-scan", page.sold_from_text_nodes),
                ("script-counts", page.sold_from_scripts),
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
            sold_count=sold,
            debug_source=self.winner("tiers", debug) or self.winner("price", debug),
        )

    @staticmethod
    def _tiers(page: Page, selector: str) -> List[PriceTier]:
        tiers = [tier_from_text(node.get_text(" ")) for node in page.all(selector)]
        return [tier for tier in tiers if tier is not None]

    @staticmethod
    def _single_tier(page: Page) -> List[PriceTier]:
        block = page.first('[data-testid="product-price"]')
        if block is None:
            return []
        strong = block.find("strong")
        price = extract_price_like(strong.get_text(" ") if strong else block.get_text(" "))
        if not price:
            return []
        moq = contract.parse_moq_text(extract_moq_like(block.get_text(" ")))
        return [PriceTier(price=price, range=f"≥ {moq}" if moq else "")]

    @staticmethod
    def _scan_tiers(page: Page) -> List[PriceTier]:
        tiers: List[PriceTier] = []
        seen = set()
        for block in page.all(PRICE_BLOCKS):
            for line in block.get_text("\n").split("\n"):
                line = clean_text(line)
                if not (_PRICE_TOKEN_RE.search(line) and _RANGE_LINE_RE.search(line)):
                    continue
                tier = tier_from_text(line)
                if tier is not None and (tier.price, tier.range) not in seen:
                    seen.add((tier.price, tier.range))
                    tiers.append(tier)
        return tiers

    @staticmethod
    def _tier_range(tiers: List[PriceTier]) -> Optional[str]:
        if not tiers:
            return None
        priced = [(contract.parse_price_value(tier.price), tier.price) for tier in tiers]
        priced = [item for item in priced if item[0] is not None]
        if not priced:
            return tiers[0].price
        low = min(priced)[1]
        high = max(priced)[1]
        return low if low == high else f"{low} - {high}"

    @staticmethod
    def _strong_price(page: Page, selector: str) -> str:
        block = page.first(selector)
        if block is None:
            return ""
        strong = block.find("strong")
        return extract_price_like(strong.get_text(" ") if strong else "") or extract_price_like(block.get_text(" "))

    @staticmethod
    def _json_ld_price(page: Page) -> Optional[str]:
        for item in page.json_ld():
            offers = item.get("offers")
            if isinstance(offers, list):
                offers = offers[0] if offers else None
            if not isinstance(offers, dict):
                continue
            amount = offers.get("price") or offers.get("lowPrice")
            if amount:
                return f"{offers.get('priceCurrency') or 'USD'} {amount}"
        return None

    @staticmethod
    def _json_ld_seller(page: Page) -> Optional[str]:
        for item in page.json_ld():
            offers = item.get("offers")
            seller = offers.get("seller") if isinstance(offers, dict) else None
            if isinstance(seller, dict) and seller.get("name"):
                return clean_text(seller["name"])
        return None

    @staticmethod
    def _meta_price(page: Page) -> Optional[str]:
        amount = page.meta("price") or page.meta("og:price:amount")
        if not amount:
            return None
        currency = page.meta("priceCurrency") or page.meta("og:price:currency") or "USD"
        return f"{currency} {amount}"

    @staticmethod
    def _moq_in(page: Page, selector: str, label: str) -> Optional[str]:
        block = page.first(selector)
        if block is None:
            return None
        pattern = re.compile(label, re.IGNORECASE)
        for node in block.find_all(string=pattern):
            parent = node.parent
            text = parent.get_text(" ") if parent is not None else str(node)
            moq = extract_moq_like(re.sub(label, "MOQ", text, flags=re.IGNORECASE))
            if moq:
                return moq
        return None

    @staticmethod
    def _module_attributes(page: Page) -> List[Pair]:
        module = page.first(ATTRIBUTE_MODULE)
        if module is None:
            return []
        grids = module.select(GRID)
        if grids:
            return _grid_rows(grids[0])
        return _grid_rows(module)

    @staticmethod
    def _module_packaging(page: Page) -> List[Pair]:
        module = page.first(ATTRIBUTE_MODULE)
        if module is None:
            return []
        header = next((h3 for h3 in module.find_all("h3") if _PACKAGING_RE.search(h3.get_text(" "))), None)
        if header is not None:
            for sibling in header.find_all_next("div"):
                classes = sibling.get("class") or []
                if "id-grid" in classes and "id-grid-cols-2" in classes:
                    return _grid_rows(sibling)
            return []
        grids = module.select(GRID)
        return _grid_rows(grids[1]) if len(grids) > 1 else []

    @staticmethod
    def _trade_assurance(page: Page) -> List[str]:
        root = page.first(".module_ta_plus")
        if root is None:
            return []
        items = []
        for block in root.select(".id-flex.id-flex-col.id-gap-2"):
            header = block.find("h4")
            body = block.find("p")
            header_text = clean_text(header.get_text(" ")) if header else ""
            body_text = clean_text(body.get_text(" ")) if body else ""
            if header_text and body_text:
                items.append(f"{header_text}: {body_text}")
            elif header_text or body_text:
                items.append(header_text or body_text)
        return items

    @staticmethod
    def _img_sources(page: Page, selector: str) -> List[str]:
        return [img.get("data-src") or img.get("src") for img in page.all(selector)]

    @staticmethod
    def _cdn_images(page: Page) -> List[str]:
        found = []
        for img in page.all("img"):
            src = img.get("data-src") or img.get("src") or ""
            if _CDN_RE.search(src) and not _BAD_ALT_RE.search(img.get("alt") or ""):
                found.append(src)
        return found

    def _background_image(self, page: Page) -> Optional[str]:
        for node in page.all('[style*="background"]'):
            match = _BACKGROUND_RE.search(node.get("style") or "")
            if match:
                images = unique_images([match.group(1)], self.base_url, limit=1)
                if images:
                    return images[0]
        return None

    @staticmethod
    def _review_sold(page: Page) -> Optional[int]:
        cluster = page.first(".detail-product-comment")
        if cluster is None:
            return None
        for item in cluster.select(".detail-review-item"):
            value = sold_count_from_text(item.get_text(" "))
            if value is not None:
                return value
        return None

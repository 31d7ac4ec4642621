"""Shared parsing helpers and the ordered-fallback extractor base."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import orjson
from bs4 import BeautifulSoup, Tag

from ..images.urls import is_likely_bad_image_url, normalize_image_url
from ..models import DraftDetail, Pair, Platform, PriceTier

LOGGER = logging.getLogger(__name__)

MAX_ATTRIBUTES = 24
MAX_GALLERY = 10

Strategy = Tuple[str, Callable[[], Any]]

CURRENCY = r"(?:US\$|\$|USD|RMB|CNY|¥|￥|₹|INR|Rs\.?)"
_AMOUNT = r"\d{1,6}(?:[.,]\d{1,3})*"
PRICE_RE = re.compile(
    rf"{CURRENCY}\s*:?\s*{_AMOUNT}(?:\s*[-~–]\s*(?:{CURRENCY}\s*:?\s*)?{_AMOUNT})?",
    re.IGNORECASE,
)
_UNITS = r"(pcs?|pieces?|units?|bags?|sets?|pairs?|meters?|kilograms?|kg|boxes|cartons?|rolls?|tons?)"
_MOQ_RE = re.compile(
    rf"(?:MOQ|Min(?:imum)?\.?\s*Order(?:\s*Quantity)?|≥)\s*:?\s*([\d,]{{1,7}})(?:\s*{_UNITS})?",
    re.IGNORECASE,
)
_MOQ_LOOSE_RE = re.compile(rf"([≥>]?\s*[\d,]{{1,7}})\s*{_UNITS}\b\s*\(\s*MOQ\s*\)", re.IGNORECASE)
_RANGE_RE = re.compile(r"(?:≥|>=)\s*\d|\d\s*[–-]\s*\d")
_SOLD_RE = re.compile(r"(\d[\d,]*)\s*\+?\s*(?:sold|orders)\b", re.IGNORECASE)
_SCRIPT_COUNT_RES = (
    re.compile(r'"tradeCount"\s*:\s*"?(\d[\d,+]*)"?', re.IGNORECASE),
    re.compile(r'"sold"\s*:\s*(\d[\d,]*)', re.IGNORECASE),
    re.compile(r'"salesCount"\s*:\s*(\d[\d,]*)', re.IGNORECASE),
    re.compile(r'"dealCount"\s*:\s*(\d[\d,]*)', re.IGNORECASE),
)
_PLACEHOLDER_RE = re.compile(r"^(?:-|—|n/?a|null|undefined|none|\.{3})$", re.IGNORECASE)
_STRATEGY_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)


def clean_text(value: Optional[str]) -> str:
    return " ".join((value or "").split())


def is_placeholder(value: str) -> bool:
    return bool(_PLACEHOLDER_RE.match(value.strip()))


def extract_price_like(text: Optional[str]) -> str:
    """First currency-prefixed amount or range in ``text``."""
    match = PRICE_RE.search(clean_text(text))
    return match.group(0) if match else ""


def extract_moq_like(text: Optional[str]) -> Optional[str]:
    """Labelled MOQ like ``Min. Order: 500 Pieces`` rendered as ``500 PIECES``."""
    cleaned = clean_text(text)
    match = _MOQ_RE.search(cleaned)
    if not match:
        match = _MOQ_LOOSE_RE.search(cleaned)
        if not match:
            return None
    digits = re.sub(r"[^\d]", "", match.group(1))
    if not digits or int(digits) <= 0:
        return None
    unit = (match.group(2) or "pcs").upper()
    return f"{int(digits):,} {unit}"


def parse_count(raw: str) -> Optional[int]:
    digits = re.sub(r"[^\d]", "", raw or "")
    return int(digits) if digits else None


def sold_count_from_text(text: Optional[str]) -> Optional[int]:
    cleaned = clean_text(text)
    if not cleaned or re.search(r"sold\s+by", cleaned, re.IGNORECASE):
        return None
    match = _SOLD_RE.search(cleaned)
    return parse_count(match.group(1)) if match else None


def tier_from_text(text: str) -> Optional[PriceTier]:
    """Split ``"100 - 499 pieces US$2.50"`` into a price tier."""
    text = clean_text(text)
    price = extract_price_like(text)
    if not price:
        return None
    quantity = clean_text(text.replace(price, " "))
    return PriceTier(price=price, range=quantity)


def unique_pairs(pairs: Iterable[Pair], limit: int = MAX_ATTRIBUTES) -> List[Pair]:
    seen = set()
    result: List[Pair] = []
    for label, value in pairs:
        label = clean_text(label).rstrip(":").strip()
        value = clean_text(value)
        if not label or not value or is_placeholder(value):
            continue
        key = f"{label.lower()}|{value.lower()}"
        if key in seen:
            continue
        seen.add(key)
        result.append((label, value))
        if len(result) >= limit:
            break
    return result


def unique_images(urls: Iterable[Optional[str]], base: Optional[str] = None, limit: int = MAX_GALLERY) -> List[str]:
    result: List[str] = []
    for raw in urls:
        url = normalize_image_url(raw, base)
        if not url or url in result or is_likely_bad_image_url(url):
            continue
        result.append(url)
        if len(result) >= limit:
            break
    return result


class Page:
    """Parsed document plus lookup shortcuts used by field strategies."""

    def __init__(self, markup: str, base_url: Optional[str] = None) -> None:
        self.markup = markup
        self.base_url = base_url
        self.soup = BeautifulSoup(markup, "lxml")
        self._body_text: Optional[str] = None

    def first(self, selector: str) -> Optional[Tag]:
        return self.soup.select_one(selector)

    def all(self, selector: str) -> List[Tag]:
        return self.soup.select(selector)

    def text(self, selector: str) -> str:
        node = self.first(selector)
        return clean_text(node.get_text(" ")) if node else ""

    def texts(self, selector: str) -> List[str]:
        return [text for text in (clean_text(n.get_text(" ")) for n in self.all(selector)) if text]

    def attr(self, selector: str, name: str) -> str:
        node = self.first(selector)
        value = node.get(name) if node else None
        return clean_text(value if isinstance(value, str) else "")

    def meta(self, key: str) -> str:
        node = self.soup.find("meta", attrs={"property": key}) or self.soup.find(
            "meta", attrs={"name": key}
        ) or self.soup.find("meta", attrs={"itemprop": key})
        value = node.get("content") if node else None
        return clean_text(value if isinstance(value, str) else "")

    def scripts(self) -> List[str]:
        return [script.get_text() for script in self.soup.find_all("script") if script.get_text()]

    def json_ld(self) -> List[dict]:
        """Decoded JSON-LD objects, flattening ``@graph`` and top-level arrays."""
        items: List[dict] = []
        for script in self.soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = orjson.loads(script.get_text().strip() or "{}")
            except orjson.JSONDecodeError:
                continue
            stack = data if isinstance(data, list) else [data]
            for item in stack:
                if isinstance(item, dict):
                    items.append(item)
                    items.extend(node for node in item.get("@graph", []) if isinstance(node, dict))
        return items

    def body_text(self) -> str:
        if self._body_text is None:
            body = self.soup.body or self.soup
            self._body_text = clean_text(body.get_text(" "))
        return self._body_text

    def row_pairs(self, selector: str) -> List[Pair]:
        """``(label, value)`` from table rows using th/td or the first two cells."""
        pairs: List[Pair] = []
        for row in self.all(selector):
            header = row.find("th")
            cells = row.find_all("td")
            if header is not None and cells:
                pairs.append((header.get_text(" "), cells[0].get_text(" ")))
            elif len(cells) >= 2:
                pairs.append((cells[0].get_text(" "), cells[1].get_text(" ")))
        return pairs

    def definition_pairs(self, selector: str = "dl") -> List[Pair]:
        pairs: List[Pair] = []
        for dl in self.all(selector):
            for dt in dl.find_all("dt"):
                dd = dt.find_next_sibling("dd")
                if dd is not None:
                    pairs.append((dt.get_text(" "), dd.get_text(" ")))
        return pairs

    def labelled_value(self, selector: str, label: re.Pattern) -> str:
        """Value of the first row pair whose label matches ``label``."""
        for name, value in self.row_pairs(selector) + self.definition_pairs():
            if label.search(clean_text(name)):
                return clean_text(value)
        return ""

    def script_images(self, host_pattern: str) -> List[str]:
        pattern = re.compile(rf"(?:https?:)?//[^\s\"'\\]*(?:{host_pattern})[^\s\"'\\]*\.(?:jpe?g|png|webp)", re.I)
        found: List[str] = []
        for text in self.scripts():
            found.extend(pattern.findall(text))
        return found

    def sold_from_scripts(self) -> Optional[int]:
        best: Optional[int] = None
        for text in self.scripts():
            text = text[:800_000]
            for pattern in _SCRIPT_COUNT_RES:
                match = pattern.search(text)
                value = parse_count(match.group(1)) if match else None
                if value is not None and (best is None or value > best):
                    best = value
        return best

    def sold_from_text_nodes(self, limit: int = 800) -> Optional[int]:
        best: Optional[int] = None
        for index, node in enumerate(self.soup.find_all(string=re.compile(r"sold|orders", re.I))):
            if index >= limit:
                break
            value = sold_count_from_text(str(node)) if len(node) <= 120 else None
            if value is not None and (best is None or value > best):
                best = value
        return best


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)):
        return bool(value)
    return True


class Extractor:
    """Base class for platform extractors.

    Subclasses implement :meth:`parse` using :meth:`first_of` for every field so
    a broken selector only skips to the next strategy.
    """

    platform: Platform
    base_url: Optional[str] = None

    def extract(self, markup: Optional[str]) -> DraftDetail:
        """Parse raw markup into a draft; never raises."""
        if not markup or not markup.strip():
            return DraftDetail(debug=["extract:empty-markup"])
        try:
            page = Page(markup, self.base_url)
            debug: List[str] = []
            draft = self.parse(page, debug)
        except Exception:
            LOGGER.warning("%s extractor failed on malformed markup", self.platform.value, exc_info=True)
            return DraftDetail(debug=["extract:failed"])
        draft.debug = debug + draft.debug
        if draft.is_empty():
            draft.debug.append("extract:empty")
        return draft

    def parse(self, page: Page, debug: List[str]) -> DraftDetail:
        raise NotImplementedError

    @staticmethod
    def first_of(
        field: str,
        strategies: Sequence[Strategy],
        debug: List[str],
        accept: Callable[[Any], bool] = _present,
    ) -> Any:
        """Return the first strategy value that is present and accepted.

        Parameters
        ----------
        field : str
            Field name recorded in the debug trail
        strategies : sequence of (name, callable)
            Strategies in priority order
        debug : list[str]
            Trail receiving ``"field:strategy"`` for the winner
        accept : callable
            Extra validation; rejected values fall through to the next strategy

        Returns
        -------
        Any
            Winning value, or None when every strategy misses
        """
        for name, strategy in strategies:
            try:
                value = strategy()
            except _STRATEGY_ERRORS as exc:
                LOGGER.debug("%s strategy %s failed: %s", field, name, exc)
                continue
            if _present(value) and accept(value):
                debug.append(f"{field}:{name}")
                return value
        LOGGER.debug("No strategy produced %s", field)
        return None

    @staticmethod
    def winner(field: str, debug: List[str]) -> Optional[str]:
        prefix = f"{field}:"
        for entry in reversed(debug):
            if entry.startswith(prefix):
                return entry[len(prefix):]
        return None

"""Detail normalization, correctness predicate and quality triage."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import DraftDetail, ListingFallback, NormalizedDetail, Pair, PriceTier, QualityClass

LOGGER = logging.getLogger(__name__)

SEED_PLACEHOLDER = "/seed/placeholder.jpg"
NO_PRICE = "—"
SYNTH_TIER = "normalize:synth-tier"
SEED_HERO = "normalize:seed-hero"
GOOD_ATTRIBUTE_COUNT = 10
CORRECT_ATTRIBUTE_COUNT = 3

_MOQ_RE = re.compile(r"[≥>]?\s*(\d[\d,]*)")
_ORDERS_RE = re.compile(r"(\d[\d,.]*?)\s*(?:sold|orders)", re.IGNORECASE)
_PRICE_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


def currency_symbol(currency: Optional[str]) -> str:
    code = (currency or "").strip().upper()
    if not code or code == "USD":
        return "US$"
    if code in ("CNY", "RMB"):
        return "¥"
    if code == "INR":
        return "₹"
    return code


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def format_range(
    price_min: Optional[float],
    price_max: Optional[float],
    currency: Optional[str] = None,
) -> Optional[str]:
    """Render a display price from numeric bounds.

    Examples: ``US$1.50 - US$3``, ``₹1,200``.
    """
    if price_min is None and price_max is None:
        return None
    low = price_min if price_min is not None else price_max
    high = price_max if price_max is not None else price_min
    sym = currency_symbol(currency)
    if low == high:
        return f"{sym}{_format_number(low)}"
    return f"{sym}{_format_number(low)} - {sym}{_format_number(high)}"


def parse_moq_text(text: Optional[str]) -> Optional[int]:
    """Parse the first quantity in a MOQ string like ``≥ 1,000 pieces``."""
    if not text:
        return None
    match = _MOQ_RE.search(text)
    if not match:
        return None
    value = int(match.group(1).replace(",", ""))
    return value if value > 0 else None


def parse_orders(text: Optional[str]) -> Optional[int]:
    """Parse a sold count from text like ``1,234 sold`` or ``56 orders``."""
    if not text:
        return None
    match = _ORDERS_RE.search(text)
    if not match:
        return None
    digits = re.sub(r"[,.]", "", match.group(1))
    return int(digits) if digits else None


def parse_price_value(text: Optional[str]) -> Optional[float]:
    """First numeric amount in a price string, or None."""
    if not text:
        return None
    match = _PRICE_NUMBER_RE.search(text)
    if not match:
        return None
    return float(match.group(0).replace(",", ""))


def _clean_pairs(pairs: Iterable[Pair]) -> List[Pair]:
    seen = set()
    result: List[Pair] = []
    for label, value in pairs:
        label = " ".join(str(label or "").split()).rstrip(":")
        value = " ".join(str(value or "").split())
        if not label or not value:
            continue
        key = (label.lower(), value.lower())
        if key in seen:
            continue
        seen.add(key)
        result.append((label, value))
    return result


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        value = " ".join((value or "").split())
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _sort_tiers(tiers: List[PriceTier]) -> List[PriceTier]:
    def key(item: Tuple[int, PriceTier]):
        index, tier = item
        value = parse_price_value(tier.price)
        return (0, value, index) if value is not None else (1, 0.0, index)

    return [tier for _, tier in sorted(enumerate(tiers), key=key)]


def normalize(draft: DraftDetail, fallback: Optional[ListingFallback] = None) -> NormalizedDetail:
    """Merge an extractor draft with the prior listing snapshot.

    Parameters
    ----------
    draft : DraftDetail
        Extractor output, possibly empty
    fallback : ListingFallback, optional
        Catalog snapshot used for fields the draft lacks

    Returns
    -------
    NormalizedDetail
        Record with non-empty price tiers, a hero image and MOQ of at least 1
    """
    fallback = fallback or ListingFallback()
    debug = list(draft.debug)

    title = (draft.title or "").strip() or (fallback.title or "").strip()

    price_text = (draft.price_text or "").strip() or None
    if price_text is None:
        price_text = (fallback.price_raw or "").strip() or format_range(
            fallback.price_min, fallback.price_max, fallback.currency
        )
        if price_text:
            debug.append("normalize:price-from-fallback")

    moq = draft.moq if draft.moq and draft.moq > 0 else None
    if moq is None:
        moq = parse_moq_text(draft.moq_text)
        if moq is not None:
            debug.append("normalize:moq-from-text")
    if moq is None and fallback.moq and fallback.moq > 0:
        moq = fallback.moq
    moq = max(1, moq or 1)

    tiers = [tier for tier in draft.price_tiers if (tier.price or "").strip()]
    if tiers:
        tiers = _sort_tiers(tiers)
    else:
        tiers = [PriceTier(price=price_text or NO_PRICE, range=f"≥ {moq}")]
        debug.append(SYNTH_TIER)

    hero = (draft.hero_image or "").strip()
    if not hero and draft.gallery:
        hero = draft.gallery[0]
        debug.append("normalize:hero-from-gallery")
    if not hero and fallback.image:
        hero = fallback.image
        debug.append("normalize:hero-from-fallback")
    if not hero:
        hero = SEED_PLACEHOLDER
        debug.append(SEED_HERO)

    sold = draft.sold_count
    if sold is None:
        sold = parse_orders(draft.sold_text)
    if sold is None:
        sold = parse_orders(fallback.orders_raw)
        if sold is not None:
            debug.append("normalize:sold-from-fallback")

    return NormalizedDetail(
        title=title,
        price_text=price_text,
        price_tiers=tiers,
        moq=moq,
        hero_image=hero,
        attributes=_clean_pairs(draft.attributes),
        packaging=_clean_pairs(draft.packaging),
        protections=_dedupe(draft.protections),
        supplier=draft.supplier,
        sold_count=sold,
        gallery=_dedupe(draft.gallery),
        debug=debug,
        debug_source=draft.debug_source,
    )


def is_correct(detail: Optional[NormalizedDetail]) -> bool:
    """Strict completeness predicate; all six conjuncts are required."""
    return not missing_fields(detail)


def missing_fields(detail: Optional[NormalizedDetail]) -> List[str]:
    """Names of correctness conjuncts the detail fails."""
    if detail is None:
        return ["detail"]
    missing = []
    if not detail.title.strip():
        missing.append("title")
    if not detail.hero_image:
        missing.append("hero_image")
    if not detail.price_tiers:
        missing.append("price_tiers")
    if len(detail.attributes) < CORRECT_ATTRIBUTE_COUNT and not detail.packaging:
        missing.append("attributes_or_packaging")
    if not detail.protections:
        missing.append("protections")
    if not detail.supplier.name.strip():
        missing.append("supplier")
    return missing


def classify_quality(detail: Optional[NormalizedDetail]) -> QualityClass:
    """Triage bucket; packaging rows alone do not lift a detail out of ``bad``."""
    if detail is None:
        return QualityClass.MISSING
    if (
        len(detail.attributes) >= GOOD_ATTRIBUTE_COUNT
        and detail.price_tiers
        and detail.hero_image
        and detail.supplier.name.strip()
    ):
        return QualityClass.GOOD
    if detail.attributes:
        return QualityClass.PARTIAL
    return QualityClass.BAD


def has_synthesized_tiers(detail: NormalizedDetail) -> bool:
    return SYNTH_TIER in detail.debug


def regressed_fields(prior: Optional[NormalizedDetail], fresh: NormalizedDetail) -> List[str]:
    """Fields populated in ``prior`` that ``fresh`` would empty or downgrade."""
    if prior is None:
        return []
    regressed = []
    if prior.title and not fresh.title:
        regressed.append("title")
    if prior.price_text and not fresh.price_text:
        regressed.append("price_text")
    if has_synthesized_tiers(fresh) and not has_synthesized_tiers(prior):
        regressed.append("price_tiers")
    if fresh.hero_image == SEED_PLACEHOLDER and prior.hero_image != SEED_PLACEHOLDER:
        regressed.append("hero_image")
    for name in ("attributes", "packaging", "protections", "gallery"):
        if getattr(prior, name) and not getattr(fresh, name):
            regressed.append(name)
    if prior.supplier.name and not fresh.supplier.name:
        regressed.append("supplier")
    if prior.sold_count is not None and fresh.sold_count is None:
        regressed.append("sold_count")
    return regressed


def preserve(prior: Optional[NormalizedDetail], fresh: NormalizedDetail) -> NormalizedDetail:
    """Return ``fresh`` with every regressed field taken from ``prior``.

    The catalog only ever improves: a thin scrape cannot erase data an earlier
    scrape found.
    """
    regressed = regressed_fields(prior, fresh)
    if not regressed:
        return fresh

    updates: Dict[str, Any] = {}
    debug = list(fresh.debug)
    for name in regressed:
        if name == "price_tiers":
            updates["price_tiers"] = prior.price_tiers
            updates["moq"] = prior.moq
            debug = [entry for entry in debug if entry != SYNTH_TIER]
        elif name == "hero_image":
            updates["hero_image"] = prior.hero_image
            debug = [entry for entry in debug if entry != SEED_HERO]
        elif name == "supplier":
            updates["supplier"] = prior.supplier
        else:
            updates[name] = getattr(prior, name)
        debug.append(f"preserve:{name}")

    updates["debug"] = debug
    LOGGER.debug("Kept prior values for %s", ", ".join(regressed))
    return fresh.model_copy(update=updates)

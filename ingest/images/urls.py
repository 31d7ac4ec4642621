"""URL-level image heuristics: normalization, placeholder patterns and scoring."""
from __future__ import annotations

import re
from typing import Optional, Tuple
from urllib.parse import urljoin, urlsplit

ALLOWED_HOST_SUFFIXES = (
    "alibaba.com",
    "alicdn.com",
    "1688.com",
    "made-in-china.com",
    "micstatic.com",
    "indiamart.com",
    "imimg.com",
)
CDN_HOST_SUFFIXES = ("alicdn.com", "micstatic.com", "imimg.com")

_REFERERS = (
    ("1688.com", "https://s.1688.com/"),
    ("alicdn.com", "https://www.alibaba.com/"),
    ("alibaba.com", "https://www.alibaba.com/"),
    ("made-in-china.com", "https://www.made-in-china.com/"),
    ("micstatic.com", "https://www.made-in-china.com/"),
    ("indiamart.com", "https://dir.indiamart.com/"),
    ("imimg.com", "https://dir.indiamart.com/"),
)

_DIMS_RE = re.compile(r"[_-](\d{2,4})x(\d{2,4})(?=[._-]|$)")
_THUMB_RE = re.compile(r"_(50|80|120)x\1(?=[._])")
_BADGE_RE = re.compile(r"@img|sprite|logo|favicon|badge|watermark|icon", re.IGNORECASE)
_TPS_RE = re.compile(r"tps-\d+-\d+\.(?:png|jpe?g)$", re.IGNORECASE)
_TPS_FULL_RE = re.compile(r"\d{4,6}-\d-tps-\d{2,4}-\d{2,4}\.(?:png|jpe?g)", re.IGNORECASE)
_HASHED_KF_PNG_RE = re.compile(r"/kf/H[0-9a-z]{16,}\.png$", re.IGNORECASE)
_MIC_SPACE_RE = re.compile(r"micstatic\.com/.*common/img/space\.png", re.IGNORECASE)
_SIZE_SUFFIX_RE = re.compile(r"_\d{2,4}x\d{2,4}")


def _host(url: str) -> str:
    return urlsplit(url).netloc.lower()


def _host_matches(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith("." + suffix)


def normalize_image_url(src: Optional[str], base: Optional[str] = None) -> Optional[str]:
    """Absolute https URL with small thumbnails upgraded to 350px, or None."""
    src = (src or "").strip()
    if not src or src.startswith("data:"):
        return None
    if src.startswith("//"):
        src = "https:" + src
    elif src.startswith("/") and base:
        src = urljoin(base, src)
    if not src.lower().startswith(("http://", "https://")):
        return None
    return _THUMB_RE.sub("_350x350", src)


def declared_dimensions(url: str) -> Optional[Tuple[int, int]]:
    """Pixel size encoded in the URL (``_960x960.jpg``), last occurrence wins."""
    matches = _DIMS_RE.findall(urlsplit(url).path)
    if not matches:
        return None
    width, height = matches[-1]
    return int(width), int(height)


def is_allowed_host(url: str) -> bool:
    host = _host(url)
    return any(_host_matches(host, suffix) for suffix in ALLOWED_HOST_SUFFIXES)


def referer_for(url: str) -> Optional[str]:
    host = _host(url)
    for suffix, referer in _REFERERS:
        if _host_matches(host, suffix):
            return referer
    return None


def rejection_reason(url: Optional[str], min_side: int = 200) -> Optional[str]:
    """Why ``url`` is rejected without downloading it, or None when it is worth a fetch."""
    if not url or not url.lower().startswith(("http://", "https://")):
        return "not_http"
    if not is_allowed_host(url):
        return "host_not_allowed"
    path = urlsplit(url).path
    if _BADGE_RE.search(url):
        return "badge_keyword"
    if _TPS_RE.search(path) or _TPS_FULL_RE.search(path):
        return "tps_placeholder"
    if _HASHED_KF_PNG_RE.search(path) and not _SIZE_SUFFIX_RE.search(path):
        return "hashed_png"
    if _MIC_SPACE_RE.search(url):
        return "marketplace_placeholder"
    dims = declared_dimensions(url)
    if dims and min(dims) < min_side:
        return "declared_too_small"
    return None


def is_likely_bad_image_url(url: Optional[str], min_side: int = 200) -> bool:
    return rejection_reason(url, min_side) is not None


def score_image_url(url: str) -> int:
    """Rank candidate URLs; canonical large CDN jpgs win over badges and thumbnails."""
    host = _host(url)
    path = urlsplit(url).path.lower()
    lowered = url.lower()
    score = 0

    if any(_host_matches(host, suffix) for suffix in CDN_HOST_SUFFIXES):
        score += 100
    if re.search(r"/@sc0\d/", lowered):
        score += 40
    if "/kf/" in path or "imgextra" in path:
        score += 80
    if host == "s.alicdn.com" and re.search(r"/@sc\d\d/kf/", lowered):
        score += 160
    if _BADGE_RE.search(url) or _TPS_RE.search(path):
        score -= 100

    has_size = bool(_SIZE_SUFFIX_RE.search(path))
    if _HASHED_KF_PNG_RE.search(path) and not has_size:
        score -= 260

    dims = declared_dimensions(url)
    if dims:
        min_side = min(dims)
        score += min(400, min_side)
        if min_side < 180:
            score -= 120
        if max(dims) <= min_side * 1.25:
            score += 40

    if path.endswith((".jpg", ".jpeg", ".webp")):
        score += 80
    elif path.endswith(".png"):
        score -= 60
        if not has_size:
            score -= 180
    if "_100x100" in path:
        score -= 150
    return score

"""Image cache: resolve candidate URLs to content-addressed, vetted local files."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, List, Optional

import httpx

from ..antibot.user_agent import IMAGE_ACCEPT, UserAgentPool
from ..config import ImageConfig
from .detector import BadImageDetector
from .registry import BadHashRegistry, ImageManifest
from .store import LocalImageStore, SupabaseImageMirror
from .urls import normalize_image_url, referer_for, rejection_reason, score_image_url

LOGGER = logging.getLogger(__name__)

SELECTION_MODES = ("best", "first")
DOWNLOAD_FAILED = "download_failed"


@dataclass(frozen=True)
class ImageAsset:
    """Outcome of resolving one candidate URL."""

    source_url: str
    content_hash: Optional[str] = None
    local_path: Optional[Path] = None
    remote_url: Optional[str] = None
    width: int = 0
    height: int = 0
    byte_size: int = 0
    extension: Optional[str] = None
    bad: bool = False
    reason: Optional[str] = None
    score: int = 0

    @property
    def path(self) -> Optional[str]:
        """Reference stored on the detail: remote copy when mirrored, else local file."""
        if self.remote_url:
            return self.remote_url
        return str(self.local_path) if self.local_path else None

    def to_dict(self) -> dict:
        return {
            "source_url": self.source_url,
            "content_hash": self.content_hash,
            "path": self.path,
            "width": self.width,
            "height": self.height,
            "byte_size": self.byte_size,
            "bad": self.bad,
            "reason": self.reason,
        }


@dataclass
class ImageSelection:
    """Result of :meth:`ImageCache.select`."""

    candidates: List[str]
    asset: Optional[ImageAsset] = None
    rejected: List[ImageAsset] = field(default_factory=list)

    def is_bad(self, url: Optional[str]) -> bool:
        """True when ``url`` was judged a bad image, as opposed to unreachable."""
        normalized = normalize_image_url(url)
        return any(
            asset.source_url == normalized and asset.reason != DOWNLOAD_FAILED for asset in self.rejected
        )

    def first_unjudged(self) -> Optional[str]:
        """First candidate that was never judged bad (unreachable or not tried)."""
        for url in self.candidates:
            if not self.is_bad(url):
                return url
        return None


def _rejected(url: str, reason: str, content_hash: Optional[str] = None) -> ImageAsset:
    return ImageAsset(source_url=url, content_hash=content_hash, bad=True, reason=reason)


def content_hash_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class ImageCache:
    """Download, vet and store candidate images.

    The bad-hash registry is injected so one instance can be shared by every
    worker in the process.
    """

    def __init__(
        self,
        config: Optional[ImageConfig] = None,
        *,
        registry: Optional[BadHashRegistry] = None,
        manifest: Optional[ImageManifest] = None,
        store: Optional[LocalImageStore] = None,
        mirror: Optional[SupabaseImageMirror] = None,
        client: Optional[httpx.Client] = None,
        user_agents: Optional[UserAgentPool] = None,
    ) -> None:
        """Initialize image cache.

        Parameters
        ----------
        config : ImageConfig, optional
            Thresholds, cache directory and selection mode
        registry : BadHashRegistry, optional
            Shared bad-hash set (defaults to ``<cache_dir>/bad_hashes.json``)
        manifest : ImageManifest, optional
            URL/hash index (defaults to ``<cache_dir>/manifest.json``)
        store : LocalImageStore, optional
            Local file store (defaults to ``cache_dir``)
        mirror : SupabaseImageMirror, optional
            Remote object store copy
        client : httpx.Client, optional
            HTTP client used for downloads
        user_agents : UserAgentPool, optional
            Source of rotating user agents
        """
        self.config = config or ImageConfig()
        if self.config.selection_mode not in SELECTION_MODES:
            raise ValueError(f"selection_mode must be one of {SELECTION_MODES}")
        root = Path(self.config.cache_dir)
        self.store = store or LocalImageStore(root)
        self.registry = registry if registry is not None else BadHashRegistry(root / "bad_hashes.json")
        self.manifest = manifest if manifest is not None else ImageManifest(root / "manifest.json")
        self.mirror = mirror
        self.detector = BadImageDetector(
            min_side_px=self.config.min_side_px,
            min_bytes=self.config.min_bytes,
            min_stddev=self.config.min_stddev,
        )
        self._client = client or httpx.Client(timeout=httpx.Timeout(self.config.download_timeout))
        self.user_agents = user_agents or UserAgentPool()

    def resolve(self, url: str) -> ImageAsset:
        """Resolve one candidate URL to a vetted local file.

        Never raises for bad or unreachable images; the returned asset carries
        ``bad=True`` and a ``reason`` instead.
        """
        normalized = normalize_image_url(url)
        if normalized is None:
            return _rejected(url or "", "not_http")

        reason = rejection_reason(normalized, self.config.min_side_px)
        if reason:
            LOGGER.debug("Rejected %s before download: %s", normalized, reason)
            return _rejected(normalized, reason)

        cached = self._from_manifest(normalized)
        if cached is not None:
            return cached

        try:
            data = self._download(normalized)
        except httpx.HTTPError as exc:
            LOGGER.warning("Image download failed for %s: %s", normalized, exc)
            return _rejected(normalized, DOWNLOAD_FAILED)

        content_hash = content_hash_of(data)
        self.manifest.record(normalized, content_hash)
        if content_hash in self.registry:
            LOGGER.info("Rejected %s: known bad hash %s", normalized, content_hash)
            return _rejected(normalized, "known_bad_hash", content_hash)

        inspection = self.detector.inspect(data)
        if inspection.bad:
            self.registry.add(content_hash, inspection.reason)
            self.manifest.mark_bad(content_hash, inspection.reason)
            LOGGER.info("Rejected %s: %s", normalized, inspection.reason)
            return ImageAsset(
                source_url=normalized,
                content_hash=content_hash,
                width=inspection.width,
                height=inspection.height,
                byte_size=inspection.byte_size,
                extension=inspection.extension,
                bad=True,
                reason=inspection.reason,
            )

        local_path = self.store.put(content_hash, inspection.extension, data)
        remote_url = None
        if self.mirror is not None:
            remote_url = self.mirror.upload(local_path.name, data, inspection.extension)

        self.manifest.record(
            normalized,
            content_hash,
            extension=inspection.extension,
            width=inspection.width,
            height=inspection.height,
            byte_size=inspection.byte_size,
            remote_url=remote_url,
            bad=False,
        )
        LOGGER.debug("Cached %s as %s", normalized, local_path.name)
        return ImageAsset(
            source_url=normalized,
            content_hash=content_hash,
            local_path=local_path,
            remote_url=remote_url,
            width=inspection.width,
            height=inspection.height,
            byte_size=inspection.byte_size,
            extension=inspection.extension,
        )

    def resolve_best(self, urls: Iterable[Optional[str]], mode: Optional[str] = None) -> Optional[ImageAsset]:
        """Pick the image to use from several candidates.

        Returns the accepted asset, or None when every candidate was rejected.
        """
        return self.select(urls, mode).asset

    def select(self, urls: Iterable[Optional[str]], mode: Optional[str] = None) -> ImageSelection:
        """Resolve candidates and keep the verdict on every rejected one.

        Parameters
        ----------
        urls : iterable of str
            Candidates in extractor priority order
        mode : str, optional
            ``"best"`` scores every accepted candidate and returns the top one;
            ``"first"`` returns the first accepted candidate

        Returns
        -------
        ImageSelection
            Accepted asset (or None) with the rejections seen on the way
        """
        mode = mode or self.config.selection_mode
        candidates: List[str] = []
        for url in urls:
            normalized = normalize_image_url(url)
            if normalized and normalized not in candidates:
                candidates.append(normalized)

        selection = ImageSelection(candidates=candidates)
        if mode == "first":
            for url in candidates:
                asset = self.resolve(url)
                if not asset.bad:
                    selection.asset = asset
                    return selection
                selection.rejected.append(asset)
            return selection

        ranked = sorted(candidates, key=score_image_url, reverse=True)[: self.config.max_candidates]
        accepted = []
        for url in ranked:
            asset = self.resolve(url)
            if asset.bad:
                selection.rejected.append(asset)
            else:
                accepted.append(replace(asset, score=self._score(asset)))
        if accepted:
            selection.asset = max(accepted, key=lambda asset: asset.score)
        return selection

    def mark_bad(self, content_hash: str, reason: str = "manual") -> bool:
        """Add a hash found by manual audit to the registry."""
        self.manifest.mark_bad(content_hash, reason)
        return self.registry.add(content_hash, reason)

    def audit(self) -> List[ImageAsset]:
        """Re-inspect every stored file and flag those that now fail the detector."""
        flagged = []
        for path in self.store.iter_files():
            content_hash = path.stem
            if content_hash in self.registry:
                continue
            inspection = self.detector.inspect(path.read_bytes())
            if inspection.bad:
                self.mark_bad(content_hash, inspection.reason)
                flagged.append(
                    ImageAsset(
                        source_url=(self.manifest.entry(content_hash) or {}).get("source_url", ""),
                        content_hash=content_hash,
                        local_path=path,
                        width=inspection.width,
                        height=inspection.height,
                        byte_size=inspection.byte_size,
                        extension=inspection.extension,
                        bad=True,
                        reason=inspection.reason,
                    )
                )
        LOGGER.info("Audit flagged %d stored image(s)", len(flagged))
        return flagged

    def close(self) -> None:
        self._client.close()

    def _from_manifest(self, url: str) -> Optional[ImageAsset]:
        content_hash = self.manifest.hash_for_url(url)
        if content_hash is None:
            return None
        if content_hash in self.registry:
            LOGGER.debug("Rejected %s without fetch: known bad hash", url)
            return _rejected(url, "known_bad_hash", content_hash)
        entry = self.manifest.entry(content_hash)
        if not entry or not entry.get("extension"):
            return None
        local_path = self.store.path_for(content_hash, entry["extension"])
        if not local_path.exists():
            return None
        LOGGER.debug("Image cache hit for %s", url)
        return ImageAsset(
            source_url=url,
            content_hash=content_hash,
            local_path=local_path,
            remote_url=entry.get("remote_url"),
            width=entry.get("width", 0),
            height=entry.get("height", 0),
            byte_size=entry.get("byte_size", 0),
            extension=entry["extension"],
        )

    def _download(self, url: str) -> bytes:
        headers = {"User-Agent": self.user_agents.get_random(), "Accept": IMAGE_ACCEPT}
        referer = referer_for(url)
        if referer:
            headers["Referer"] = referer
        response = self._client.get(url, headers=headers, follow_redirects=True)
        response.raise_for_status()
        return response.content

    @staticmethod
    def _score(asset: ImageAsset) -> int:
        score = score_image_url(asset.source_url)
        side = min(asset.width, asset.height)
        score += min(400, side)
        if side and max(asset.width, asset.height) <= side * 1.25:
            score += 40
        return score

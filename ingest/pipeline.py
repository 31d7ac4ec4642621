"""One listing through fetch, extract, normalize and hero image resolution."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from . import contract
from .errors import FetchError
from .extractors import get_extractor
from .fetcher import Fetcher, FetchResult
from .images import ImageAsset, ImageCache, ImageSelection
from .models import DraftDetail, ExternalListing, NormalizedDetail, Platform, QualityClass

LOGGER = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    """Everything one pipeline run produced; nothing is persisted yet."""

    listing: ExternalListing
    detail: NormalizedDetail
    draft: DraftDetail
    fetch: FetchResult
    hero: Optional[ImageAsset]
    completed_at: float

    @property
    def extraction_empty(self) -> bool:
        return self.draft.is_empty()

    @property
    def quality(self) -> QualityClass:
        return contract.classify_quality(self.detail)


class DetailPipeline:
    """Fetch and parse a listing page into a normalized detail.

    Fetch errors propagate to the caller; extraction problems never do.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        images: Optional[ImageCache] = None,
        clock: Callable[[], float] = time.time,
        render_platforms: Iterable[Platform] = (),
        render_fallback: bool = True,
    ) -> None:
        """Initialize pipeline.

        Parameters
        ----------
        fetcher : Fetcher
            Page fetcher
        images : ImageCache, optional
            Hero image resolver; without it the normalized hero URL is kept as-is
        clock : callable
            Wall clock used for completion stamps, which the catalog compares across processes
        render_platforms : iterable of Platform
            Platforms whose pages always need JavaScript rendering
        render_fallback : bool
            Re-fetch with the renderer when the static page yields nothing
        """
        self.fetcher = fetcher
        self.images = images
        self.clock = clock
        self.render_platforms = frozenset(render_platforms)
        self.render_fallback = render_fallback

    def run(self, listing: ExternalListing) -> PipelineOutcome:
        """Process ``listing`` once.

        Raises
        ------
        FetchError
            When the page could not be retrieved
        """
        extractor = get_extractor(listing.platform)
        must_render = listing.platform in self.render_platforms

        result = self.fetcher.fetch(listing.identity, listing.platform, must_render_js=must_render)
        draft = extractor.extract(result.body)

        if draft.is_empty() and self.render_fallback and not result.rendered:
            LOGGER.info("Static page for %s yielded nothing, retrying rendered", listing.id)
            try:
                rendered = self.fetcher.fetch(listing.identity, listing.platform, must_render_js=True)
            except FetchError as exc:
                LOGGER.warning("Rendered fetch of %s failed: %s", listing.id, exc)
                draft.debug.append("fetch:render-failed")
            else:
                rendered_draft = extractor.extract(rendered.body)
                if not rendered_draft.is_empty():
                    result, draft = rendered, rendered_draft
                    draft.debug.append("fetch:rendered")

        detail = contract.normalize(draft, listing.fallback())
        hero = None
        if self.images is not None:
            detail, hero = self._resolve_hero(detail, draft, listing)

        completed_at = self.clock()
        LOGGER.debug(
            "Pipeline for %s: quality=%s source=%s",
            listing.id,
            contract.classify_quality(detail).value,
            detail.debug_source,
        )
        return PipelineOutcome(
            listing=listing,
            detail=detail,
            draft=draft,
            fetch=result,
            hero=hero,
            completed_at=completed_at,
        )

    def _resolve_hero(
        self,
        detail: NormalizedDetail,
        draft: DraftDetail,
        listing: ExternalListing,
    ):
        candidates = [draft.hero_image, *draft.gallery, listing.image]
        selection = self.images.select(candidates)
        hero = selection.asset
        if hero is None or not hero.path:
            return self._unresolved_hero(detail, selection, listing), None

        debug = [entry for entry in detail.debug if entry != contract.SEED_HERO]
        debug.append("image:resolved")
        return detail.model_copy(update={"hero_image": hero.path, "debug": debug}), hero

    @staticmethod
    def _unresolved_hero(
        detail: NormalizedDetail,
        selection: ImageSelection,
        listing: ExternalListing,
    ) -> NormalizedDetail:
        """Pick a hero when no candidate was accepted.

        An unreachable URL may still be a real image and is kept; a URL judged
        bad never is. Without any unjudged candidate the seed placeholder is used.
        """
        debug = [*detail.debug, "image:unresolved"]
        if not selection.is_bad(detail.hero_image):
            LOGGER.info("No acceptable image for %s, keeping %s", listing.id, detail.hero_image)
            return detail.model_copy(update={"debug": debug})

        fallback = selection.first_unjudged()
        if fallback is None:
            LOGGER.warning("Every image for %s was rejected, using placeholder", listing.id)
            fallback = contract.SEED_PLACEHOLDER
            if contract.SEED_HERO not in debug:
                debug.append(contract.SEED_HERO)
        else:
            LOGGER.info("Hero for %s was rejected, keeping unverified %s", listing.id, fallback)
        return detail.model_copy(update={"hero_image": fallback, "debug": debug})

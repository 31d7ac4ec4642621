import hashlib

import httpx
import pytest

from ingest import contract
from ingest.antibot.user_agent import UserAgentPool
from ingest.errors import BlockedError, NetworkError
from ingest.fetcher import Fetcher
from ingest.images import ImageCache
from ingest.models import Platform
from ingest.pipeline import DetailPipeline

HERO_URL = "https://s.alicdn.com/@sc04/kf/Hmain0001_960x960.jpg"
EMPTY_PAGE = "<html><body><div id='root'></div></body></html>"


class FakeRenderer:
    def __init__(self, body="", error=None):
        self.body = body
        self.error = error
        self.calls = 0

    def render(self, url, headers):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return 200, self.body, url


def _fetcher(body, renderer=None, status=200):
    transport = httpx.MockTransport(lambda request: httpx.Response(status, text=body))
    return Fetcher(
        client=httpx.Client(transport=transport),
        renderer=renderer or FakeRenderer(),
        user_agents=UserAgentPool(seed=1),
    )


def _images(image_config, served):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, content=served[str(request.url)])
        if str(request.url) in served
        else httpx.Response(404)
    )
    return ImageCache(image_config, client=httpx.Client(transport=transport))


def test_run_produces_normalized_detail(page_html, make_listing, clock):
    pipeline = DetailPipeline(_fetcher(page_html("alibaba_detail.html")), clock=clock)

    outcome = pipeline.run(make_listing("L1"))

    assert not outcome.extraction_empty
    assert outcome.detail.title == "Stainless Steel Water Bottle"
    assert outcome.detail.hero_image == HERO_URL
    assert outcome.detail.debug_source == "range-price"
    assert contract.is_correct(outcome.detail)
    assert outcome.completed_at == clock()
    assert outcome.hero is None
    assert not outcome.fetch.rendered


def test_hero_resolved_to_cached_file(page_html, make_listing, image_config, make_png, clock):
    images = _images(image_config, {HERO_URL: make_png()})
    pipeline = DetailPipeline(_fetcher(page_html("alibaba_detail.html")), images=images, clock=clock)

    outcome = pipeline.run(make_listing("L1"))

    assert outcome.hero is not None
    assert outcome.hero.source_url == HERO_URL
    assert outcome.detail.hero_image == str(outcome.hero.local_path)
    assert "image:resolved" in outcome.detail.debug


def test_unresolved_hero_keeps_page_url(page_html, make_listing, image_config, clock):
    pipeline = DetailPipeline(
        _fetcher(page_html("alibaba_detail.html")),
        images=_images(image_config, {}),
        clock=clock,
    )

    outcome = pipeline.run(make_listing("L1"))

    assert outcome.hero is None
    assert outcome.detail.hero_image == HERO_URL
    assert "image:unresolved" in outcome.detail.debug


def _serve_everything(image_config, data, except_urls=()):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(404)
        if str(request.url) in except_urls
        else httpx.Response(200, content=data)
    )
    return ImageCache(image_config, client=httpx.Client(transport=transport))


def test_rejected_hero_replaced_by_placeholder(page_html, make_listing, image_config, make_png, clock):
    placeholder = make_png()
    images = _serve_everything(image_config, placeholder)
    images.mark_bad(hashlib.sha1(placeholder).hexdigest(), "placeholder")
    pipeline = DetailPipeline(_fetcher(page_html("alibaba_detail.html")), images=images, clock=clock)

    outcome = pipeline.run(make_listing("L1"))

    assert outcome.hero is None
    assert outcome.detail.hero_image == contract.SEED_PLACEHOLDER
    assert contract.SEED_HERO in outcome.detail.debug
    assert "image:unresolved" in outcome.detail.debug


def test_rejected_hero_falls_back_to_unreachable_candidate(page_html, make_listing, image_config, make_png, clock):
    placeholder = make_png()
    images = _serve_everything(
        image_config,
        placeholder,
        except_urls=[
            "https://s.alicdn.com/@sc04/kf/Hgal0001_720x720.jpg",
            "https://s.alicdn.com/@sc04/kf/Hgal0002_350x350.jpg",
            "https://s.alicdn.com/@sc04/kf/Hgal0002_80x80.jpg",
        ],
    )
    images.mark_bad(hashlib.sha1(placeholder).hexdigest(), "placeholder")
    pipeline = DetailPipeline(_fetcher(page_html("alibaba_detail.html")), images=images, clock=clock)

    outcome = pipeline.run(make_listing("L1"))

    assert outcome.detail.hero_image != HERO_URL
    assert "Hgal0001" in outcome.detail.hero_image
    assert contract.SEED_HERO not in outcome.detail.debug


def test_listing_image_used_when_page_has_none(make_listing, image_config, make_png, clock):
    listing_image = "https://s.alicdn.com/@sc04/kf/Hlisting_800x800.jpg"
    page = "<html><h1 class='product-title'>Stainless Steel Water Bottle</h1></html>"
    images = _images(image_config, {listing_image: make_png()})
    pipeline = DetailPipeline(_fetcher(page), images=images, clock=clock, render_fallback=False)

    outcome = pipeline.run(make_listing("L1", image=listing_image))

    assert outcome.hero.source_url == listing_image
    assert outcome.detail.hero_image == str(outcome.hero.local_path)
    assert "normalize:hero-from-fallback" in outcome.detail.debug
    assert contract.SEED_HERO not in outcome.detail.debug


def test_empty_static_page_falls_back_to_renderer(page_html, make_listing, clock):
    renderer = FakeRenderer(body=page_html("alibaba_detail.html"))
    pipeline = DetailPipeline(_fetcher(EMPTY_PAGE, renderer), clock=clock)

    outcome = pipeline.run(make_listing("L1"))

    assert renderer.calls == 1
    assert outcome.fetch.rendered
    assert not outcome.extraction_empty
    assert "fetch:rendered" in outcome.detail.debug


def test_render_failure_keeps_empty_draft(make_listing, clock):
    renderer = FakeRenderer(error=NetworkError("render timed out"))
    pipeline = DetailPipeline(_fetcher(EMPTY_PAGE, renderer), clock=clock)

    outcome = pipeline.run(make_listing("L1", image=None))

    assert outcome.extraction_empty
    assert "fetch:render-failed" in outcome.detail.debug
    assert outcome.detail.title == "Listing L1"
    assert contract.SYNTH_TIER in outcome.detail.debug


def test_render_fallback_disabled(make_listing, clock):
    renderer = FakeRenderer()
    pipeline = DetailPipeline(_fetcher(EMPTY_PAGE, renderer), clock=clock, render_fallback=False)

    outcome = pipeline.run(make_listing("L1"))

    assert outcome.extraction_empty
    assert renderer.calls == 0


def test_render_platforms_always_render(page_html, make_listing, clock):
    renderer = FakeRenderer(body=page_html("made_in_china_detail.html"))
    fetcher = _fetcher("unused", renderer)
    pipeline = DetailPipeline(fetcher, clock=clock, render_platforms=[Platform.MADE_IN_CHINA])

    outcome = pipeline.run(make_listing("M1", Platform.MADE_IN_CHINA))

    assert outcome.fetch.rendered
    assert renderer.calls == 1
    assert outcome.detail.title == "LED Panel Light 600x600 40W"


def test_fetch_errors_propagate(make_listing, clock):
    pipeline = DetailPipeline(_fetcher("captcha", status=403), clock=clock)

    with pytest.raises(BlockedError):
        pipeline.run(make_listing("L1"))

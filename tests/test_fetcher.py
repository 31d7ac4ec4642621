import httpx
import pytest

from ingest.antibot.user_agent import UserAgentPool
from ingest.errors import BlockedError, NetworkError, NotFoundError, ScrapeStatus
from ingest.fetcher import Fetcher, detect_challenge
from ingest.models import Platform

URL = "https://www.alibaba.com/product-detail/bottle_1600.html"


class FakeRenderer:
    def __init__(self, status=200, body="<html><h1>Rendered</h1></html>"):
        self.status = status
        self.body = body
        self.calls = []

    def render(self, url, headers):
        self.calls.append((url, headers))
        return self.status, self.body, url


def _fetcher(handler, renderer=None) -> Fetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return Fetcher(client=client, renderer=renderer or FakeRenderer(), user_agents=UserAgentPool(seed=7))


def test_success_sends_platform_headers():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, text="<html><h1>Bottle</h1></html>")

    result = _fetcher(handler).fetch(URL, Platform.ALIBABA)

    assert result.status_code == 200
    assert "Bottle" in result.body
    assert not result.rendered
    assert seen["referer"] == "https://www.alibaba.com/"
    assert seen["accept-language"].startswith("en-US")
    assert seen["user-agent"] in UserAgentPool.DESKTOP_USER_AGENTS


@pytest.mark.parametrize("status", [404, 410])
def test_missing_page_is_not_found(status):
    fetcher = _fetcher(lambda request: httpx.Response(status, text="gone"))

    with pytest.raises(NotFoundError) as excinfo:
        fetcher.fetch(URL)

    assert excinfo.value.kind is ScrapeStatus.NOT_FOUND
    assert excinfo.value.status_code == status


@pytest.mark.parametrize("status", [401, 403, 429, 503])
def test_blocking_status_is_blocked(status):
    fetcher = _fetcher(lambda request: httpx.Response(status, text="no"))

    with pytest.raises(BlockedError) as excinfo:
        fetcher.fetch(URL)

    assert excinfo.value.kind is ScrapeStatus.BLOCKED


@pytest.mark.parametrize(
    "body",
    [
        "<html><div id='nc_1_n1z'>Please slide to verify</div></html>",
        "<html><title>Access Denied</title></html>",
        "<p>Our systems have detected unusual traffic from your computer network.</p>",
        "<script src='/_____tmd_____/punish?x5secdata=abc'></script>",
    ],
)
def test_challenge_markup_is_blocked_even_with_200(body):
    fetcher = _fetcher(lambda request: httpx.Response(200, text=body))

    with pytest.raises(BlockedError):
        fetcher.fetch(URL)


def test_server_error_is_network_error():
    fetcher = _fetcher(lambda request: httpx.Response(500, text="oops"))

    with pytest.raises(NetworkError) as excinfo:
        fetcher.fetch(URL)

    assert excinfo.value.status_code == 500
    assert excinfo.value.kind is ScrapeStatus.NETWORK_ERROR


def test_transport_timeout_is_network_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(NetworkError):
        _fetcher(handler).fetch(URL)


def test_render_flag_uses_renderer():
    def handler(request):
        raise AssertionError("plain HTTP must not be used")

    renderer = FakeRenderer()
    result = _fetcher(handler, renderer).fetch(URL, Platform.ALIBABA, must_render_js=True)

    assert result.rendered
    assert "Rendered" in result.body
    assert renderer.calls[0][1]["Referer"] == "https://www.alibaba.com/"


def test_rendered_challenge_is_blocked():
    renderer = FakeRenderer(body="<div class='baxia-dialog'>verify</div>")

    with pytest.raises(BlockedError):
        _fetcher(lambda request: httpx.Response(200), renderer).fetch(URL, must_render_js=True)


def test_detect_challenge_clean_page():
    assert detect_challenge("<html><h1>LED Panel Light</h1></html>") is None
    assert detect_challenge("") is None

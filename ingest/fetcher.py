"""Single-attempt page fetcher with plain HTTP and headless-browser transports."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .antibot.user_agent import UserAgentPool, page_headers
from .config import FetchConfig
from .errors import BlockedError, FetchError, NetworkError, NotFoundError
from .models import Platform

LOGGER = logging.getLogger(__name__)

NOT_FOUND_STATUSES = {404, 410}
BLOCK_STATUSES = {401, 403, 429, 503}

# Lower-cased fragments of slider, captcha and interstitial pages
CHALLENGE_MARKERS = (
    "_____tmd_____/punish",
    "x5secdata",
    "baxia-dialog",
    "nc_1_n1z",
    "please slide to verify",
    "unusual traffic from your",
    "verify you are a human",
    "verify you are human",
    "/cdn-cgi/challenge-platform",
    "<title>access denied</title>",
    "<title>captcha interception</title>",
)


@dataclass
class FetchResult:
    """Raw markup returned by one fetch attempt."""

    url: str
    final_url: str
    status_code: int
    body: str
    rendered: bool = False
    elapsed: float = 0.0


def detect_challenge(body: str) -> Optional[str]:
    """Return the challenge marker found in ``body``, if any."""
    lowered = (body or "").lower()
    for marker in CHALLENGE_MARKERS:
        if marker in lowered:
            return marker
    return None


class PlaywrightRenderer:
    """Headless Chromium backend for pages that need JavaScript."""

    def __init__(self, timeout: float = 90.0, headless: bool = True) -> None:
        self.timeout = timeout
        self.headless = headless

    def render(self, url: str, headers: Dict[str, str]) -> Tuple[int, str, str]:
        """Load ``url`` and return ``(status, html, final_url)``.

        Raises
        ------
        NetworkError
            If navigation fails or exceeds the hard timeout
        """
        extra = {key: value for key, value in headers.items() if key != "User-Agent"}
        with sync_playwright() as playwright:
            browser = playwright.chromium.launch(headless=self.headless)
            try:
                context = browser.new_context(
                    user_agent=headers.get("User-Agent"),
                    locale="en-US",
                    extra_http_headers=extra,
                )
                page = context.new_page()
                response = page.goto(url, wait_until="domcontentloaded", timeout=self.timeout * 1000)
                status = response.status if response is not None else 0
                return status, page.content(), page.url
            except PlaywrightTimeoutError as exc:
                raise NetworkError(f"render timed out after {self.timeout:.0f}s", url=url) from exc
            except PlaywrightError as exc:
                raise NetworkError(f"render failed: {exc}", url=url) from exc
            finally:
                browser.close()


class Fetcher:
    """Fetch listing pages; one deterministic attempt per call."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
        renderer: Optional[PlaywrightRenderer] = None,
        user_agents: Optional[UserAgentPool] = None,
    ) -> None:
        """Initialize fetcher.

        Parameters
        ----------
        config : FetchConfig, optional
            Timeouts and headless flag
        client : httpx.Client, optional
            Preconfigured client (tests pass one with a mock transport)
        renderer : PlaywrightRenderer, optional
            Backend used when JavaScript rendering is required
        user_agents : UserAgentPool, optional
            Source of rotating user agents
        """
        self.config = config or FetchConfig()
        self._client = client or httpx.Client(timeout=httpx.Timeout(self.config.timeout))
        self._owns_client = client is None
        self.renderer = renderer or PlaywrightRenderer(
            timeout=self.config.render_timeout,
            headless=self.config.headless,
        )
        self.user_agents = user_agents or UserAgentPool()

    def fetch(
        self,
        url: str,
        platform: Optional[Platform] = None,
        must_render_js: bool = False,
    ) -> FetchResult:
        """Fetch ``url`` once.

        Raises
        ------
        NotFoundError
            Status 404/410
        BlockedError
            Blocking status or challenge markup
        NetworkError
            Transport failure, timeout or other error status
        """
        headers = page_headers(self.user_agents, platform)
        started = time.monotonic()

        if must_render_js:
            status, body, final_url = self.renderer.render(url, headers)
        else:
            try:
                response = self._client.get(url, headers=headers, follow_redirects=True)
            except httpx.TimeoutException as exc:
                raise NetworkError(f"timeout fetching {url}", url=url) from exc
            except httpx.HTTPError as exc:
                raise NetworkError(f"request failed: {exc}", url=url) from exc
            status, body, final_url = response.status_code, response.text, str(response.url)

        result = FetchResult(
            url=url,
            final_url=final_url,
            status_code=status,
            body=body,
            rendered=must_render_js,
            elapsed=time.monotonic() - started,
        )
        self._raise_for_result(result)
        LOGGER.debug(
            "Fetched %s (status=%s, %d bytes, %.2fs, rendered=%s)",
            url,
            status,
            len(body),
            result.elapsed,
            must_render_js,
        )
        return result

    @staticmethod
    def _raise_for_result(result: FetchResult) -> None:
        status = result.status_code
        if status in NOT_FOUND_STATUSES:
            raise NotFoundError(f"{status} for {result.url}", url=result.url, status_code=status)
        if status in BLOCK_STATUSES:
            raise BlockedError(f"blocked with {status}", url=result.url, status_code=status)
        marker = detect_challenge(result.body)
        if marker:
            raise BlockedError(f"challenge page ({marker})", url=result.url, status_code=status)
        if status >= 400 or status == 0:
            raise NetworkError(f"unexpected status {status}", url=result.url, status_code=status)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


__all__ = ["FetchError", "FetchResult", "Fetcher", "PlaywrightRenderer", "detect_challenge"]

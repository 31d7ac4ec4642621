"""User-agent rotation and per-platform request headers."""
from __future__ import annotations

import random
from typing import Dict, List, Optional

from ..models import PLATFORM_REFERERS, Platform

PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"
ACCEPT_LANGUAGE = "en-US,en;q=0.9"


class UserAgentPool:
    """Pool of realistic desktop browser user-agent strings."""

    # Marketplace detail pages serve a reduced layout to mobile agents
    DESKTOP_USER_AGENTS: List[str] = [
        # Chrome on Windows
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        # Chrome on macOS
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Chrome on Linux
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Firefox
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0",
        # Safari on macOS
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        # Edge on Windows
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    ]

    def __init__(self, *, seed: Optional[int] = None) -> None:
        """Initialize user-agent pool.

        Parameters
        ----------
        seed : int, optional
            Seed for reproducible rotation in tests
        """
        self._random = random.Random(seed)

    def get_random(self) -> str:
        """Get a random desktop user-agent string."""
        return self._random.choice(self.DESKTOP_USER_AGENTS)


def page_headers(pool: UserAgentPool, platform: Optional[Platform] = None) -> Dict[str, str]:
    """Headers for a listing page request."""
    headers = {
        "User-Agent": pool.get_random(),
        "Accept": PAGE_ACCEPT,
        "Accept-Language": ACCEPT_LANGUAGE,
    }
    if platform is not None:
        headers["Referer"] = PLATFORM_REFERERS[platform]
    return headers

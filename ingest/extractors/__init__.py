"""Platform extractors keyed by platform tag."""
from __future__ import annotations

from typing import Dict

from ..models import Platform
from .alibaba import AlibabaExtractor
from .base import Extractor
from .indiamart import IndiaMartExtractor
from .made_in_china import MadeInChinaExtractor

EXTRACTORS: Dict[Platform, Extractor] = {
    Platform.ALIBABA: AlibabaExtractor(),
    Platform.MADE_IN_CHINA: MadeInChinaExtractor(),
    Platform.INDIAMART: IndiaMartExtractor(),
}


def get_extractor(platform: Platform) -> Extractor:
    """Return the extractor bound to ``platform``.

    Raises
    ------
    KeyError
        If no extractor is registered for the platform
    """
    return EXTRACTORS[Platform(platform)]


__all__ = [
    "AlibabaExtractor",
    "EXTRACTORS",
    "Extractor",
    "IndiaMartExtractor",
    "MadeInChinaExtractor",
    "get_extractor",
]

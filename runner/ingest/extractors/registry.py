import re
from typing import Optional

from backend.config import Settings
from ..extract import host_of
from ..items import ExtractedArticle
from .atp import AtpExtractor
from .base import BaseExtractor
from .espn import EspnExtractor
from .generic import GenericExtractor
from .wta import WtaExtractor

# host pattern -> extractor; first match wins, generic otherwise
EXTRACTORS: list[tuple[re.Pattern, type[BaseExtractor]]] = [
    (re.compile(r"(^|\.)espn\.com$", re.IGNORECASE), EspnExtractor),
    (re.compile(r"(^|\.)atptour\.com$", re.IGNORECASE), AtpExtractor),
    (re.compile(r"(^|\.)wtatennis\.com$", re.IGNORECASE), WtaExtractor),
]


def extractor_for(url: str, settings: Settings) -> BaseExtractor:
    host = host_of(url)
    for pattern, cls in EXTRACTORS:
        if pattern.search(host):
            return cls(settings)
    return GenericExtractor(settings)


def extract_article(url: str, settings: Settings) -> Optional[ExtractedArticle]:
    """Extract one article with the extractor registered for its host.

    A site extractor that yields nothing falls through to the generic one.
    """
    extractor = extractor_for(url, settings)
    result = extractor.extract(url)
    if result is None and not isinstance(extractor, GenericExtractor):
        return GenericExtractor(settings).extract(url)
    return result

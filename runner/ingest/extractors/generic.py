from typing import Optional

from bs4 import BeautifulSoup, Tag

from ..items import ExtractedArticle
from .base import (
    Acquired,
    BaseExtractor,
    decompose_all,
    image_sources,
    meta_content,
    page_title,
    paragraph_text,
    run_passes,
    text_of,
)


class GenericExtractor(BaseExtractor):
    """Fallback for hosts without a dedicated extractor."""

    name = "generic"

    def parse(self, url: str, soup: BeautifulSoup, container: Tag, got: Acquired) -> Optional[ExtractedArticle]:
        body = run_passes(
            container,
            [lambda t: decompose_all(t, ["script", "style", "nav", "aside", "noscript"])],
        )
        body_text, paragraphs = paragraph_text(body)
        body_html = body.decode_contents() or None

        images = image_sources(soup, url)
        author = meta_content(soup, name="author")
        timestamp = text_of(soup.select_one(".article-meta .timestamp")) or text_of(soup.find("time"))
        html_tag = soup.find("html")

        return ExtractedArticle(
            url=url,
            title=meta_content(soup, property="og:title") or page_title(soup),
            authors=[author] if author else [],
            timestamp_text=timestamp,
            body_html=body_html,
            body_text=body_text,
            image=meta_content(soup, property="og:image"),
            images=images,
            lang=(html_tag.get("lang") if html_tag else None) or None,
            debug=self.debug_envelope(got, paragraphs=paragraphs, images=len(images), videos=0),
        )

import re
from typing import Optional

from bs4 import BeautifulSoup, Tag

from ..items import ExtractedArticle, VideoRef
from .base import (
    FETCH,
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

SYNDICATED_PLAYER = "https://www.espn.com/watch/syndicatedplayer?id="

NOISE_SELECTORS = [
    "script",
    "style",
    "nav",
    "aside",
    "noscript",
    ".content-reactions",
    ".reactions-allowed",
    ".share-popup",
    ".inline-share-tools",
    '[data-behavior*="share"]',
    ".social-share",
    ".article-social",
    ".story-features",
]


def _video_from_figure(fig: Tag) -> Optional[VideoRef]:
    embed_url = None
    iframe = fig.find("iframe")
    if iframe is not None and iframe.get("src"):
        embed_url = iframe["src"]

    # data-video looks like "watch,640,360,46195286,..."
    if not embed_url and fig.get("data-video"):
        for part in fig["data-video"].split(","):
            if re.fullmatch(r"\d{6,}", part.strip()):
                embed_url = SYNDICATED_PLAYER + part.strip()
                break

    if not embed_url:
        play = fig.select_one("span.video-play-button")
        if play is not None and play.get("data-id"):
            embed_url = SYNDICATED_PLAYER + play["data-id"]

    thumbnail = None
    source = fig.select_one("picture source")
    srcset = (source.get("srcset") or "") if source is not None else ""
    if srcset:
        first = srcset.split(",")[0].strip().split(" ")[0]
        thumbnail = first or None
    if not thumbnail:
        img = fig.find("img")
        thumbnail = (img.get("src") if img is not None else None) or None

    title = (
        text_of(fig.select_one("figcaption .headline"))
        or text_of(fig.find("figcaption"))
        or fig.get("data-title")
    )
    if embed_url or thumbnail or title:
        return VideoRef(title=title, embed_url=embed_url, thumbnail=thumbnail)
    return None


class EspnExtractor(BaseExtractor):
    name = "espn"
    container_selectors = ("section#article-feed article.article", "article")

    def loader_order(self, url: str) -> tuple[str, ...]:
        if self.prefers_rendered(url):
            return super().loader_order(url)
        return (FETCH,)

    def parse(self, url: str, soup: BeautifulSoup, container: Tag, got: Acquired) -> Optional[ExtractedArticle]:
        article = run_passes(container, [lambda t: decompose_all(t, NOISE_SELECTORS)])

        authors = [a.get_text().strip() for a in article.select(".authors .author")]
        authors = [a for a in authors if a]
        body_container = article.select_one(".article-body") or article
        body_text, paragraphs = paragraph_text(body_container)

        videos = []
        for fig in article.select("figure.iframe-video, figure.video, figure[data-video]"):
            video = _video_from_figure(fig)
            if video is not None:
                videos.append(video)

        images = image_sources(soup, url)
        return ExtractedArticle(
            url=url,
            title=text_of(soup.find("h1")) or page_title(soup),
            authors=authors,
            timestamp_text=text_of(article.select_one(".timestamp")),
            body_html=body_container.decode_contents() or None,
            body_text=body_text,
            image=meta_content(soup, property="og:image"),
            images=images,
            videos=videos,
            credits=text_of(soup.select_one(".PageFooter__Legal__Copyright")),
            debug=self.debug_envelope(
                got, paragraphs=paragraphs, images=len(images), videos=len(videos)
            ),
        )

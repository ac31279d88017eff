import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from bs4 import BeautifulSoup

from backend.config import Settings
from .challenge import detect_challenge
from .extract import HEADERS, absolutize, fetch_url, is_after
from .extractors.registry import extract_article
from .extractors.wta import normalize_date
from .items import ExtractedArticle, NormalizedItem, SourceRef
from .rss_feeds import clamp, harvest_links

BASE_URL = "https://www.wtatennis.com"
LISTING_SECTIONS = [
    ("Match Reaction", "https://www.wtatennis.com/news/match-reaction"),
    ("Player Feature", "https://www.wtatennis.com/news/player-feature"),
]

RELATIVE_RE = re.compile(r"^(\d+)\s*([hdm])\s*ago$")
MONTH_RE = re.compile(r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)", re.IGNORECASE)
UNIT_DELTAS = {"h": "hours", "d": "days", "m": "minutes"}


@dataclass
class ListingItem:
    id: str
    url: str
    title: str
    excerpt: Optional[str] = None
    published_label: Optional[str] = None
    image: Optional[str] = None
    tags: list[str] = field(default_factory=list)


def parse_relative_date(label: str | None, now: datetime | None = None) -> Optional[str]:
    """Relative label ("3h ago", "2d ago", "15m ago") or a month-name date to ISO."""
    if not label:
        return None
    text = label.strip().lower()
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    m = RELATIVE_RE.match(text)
    if m:
        value = int(m.group(1))
        delta = timedelta(**{UNIT_DELTAS[m.group(2)]: value})
        if delta:
            return (now - delta).isoformat()
    if MONTH_RE.search(text):
        return normalize_date(label)
    return None


def parse_listing(html: str, max_items: int) -> list[ListingItem]:
    soup = BeautifulSoup(html, "html.parser")
    rows = soup.select("li.content-listing-grid__item:not(.content-listing-grid__ad-item)")
    items = []
    for li in rows[:max_items]:
        anchor = li.select_one("a.content-listing-grid__url")
        href = absolutize(anchor.get("href") if anchor is not None else None, BASE_URL)
        if not href:
            continue
        title_el = li.select_one(".content-listing-grid__title")
        title = title_el.get_text().strip() if title_el is not None else ""
        if not title:
            continue
        tracking_id = anchor.get("data-tracking-article-id")
        excerpt_el = li.select_one(".content-listing-grid__description")
        date_el = li.select_one(".content-listing-grid__publishdate")
        img = li.find("img")
        tags = [b.get_text().strip() for b in li.select(".badge__label")]
        items.append(
            ListingItem(
                id=f"wta-{tracking_id}" if tracking_id else href,
                url=href,
                title=title,
                excerpt=(excerpt_el.get_text().strip() or None) if excerpt_el is not None else None,
                published_label=(date_el.get_text().strip() or None) if date_el is not None else None,
                image=absolutize(img.get("src") if img is not None else None, BASE_URL),
                tags=[t for t in tags if t],
            )
        )
    return items


class WtaNewsProvider:
    """Scrapes WTA category listings and extracts each linked article."""

    kind = "wta-news"

    def __init__(
        self,
        settings: Settings,
        name: str = "WTA Tennis",
        source_url: str = "https://www.wtatennis.com/news",
        extractor: Callable[[str, Settings], Optional[ExtractedArticle]] | None = None,
    ):
        self.settings = settings
        self.name = name
        self.feed_url = source_url
        self.extractor = extractor or extract_article

    def fetch_listing(self, section_url: str) -> list[ListingItem]:
        timeout = (self.settings.fetch_connect_timeout, self.settings.fetch_read_timeout)
        html, err = fetch_url(section_url, HEADERS, timeout=timeout)
        if err or not html:
            print(f"FEED feed={self.name} url={section_url} error={err}", file=sys.stderr)
            return []
        challenge = detect_challenge(html)
        if challenge:
            print(
                f"CHALLENGE feed={self.name} url={section_url} type={challenge.type} "
                f"indicator={challenge.indicator!r}",
                file=sys.stderr,
            )
            return []
        return parse_listing(html, self.settings.wta_max_per_section)

    def fetch_new_items(self, since_iso: str | None = None) -> list[NormalizedItem]:
        excerpt_max = self.settings.excerpt_max_chars
        results = []
        for section_label, section_url in LISTING_SECTIONS:
            for listing in self.fetch_listing(section_url):
                extracted = self.extractor(listing.url, self.settings)
                published = (extracted.published_at if extracted else None) or parse_relative_date(
                    listing.published_label
                )
                if not is_after(published, since_iso):
                    continue

                tags = []
                for tag in [section_label] + listing.tags + (extracted.tags if extracted else []):
                    tag = (tag or "").strip()
                    if tag and tag not in tags:
                        tags.append(tag)

                item = NormalizedItem(
                    external_id=listing.id,
                    title=(extracted.title if extracted else None) or listing.title,
                    url=listing.url,
                    source=SourceRef(name=self.name, url=self.feed_url),
                    published_at=published,
                    tags=tags,
                )
                if extracted is not None:
                    if extracted.challenge:
                        item.challenge = extracted.challenge
                        item.warnings.append(f"extractor:{extracted.challenge.type}")
                    item.body_html = extracted.body_html
                    item.body_text = extracted.body_text
                    item.authors = list(extracted.authors)
                    item.timestamp_text = extracted.timestamp_text
                    item.image = extracted.image
                    item.images = list(extracted.images)
                    item.videos = list(extracted.videos)
                    item.credits = extracted.credits
                    item.lang = extracted.lang
                    item.links = harvest_links(extracted.body_html)
                item.excerpt = clamp(
                    (extracted.excerpt if extracted else None)
                    or listing.excerpt
                    or (extracted.body_text if extracted else None),
                    excerpt_max,
                )
                if listing.image and not item.image:
                    item.image = listing.image
                results.append(item)
        return results

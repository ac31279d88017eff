import re
import sys
from typing import Callable, Optional

import feedparser

from backend.config import Settings
from .challenge import detect_challenge, strip_tags
from .extract import FEED_FALLBACK_HEADERS, HEADERS, fetch_url, is_after, parse_ts
from .extractors.registry import extract_article
from .items import ExtractedArticle, NormalizedItem, SourceRef
from .rendered import is_allowed_to_extract

ATP_ORIGIN = "https://www.atptour.com/"

_HREF_RE = re.compile(r'href="([^"]+)"')
_PLACEHOLDER_RE = re.compile(r"\[(NEWSLETTER FORM|ATP APP)\]", re.IGNORECASE)
_RELATIVE_ASSET_RE = re.compile(r"""(src|href)=("|')(/[^"']*?)\2""")
_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)

Extractor = Callable[[str, Settings], Optional[ExtractedArticle]]


def harvest_links(body_html: str | None) -> list[str]:
    if not body_html:
        return []
    seen = []
    for href in _HREF_RE.findall(body_html):
        if re.match(r"^https?://", href, re.IGNORECASE) and href not in seen:
            seen.append(href)
    return seen


def clamp(text: str | None, max_chars: int) -> Optional[str]:
    if not text:
        return None
    return text[:max_chars] if max_chars > 0 else text


def strip_placeholders(html: str) -> str:
    return _PLACEHOLDER_RE.sub("", html).strip()


def absolutize_relative_assets(html: str, origin: str) -> str:
    def _repl(m):
        attr, quote, path = m.group(1), m.group(2), m.group(3)
        if path.startswith("//"):
            return m.group(0)
        return f"{attr}={quote}{origin.rstrip('/')}{path}{quote}"

    return _RELATIVE_ASSET_RE.sub(_repl, html)


def entry_published(entry) -> Optional[str]:
    raw = entry.get("published") or entry.get("updated")
    dt = parse_ts(raw)
    if dt is not None:
        return dt.isoformat()
    return raw or None


def entry_tags(entry) -> list[str]:
    tags = []
    for tag in entry.get("tags") or []:
        term = (tag.get("term") or "").strip()
        if term and term not in tags:
            tags.append(term)
    return tags


def apply_extracted(item: NormalizedItem, extracted: ExtractedArticle, excerpt_max: int) -> None:
    """Copy extractor output onto a feed item; a challenge is carried over."""
    if extracted.challenge:
        item.challenge = extracted.challenge
        item.warnings.append(f"extractor:{extracted.challenge.type}")
    if extracted.body_html:
        item.body_html = extracted.body_html
    if extracted.body_text:
        item.body_text = extracted.body_text
    if extracted.authors:
        item.authors = list(extracted.authors)
    if extracted.timestamp_text:
        item.timestamp_text = extracted.timestamp_text
    if extracted.image:
        item.image = extracted.image
    if extracted.images:
        item.images = list(extracted.images)
    if extracted.videos:
        item.videos = list(extracted.videos)
    if extracted.credits:
        item.credits = extracted.credits
    if extracted.lang:
        item.lang = extracted.lang
    for tag in extracted.tags:
        if tag not in item.tags:
            item.tags.append(tag)
    if not item.excerpt and (extracted.tagline or extracted.excerpt):
        item.excerpt = clamp(extracted.tagline or extracted.excerpt, excerpt_max)
    links = harvest_links(item.body_html)
    if links:
        item.links = links


class RssProvider:
    """Syndication feed listing with optional full-article enrichment."""

    kind = "rss"
    map_categories = False

    def __init__(
        self,
        name: str,
        feed_url: str,
        settings: Settings,
        extractor: Extractor | None = None,
    ):
        self.name = name
        self.feed_url = feed_url
        self.settings = settings
        self.extractor = extractor or extract_article

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, feed_url={self.feed_url!r})"

    def _timeout(self) -> tuple[float, float]:
        return (self.settings.fetch_connect_timeout, self.settings.fetch_read_timeout)

    def fetch_feed_text(self) -> Optional[str]:
        text, err = fetch_url(self.feed_url, HEADERS, timeout=self._timeout())
        if err and err.startswith("blocked:"):
            print(f"FEED feed={self.name} status={err} fallback=1", file=sys.stderr)
            text, err = fetch_url(self.feed_url, FEED_FALLBACK_HEADERS, timeout=self._timeout())
        if err:
            print(f"FEED feed={self.name} url={self.feed_url} error={err}", file=sys.stderr)
            return None
        challenge = detect_challenge(text)
        if challenge:
            print(
                f"CHALLENGE feed={self.name} url={self.feed_url} type={challenge.type} "
                f"indicator={challenge.indicator!r}",
                file=sys.stderr,
            )
            return None
        return text

    def parse_entries(self) -> list:
        text = self.fetch_feed_text()
        if not text:
            return []
        feed = feedparser.parse(text)
        if feed.bozo and not feed.entries:
            print(
                f"FEED feed={self.name} parse_error={type(feed.bozo_exception).__name__}",
                file=sys.stderr,
            )
            return []
        return list(feed.entries)

    def fetch_new_items(self, since_iso: str | None = None) -> list[NormalizedItem]:
        out = []
        for entry in self.parse_entries():
            item = self.build_item(entry, since_iso)
            if item is not None:
                out.append(item)
        return out

    def build_item(self, entry, since_iso: str | None) -> Optional[NormalizedItem]:
        link = entry.get("link") or ""
        title = (entry.get("title") or "").strip()
        published = entry_published(entry)
        if not link or not title:
            return None
        if not is_after(published, since_iso):
            return None
        summary = entry.get("summary") or ""
        item = NormalizedItem(
            external_id=link,
            title=title,
            url=link,
            source=SourceRef(name=self.name, url=self.feed_url),
            published_at=published,
            excerpt=clamp(strip_tags(summary), self.settings.excerpt_max_chars),
            tags=entry_tags(entry) if self.map_categories else [],
        )
        self.enrich(item)
        return item

    def enrich(self, item: NormalizedItem) -> bool:
        if not self.settings.fetch_article or not is_allowed_to_extract(item.url, self.settings):
            return False
        extracted = self.extractor(item.url, self.settings)
        if extracted is None:
            return False
        apply_extracted(item, extracted, self.settings.excerpt_max_chars)
        if self.settings.ingest_debug:
            dbg = extracted.debug
            print(
                f"EXTRACT feed={self.name} url={item.url} extractor={dbg.get('extractor')} "
                f"status={dbg.get('status')} loader={dbg.get('loader')} "
                f"paragraphs={dbg.get('paragraphs')} images={dbg.get('images')} "
                f"videos={dbg.get('videos')} body_text={bool(item.body_text)}"
            )
        return True


class TaggedRssProvider(RssProvider):
    kind = "rss-tags"
    map_categories = True


class AtpRssProvider(RssProvider):
    """ATP media feed; descriptions carry full HTML used as a fallback body."""

    kind = "atp-rss"
    map_categories = True

    def build_item(self, entry, since_iso: str | None) -> Optional[NormalizedItem]:
        link = entry.get("link") or ""
        title = (entry.get("title") or "").strip()
        published = entry_published(entry)
        if not link or not title:
            return None
        if not is_after(published, since_iso):
            return None

        raw_desc = ""
        if entry.get("content"):
            raw_desc = entry["content"][0].get("value") or ""
        raw_desc = raw_desc or entry.get("summary") or entry.get("description") or ""
        raw_desc = strip_placeholders(raw_desc)
        raw_desc = absolutize_relative_assets(raw_desc, ATP_ORIGIN)
        raw_desc = _SCRIPT_RE.sub("", raw_desc)
        cleaned = strip_tags(raw_desc)
        excerpt_max = self.settings.excerpt_max_chars

        item = NormalizedItem(
            external_id=link,
            title=title,
            url=link,
            source=SourceRef(name=self.name, url=self.feed_url),
            published_at=published,
            excerpt=clamp(cleaned, excerpt_max),
            tags=entry_tags(entry),
        )
        challenge = detect_challenge(raw_desc)
        if challenge:
            item.challenge = challenge

        used_extractor = self.enrich(item)
        if not item.body_text and item.body_html:
            item.body_text = strip_tags(item.body_html)
        if not item.body_text and cleaned:
            item.body_text = cleaned[:4000]
        if not item.body_html and raw_desc:
            item.body_html = raw_desc[:10000]
        if self.settings.ingest_debug:
            print(
                f"EXTRACT feed={self.name} url={link} used_extractor={int(used_extractor)} "
                f"text_len={len(item.body_text or '')} excerpt_len={len(item.excerpt or '')}"
            )
        return item

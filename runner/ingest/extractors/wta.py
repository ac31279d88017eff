import json
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlparse

from bs4 import BeautifulSoup, NavigableString, Tag

from ..extract import absolutize, parse_ts
from ..items import ExtractedArticle, VideoRef
from .base import (
    FETCH,
    RENDERED,
    Acquired,
    BaseExtractor,
    decompose_all,
    meta_content,
    page_title,
    paragraph_text,
    run_passes,
    text_of,
)
from .passes import classify_paragraphs, repair_numbers

ORIGIN = "https://www.wtatennis.com"

REMOVAL_SELECTORS = [
    "script",
    "style",
    "noscript",
    "form",
    "svg",
    ".articleWidget",
    ".embeddable-related-articles",
    ".related-videos",
    ".responsive-ad",
    ".advert",
    ".article-page__sidebar",
    ".article-page__sidebar-item",
    ".share-widget",
    ".js-share-widget",
    ".article-page__content-author",
    ".article-page__end-marker",
    ".pager",
    '[class*="player-headshot"]',
    ".article-page__player-tooltip-img",
]

ALLOWED_TAGS = {
    "a", "abbr", "b", "blockquote", "br", "caption", "code", "div", "em", "figcaption",
    "figure", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i", "iframe", "img", "li", "ol",
    "p", "pre", "span", "strong", "sub", "sup", "table", "tbody", "td", "th", "thead",
    "tr", "u", "ul",
}
ALLOWED_ATTRS = {
    "a": {"href", "rel", "target"},
    "img": {"src", "alt", "title", "width", "height", "loading"},
    "iframe": {"src", "title", "allow", "allowfullscreen", "width", "height"},
    "figure": {"data-caption"},
}
ALLOWED_CLASSES = {"blockquote": {"twitter-tweet"}, "div": {"ext-quote", "ext-social"}}
IFRAME_HOSTS = {
    "www.youtube.com",
    "player.vimeo.com",
    "w.soundcloud.com",
    "www.dailymotion.com",
    "www.instagram.com",
    "platform.twitter.com",
}
MONTH_RE = re.compile(r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)", re.IGNORECASE)
ORDINAL_DAY_RE = re.compile(r"(\d{1,2})(st|nd|rd|th)", re.IGNORECASE)
DATE_FORMATS = ("%d %B %Y", "%d %b %Y", "%B %d %Y", "%b %d %Y", "%B %d, %Y", "%b %d, %Y")


def normalize_date(value: Optional[str]) -> Optional[str]:
    """Absolute date text ("3rd June 2025", ISO, RFC 822) to ISO-8601 UTC."""
    if not value or not value.strip():
        return None
    trimmed = value.strip()
    dt = parse_ts(trimmed)
    if dt is not None:
        return dt.astimezone(timezone.utc).isoformat()
    cleaned = ORDINAL_DAY_RE.sub(r"\1", trimmed)
    cleaned = re.sub(r"\s+", " ", cleaned.replace(",", ", ")).strip()
    for fmt in DATE_FORMATS:
        for candidate in (cleaned, cleaned.replace(",", "")):
            try:
                return datetime.strptime(candidate, fmt).replace(tzinfo=timezone.utc).isoformat()
            except ValueError:
                continue
    return None


def _ld_date(node, seen: set) -> Optional[str]:
    if isinstance(node, list):
        for item in node:
            found = _ld_date(item, seen)
            if found:
                return found
        return None
    if not isinstance(node, dict):
        return None
    if isinstance(node.get("datePublished"), str):
        return normalize_date(node["datePublished"]) or node["datePublished"]
    for value in node.values():
        if isinstance(value, str):
            if "T" in value and ":" in value and value not in seen:
                seen.add(value)
                iso = normalize_date(value)
                if iso:
                    return iso
        elif isinstance(value, (dict, list)):
            found = _ld_date(value, seen)
            if found:
                return found
    return None


def date_from_ld_json(soup: BeautifulSoup) -> Optional[str]:
    seen: set = set()
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except ValueError:
            continue
        found = _ld_date(parsed, seen)
        if found:
            return found
    return None


def author_names(soup: BeautifulSoup) -> list[str]:
    names = []
    for el in soup.select(".article-page__content-author .name, .article-page__byline .name"):
        text = el.get_text().strip()
        if text and text not in names:
            names.append(text)
    meta = meta_content(soup, name="author")
    if meta and meta not in names:
        names.append(meta)
    return names


def make_cleanup_passes(origin: str):
    factory = BeautifulSoup("", "html.parser")

    def strip_noise(tree: Tag) -> Tag:
        return decompose_all(tree, REMOVAL_SELECTORS)

    def absolutize_media(tree: Tag) -> Tag:
        for img in tree.find_all("img"):
            lazy = img.get("data-src") or img.get("data-lazy") or img.get("data-original")
            if not img.get("src") and lazy:
                img["src"] = lazy
            if img.get("src"):
                img["src"] = absolutize(img["src"], origin) or img["src"]
        for a in tree.find_all("a", href=True):
            a["href"] = absolutize(a["href"], origin) or a["href"]
            if not a.get("rel"):
                a["rel"] = "noopener noreferrer"
        return tree

    def replace_player_tooltips(tree: Tag) -> Tag:
        for tooltip in list(tree.select(".article-page__player-tooltip")):
            primary = tooltip.select_one("a.article-page__player-tooltip-simple")
            fallback = tooltip.find("a", href=True)
            name = text_of(primary) or (tooltip.get("data-player-name") or "").strip()
            if not name:
                name = tooltip.get_text().split("View Profile")[0].strip()
            href = (
                (primary.get("href") if primary is not None else None)
                or (fallback.get("href") if fallback is not None else None)
                or tooltip.get("data-player-url")
            )
            href = absolutize(href, origin)
            if href and name:
                anchor = factory.new_tag("a", attrs={"href": href, "rel": "noopener noreferrer"})
                anchor.string = name
                tooltip.replace_with(anchor)
            else:
                tooltip.replace_with(NavigableString(name))
        return tree

    def drop_profile_links(tree: Tag) -> Tag:
        for a in list(tree.find_all("a")):
            if re.fullmatch(r"view profile", re.sub(r"\s+", " ", a.get_text()).strip(), re.IGNORECASE):
                a.decompose()
        return tree

    def drop_empty_leaves(tree: Tag) -> Tag:
        for node in list(tree.find_all(["div", "span", "strong", "em"])):
            if node.decomposed or node.find(True) is not None:
                continue
            if not node.get_text().strip():
                node.decompose()
        return tree

    def unwrap_wrapper_spans(tree: Tag) -> Tag:
        for span in list(tree.select("p span")):
            own_text = any(isinstance(c, NavigableString) and c.strip() for c in span.contents)
            children = span.find_all(True, recursive=False)
            if not children or own_text:
                continue
            if len(children) == 1 or all(not c.get_text().strip() for c in children):
                span.unwrap()
        return tree

    def merge_trailing_text(tree: Tag) -> Tag:
        for p in list(tree.find_all("p")):
            anchor = p.find("a", href=True)
            if anchor is None:
                continue
            anchor_text = anchor.get_text().strip()
            if not anchor_text or anchor_text != p.get_text().strip():
                continue
            collected = []
            sib = p.next_sibling
            while isinstance(sib, NavigableString):
                nxt = sib.next_sibling
                if sib.strip():
                    collected.append(str(sib))
                sib.extract()
                sib = nxt
            if collected:
                merged = re.sub(r"\s+", " ", " ".join(collected)).strip()
                p.append(NavigableString(f" {merged}"))
        return tree

    return [
        strip_noise,
        repair_numbers,
        absolutize_media,
        replace_player_tooltips,
        drop_profile_links,
        drop_empty_leaves,
        unwrap_wrapper_spans,
        merge_trailing_text,
    ]


def sanitize_tree(tree: Tag) -> Tag:
    """Whitelist tags, attributes and iframe hosts."""
    factory = BeautifulSoup("", "html.parser")
    for el in list(tree.find_all(True)):
        if el.decomposed:
            continue
        if el.name not in ALLOWED_TAGS:
            el.unwrap()
            continue
        if el.name == "a":
            href = (el.get("href") or "").strip()
            if not href or not re.match(r"^(https?:|mailto:)", href, re.IGNORECASE):
                el.name = "span"
                el.attrs = {}
                continue
            rel = el.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            rel = set(rel) | {"noopener", "noreferrer"}
            attrs = {"href": href, "rel": " ".join(sorted(rel))}
            if el.get("target") == "_blank":
                attrs["target"] = "_blank"
            el.attrs = attrs
            continue
        if el.name == "iframe":
            src = (el.get("src") or "").strip()
            if not src or urlparse(src).hostname not in IFRAME_HOSTS:
                if not src:
                    el.replace_with(factory.new_tag("div"))
                else:
                    el.decompose()
                continue
        allowed = ALLOWED_ATTRS.get(el.name, set())
        classes = ALLOWED_CLASSES.get(el.name, set())
        kept = {}
        for name, value in el.attrs.items():
            if name in allowed:
                if name == "src" and not re.match(r"^https?:", str(value), re.IGNORECASE):
                    continue
                kept[name] = value
            elif name == "class" and classes:
                keep = [c for c in (value or []) if c in classes]
                if keep:
                    kept["class"] = keep
        if el.name == "iframe" and "allowfullscreen" in kept:
            kept["allowfullscreen"] = "true"
        el.attrs = kept
    return tree


def collect_videos(soup: BeautifulSoup, origin: str) -> list[VideoRef]:
    videos = []
    for node in soup.select("[data-video-info]"):
        try:
            info = json.loads(node.get("data-video-info") or "")
        except ValueError:
            continue
        if not isinstance(info, dict):
            continue
        thumb = info.get("thumbnailUrl") or (info.get("thumbnail") or {}).get("onDemandUrl")
        media_id = info.get("mediaId") or info.get("mediaGuid")
        account = info.get("accountId") or info.get("account")
        player = node.get("data-player-id") or "default"
        embed_url = None
        if account and media_id:
            embed_url = (
                f"https://players.brightcove.net/{account}/{player}_default/index.html"
                f"?videoId={quote(str(media_id))}"
            )
        videos.append(
            VideoRef(
                title=info.get("title"),
                embed_url=embed_url,
                url=embed_url,
                thumbnail=absolutize(thumb, origin),
            )
        )
    return videos


class WtaExtractor(BaseExtractor):
    """wtatennis.com articles; the body is sanitized against a tag whitelist."""

    name = "wta"
    container_selectors = (".js-article-body", ".article-page__body", "article.article-page", "article")
    wait_selectors = ("[data-player]", ".js-article-body")

    def loader_order(self, url: str) -> tuple[str, ...]:
        if self.settings.wta_prefer_rendered or self.prefers_rendered(url):
            return (RENDERED, FETCH)
        return (FETCH, RENDERED)

    def clean(self, container: Tag, origin: str) -> Tag:
        passes = make_cleanup_passes(origin) + [sanitize_tree, classify_paragraphs]
        return run_passes(container, passes)

    def parse(self, url: str, soup: BeautifulSoup, container: Tag, got: Acquired) -> Optional[ExtractedArticle]:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else ORIGIN

        # fetched markup keeps tooltips as "View Profile" text; rendered markup has real anchors
        if got.loader == FETCH and re.search(r"View Profile", container.decode_contents(), re.IGNORECASE):
            retry = self.acquire(url, (RENDERED,))
            if retry.challenge and not retry.html:
                return self.challenge_result(url, retry)
            if retry.html:
                rendered_soup = BeautifulSoup(retry.html, "html.parser")
                rendered_container = self.resolve_container(rendered_soup)
                if rendered_container is not None and rendered_container.get_text().strip():
                    soup, container, got = rendered_soup, rendered_container, retry

        body = self.clean(container, origin)
        body_html = body.decode_contents().strip() or None
        body_text, paragraphs = paragraph_text(body, "p, li, blockquote")

        title = (
            text_of(soup.select_one(".article-page__header-title"))
            or text_of(soup.find("h1"))
            or page_title(soup)
        )
        excerpt = meta_content(soup, property="og:description") or meta_content(soup, name="description")
        tags = [t.get_text().strip() for t in soup.select(".article-page__header-content .badge__label")]
        tags = [t for t in tags if t]

        timestamp_text, published = None, None
        for node in soup.select(".article-page__header-publishdate"):
            text = node.get_text().strip()
            if not text:
                continue
            timestamp_text = timestamp_text or text
            if not published and MONTH_RE.search(text):
                published = normalize_date(text)
        if not published:
            for attrs in (
                {"property": "article:published_time"},
                {"itemprop": "datePublished"},
                {"name": "datePublished"},
                {"name": "publish-date"},
            ):
                published = normalize_date(meta_content(soup, **attrs))
                if published:
                    break
        if not published:
            published = date_from_ld_json(soup)

        image = absolutize(meta_content(soup, property="og:image"), origin)
        images = [image] if image else []
        for img in body.find_all("img", src=True):
            src = absolutize(img["src"], origin)
            if src and src not in images:
                images.append(src)
        videos = collect_videos(soup, origin)
        credits = text_of(
            soup.select_one(
                ".article-page__header-image-wrapper figcaption, "
                ".article-page__header-caption, .article-page__header-credit"
            )
        )
        html_tag = soup.find("html")

        return ExtractedArticle(
            url=url,
            title=title,
            authors=author_names(soup),
            timestamp_text=timestamp_text,
            published_at=published,
            body_html=body_html,
            body_text=body_text,
            image=image,
            images=images,
            videos=videos,
            credits=credits,
            lang=(html_tag.get("lang") if html_tag else None) or None,
            tags=tags,
            excerpt=excerpt,
            debug=self.debug_envelope(
                got,
                paragraphs=paragraphs,
                images=len(images),
                videos=len(videos),
                anchors=len(body.find_all("a", href=True)),
            ),
        )

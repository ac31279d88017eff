"""Facts harvested from an article before it is sent for rewriting.

Links become ``LinkReference`` entries the model must link by anchor text.
Figures, videos and embeds are swapped for opaque tokens such as
``[[IMG:1]]`` in the prompt body and restored after generation.
"""
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, NavigableString, Tag

from runner.ingest.numbers import html_to_plain_text

MAX_REFERENCES = 80
SNIPPET_MAX = 220
MEDIA_SELECTORS = ", ".join(
    [
        "figure",
        "picture",
        "img",
        "iframe",
        "video",
        "blockquote.twitter-tweet",
        "blockquote.instagram-media",
        "aside.instagram-post",
        "div[data-oembed-url]",
    ]
)
VIDEO_HOST_RE = re.compile(r"youtube|vimeo|brightcove|dazn|dailymotion")
WS_RE = re.compile(r"[\s ]+")


@dataclass
class LinkReference:
    text: str
    url: str
    context: Optional[str] = None
    order: Optional[int] = None
    token: Optional[str] = None


@dataclass
class MediaReference:
    token: str
    type: str  # image | video | embed
    url: Optional[str] = None
    description: Optional[str] = None
    caption: Optional[str] = None
    html: Optional[str] = None
    context: Optional[str] = None
    order: Optional[int] = None


@dataclass
class PromptArtifacts:
    body_text: Optional[str] = None
    links: list[LinkReference] = field(default_factory=list)
    media: list[MediaReference] = field(default_factory=list)
    html_with_tokens: Optional[str] = None


def collapse(text: str | None) -> str:
    return WS_RE.sub(" ", text or "").strip()


def blocks_to_plain(body) -> Optional[str]:
    """Plain text of stored body blocks, paragraphs separated by blank lines."""
    if not isinstance(body, list):
        return None
    parts = []
    for block in body:
        if not isinstance(block, dict):
            continue
        if isinstance(block.get("children"), list):
            parts.append("".join((child or {}).get("text") or "" for child in block["children"]))
        elif block.get("text"):
            parts.append(block["text"])
    text = "\n\n".join(p for p in parts if p).strip()
    return text or None


def context_snippet(raw: str | None, highlight: str | None = None) -> Optional[str]:
    collapsed = collapse(raw)
    if not collapsed:
        return None
    idx = -1
    marked = collapsed
    value = (highlight or "").strip()
    if value:
        idx = collapsed.lower().find(value.lower())
    if idx >= 0:
        end = idx + len(value)
        marked = f"{collapsed[:idx]}«{collapsed[idx:end]}»{collapsed[end:]}"
    if len(marked) <= SNIPPET_MAX:
        return marked
    mid = idx if idx >= 0 else len(marked) // 2
    start = max(0, mid - SNIPPET_MAX // 2)
    end = min(len(marked), start + SNIPPET_MAX)
    snippet = marked[start:end]
    if start > 0:
        snippet = "…" + snippet
    if end < len(marked):
        snippet = snippet + "…"
    return snippet


def preceding_text(el: Tag) -> Optional[str]:
    current = el
    depth = 0
    while current is not None and depth < 5:
        for sib in current.previous_siblings:
            text = collapse(sib if isinstance(sib, NavigableString) else sib.get_text())
            if text:
                return text
        current = current.parent
        depth += 1
    return None


def resolve_url(url: str | None, canonical: str | None = None) -> Optional[str]:
    if not url or not url.strip():
        return None
    url = url.strip()
    if re.match(r"^https?:", url, re.IGNORECASE):
        return url
    if url.startswith("//"):
        return "https:" + url
    if canonical:
        p = urlparse(canonical)
        if p.scheme and p.netloc:
            return urljoin(f"{p.scheme}://{p.netloc}", url)
    return url


def _block_links(body) -> list[tuple[str, str, Optional[str]]]:
    found = []
    if not isinstance(body, list):
        return found
    for block in body:
        if not isinstance(block, dict) or not isinstance(block.get("mark_defs"), list):
            continue
        children = block.get("children") or []
        block_text = "".join((c or {}).get("text") or "" for c in children)
        for mark in block["mark_defs"]:
            href = (mark.get("href") or "").strip()
            if mark.get("type") != "link" or not href:
                continue
            text = "".join(
                (c or {}).get("text") or "" for c in children if mark.get("key") in ((c or {}).get("marks") or [])
            ).strip()
            if text:
                found.append((text, href, context_snippet(block_text, text)))
    return found


def extract_links(body=None, external_html: str | None = None, canonical_url: str | None = None) -> list[LinkReference]:
    ordered: dict[str, LinkReference] = {}

    def record(text: str, href: str, context: Optional[str]) -> None:
        url = resolve_url(href, canonical_url) or href
        text = (text or "").strip()
        if not url or not text:
            return
        if url not in ordered:
            ordered[url] = LinkReference(text=text, url=url, context=context)
        elif not ordered[url].context and context:
            ordered[url].context = context

    for text, href, context in _block_links(body):
        record(text, href, context)

    if external_html:
        soup = BeautifulSoup(f'<div id="ai-root">{external_html}</div>', "html.parser")
        for anchor in soup.select("a[href]"):
            href = anchor.get("href") or ""
            text = anchor.get_text().strip()
            if not href or not text:
                continue
            holder = anchor.find_parent(["p", "li", "figcaption", "h2", "h3", "h4"]) or anchor.parent
            record(text, href, context_snippet(holder.get_text() if holder is not None else text, text))

    refs = list(ordered.values())[:MAX_REFERENCES]
    for idx, ref in enumerate(refs, start=1):
        ref.order = idx
        ref.token = f"ref-{idx}"
    return refs


def _self_or_find(el: Tag, name: str) -> Optional[Tag]:
    if el.name == name:
        return el
    return el.find(name)


def _attached(el: Tag, root: Tag) -> bool:
    return any(parent is root for parent in el.parents)


def _classify(target: Tag, canonical_url: str | None):
    """(type, url, description) for one media element, or Nones."""
    img = _self_or_find(target, "img")
    if img is not None:
        return "image", resolve_url(img.get("src"), canonical_url), img.get("alt") or img.get("title")
    video = _self_or_find(target, "video")
    if video is not None:
        src = video.get("src") or video.get("data-src")
        return "video", resolve_url(src, canonical_url), video.get("title") or video.get("aria-label")
    iframe = _self_or_find(target, "iframe")
    data_url = target.get("data-oembed-url")
    if iframe is not None or data_url:
        src = (iframe.get("src") if iframe is not None else None) or data_url
        kind = "video" if VIDEO_HOST_RE.search((src or "").lower()) else "embed"
        desc = (iframe.get("title") if iframe is not None else None) or target.get("aria-label")
        return kind, resolve_url(src, canonical_url), desc
    insta = target if (target.name == "blockquote" and "instagram-media" in (target.get("class") or [])) else target.select_one("blockquote.instagram-media")
    if insta is not None:
        link = insta.find("a", href=True)
        return "embed", resolve_url(link["href"] if link else None, canonical_url), collapse(insta.get_text())[:160] or None
    if target.name == "blockquote" and "twitter-tweet" in (target.get("class") or []):
        link = target.find("a", href=True)
        return "embed", resolve_url(link["href"] if link else None, canonical_url), collapse(target.get_text())[:120] or None
    return None, None, None


def extract_media(
    external_html: str | None,
    canonical_url: str | None = None,
    lead_image_url: str | None = None,
) -> tuple[Optional[str], list[MediaReference]]:
    """Swap media elements for tokens. Returns (html_with_tokens, references)."""
    if not external_html:
        return None, []
    soup = BeautifulSoup(f'<div id="ai-root">{external_html}</div>', "html.parser")
    root = soup.find("div", id="ai-root")
    media: list[MediaReference] = []
    seen = set()
    counters = {"image": 0, "video": 0, "embed": 0}
    prefixes = {"image": "IMG", "video": "VIDEO", "embed": "EMBED"}
    visited = set()

    for node in root.select(MEDIA_SELECTORS):
        if not _attached(node, root):
            continue
        figure = node if node.name == "figure" else node.find_parent("figure")
        target = figure if figure is not None else node
        if id(target) in visited:
            continue
        visited.add(id(target))

        caption = None
        figcaption = figure.find("figcaption") if figure is not None else None
        if figcaption is not None:
            caption = collapse(figcaption.get_text()) or None

        kind, url, description = _classify(target, canonical_url)
        if not kind or not url:
            continue
        if kind == "image" and lead_image_url and url == lead_image_url:
            continue
        if (kind, url) in seen:
            continue
        seen.add((kind, url))

        nearby = context_snippet(preceding_text(target))
        counters[kind] += 1
        token = f"[[{prefixes[kind]}:{counters[kind]}]]"
        media.append(
            MediaReference(
                token=token,
                type=kind,
                url=url,
                description=description,
                caption=caption,
                html=str(target),
                context=context_snippet(nearby or caption or description),
                order=len(media) + 1,
            )
        )
        replacement = soup.new_tag("p")
        replacement.string = token
        target.replace_with(replacement)

    return root.decode_contents(), media


def build_prompt_artifacts(
    body=None,
    external_html: str | None = None,
    canonical_url: str | None = None,
    lead_image_url: str | None = None,
) -> PromptArtifacts:
    links = extract_links(body, external_html, canonical_url)
    html_with_tokens, media = extract_media(external_html, canonical_url, lead_image_url)

    body_text = blocks_to_plain(body)
    if not body_text and html_with_tokens:
        body_text = html_to_plain_text(html_with_tokens)
    elif not body_text and external_html:
        body_text = html_to_plain_text(external_html)
    if not body_text and links:
        body_text = "\n".join(f"{ref.text} -> {ref.url}" for ref in links)

    return PromptArtifacts(
        body_text=body_text or None,
        links=links,
        media=media,
        html_with_tokens=html_with_tokens,
    )

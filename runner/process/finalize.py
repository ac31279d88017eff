"""Deterministic post-processing of generated article bodies.

Nothing here calls the model. ``finalize_draft`` turns a generated body back
into publishable HTML: link references become anchors, media tokens become
the original markup, and empty shells left behind are pruned.
"""
import html as html_lib
import re
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import parse_qs, quote, urlparse

from bs4 import BeautifulSoup, NavigableString, Tag

from .prompt_context import LinkReference, MediaReference, collapse

MEDIA_TOKEN_RE = re.compile(r"\[\[(?:IMG|VIDEO|EMBED):\d+\]\]")
REF_PLACEHOLDER_RE = re.compile(r"\[\[REF:(\d+)\]\]", re.IGNORECASE)
BARE_URL_RE = re.compile(r"\s*(\(?)(https?://[^\s)]+)(\)?)", re.IGNORECASE)
TWEET_ID_RE = re.compile(r"status(?:es)?/(\d{5,})", re.IGNORECASE)

HOIST_TAGS = {"figure", "blockquote", "div", "iframe", "video"}
SKIP_TEXT_PARENTS = {"a", "ref", "script", "style", "template", "code", "pre"}

MEDIA_ALLOWED_ATTRS = {
    "class", "href", "src", "srcset", "sizes", "alt", "title", "width", "height",
    "allow", "allowfullscreen", "frameborder", "scrolling", "loading", "rel",
    "target", "type", "media", "aria-label",
}
MEDIA_ALLOWED_DATA_ATTRS = {
    "data-tweet-id", "data-video-id", "data-account", "data-player", "data-src",
    "data-provider", "data-playlist-id", "data-brightcove-account",
    "data-brightcove-player", "data-brightcove-video-id", "data-oembed-url",
    "data-caption", "data-embed-url", "data-instgrm-captioned",
    "data-instgrm-permalink", "data-instgrm-version",
}

MIN_HEADING_WORDS = 3
MAX_HEADING_WORDS = 9
LOWERCASE_WORDS = {"and", "as", "at", "but", "for", "from", "in", "into", "of", "on", "or", "the", "to", "with"}


@dataclass
class DraftVariant:
    title: str
    body: str
    excerpt: Optional[str] = None


def _parse(body: str) -> tuple[BeautifulSoup, Tag]:
    soup = BeautifulSoup(f'<div data-root="root">{body}</div>', "html.parser")
    return soup, soup.find("div", attrs={"data-root": "root"})


# media

def clean_media_element(el: Tag) -> None:
    for name in list(el.attrs):
        lowered = name.lower()
        if lowered in ("style", "id", "contenteditable") or lowered.startswith("on"):
            del el[name]
        elif lowered.startswith("data-"):
            if lowered not in MEDIA_ALLOWED_DATA_ATTRS:
                del el[name]
        elif lowered not in MEDIA_ALLOWED_ATTRS:
            del el[name]
    if el.name == "a":
        rel = set((" ".join(el.get("rel") or []) if isinstance(el.get("rel"), list) else el.get("rel") or "").split())
        rel.update({"noopener", "noreferrer"})
        el["rel"] = " ".join(sorted(rel))
    if el.name == "img":
        if not el.get("loading"):
            el["loading"] = "lazy"
        if not el.get("alt") and el.get("title"):
            el["alt"] = el["title"]
    for child in el.find_all(True, recursive=False):
        clean_media_element(child)


def _from_original(ref: MediaReference) -> Optional[str]:
    soup, root = _parse(ref.html)
    for script in root.find_all("script"):
        script.decompose()

    twitter = root.select_one("blockquote.twitter-tweet")
    if twitter is not None:
        anchor = twitter.find("a", href=True)
        href = (anchor["href"] if anchor else "") or (anchor.get_text() if anchor else "")
        m = TWEET_ID_RE.search(href)
        if m:
            src = (
                f"https://platform.twitter.com/embed/Tweet.html?id={quote(m.group(1))}"
                "&theme=light&hideCard=false&hideThread=false"
            )
            return (
                f'<div class="ext-embed ext-twitter"><iframe src="{src}" title="X Post" '
                'allow="encrypted-media; picture-in-picture; fullscreen" allowfullscreen '
                'frameborder="0" scrolling="no"></iframe></div>'
            )
        clean_media_element(twitter)
        classes = twitter.get("class") or []
        if "twitter-tweet" not in classes:
            twitter["class"] = classes + ["twitter-tweet"]
        return str(twitter)

    instagram = root.select_one("blockquote.instagram-media")
    if instagram is not None:
        clean_media_element(instagram)
        return f'<div class="ext-embed ext-instagram">{instagram}</div>'

    figure = root.find("figure")
    if figure is not None:
        clean_media_element(figure)
        if ref.caption and figure.find("figcaption") is None:
            figcaption = soup.new_tag("figcaption")
            figcaption.string = ref.caption
            figure.append(figcaption)
        return str(figure)

    iframe = root.find("iframe")
    if iframe is not None:
        clean_media_element(iframe)
        return str(iframe)

    img = root.find("img")
    if img is not None:
        clean_media_element(img)
        caption = f"<figcaption>{html_lib.escape(ref.caption)}</figcaption>" if ref.caption else ""
        return f"<figure>{img}{caption}</figure>"

    first = root.find(True)
    if first is not None:
        clean_media_element(first)
        return str(first)
    return None


def build_media_html(ref: MediaReference) -> Optional[str]:
    """Markup that replaces a media token; the original element when known."""
    if ref.html:
        built = _from_original(ref)
        if built:
            return built

    if ref.type == "image" and ref.url:
        caption = f"<figcaption>{html_lib.escape(ref.caption)}</figcaption>" if ref.caption else ""
        alt = html_lib.escape(ref.description or "")
        return f'<figure><img src="{ref.url}" alt="{alt}" loading="lazy" />{caption}</figure>'

    if ref.type == "video" and ref.url:
        lower = ref.url.lower()
        if "players.brightcove.net" in lower:
            u = urlparse(ref.url)
            parts = [p for p in u.path.split("/") if p]
            video_id = (parse_qs(u.query).get("videoId") or [None])[0]
            attrs = [
                'class="ext-video ext-brightcove ext-embed"',
                'data-provider="brightcove"',
                f'data-src="{html_lib.escape(ref.url)}"',
            ]
            if len(parts) > 0:
                attrs.append(f'data-account="{html_lib.escape(parts[0])}"')
            if len(parts) > 1:
                attrs.append(f'data-player="{html_lib.escape(parts[1])}"')
            if video_id:
                attrs.append(f'data-video-id="{html_lib.escape(video_id)}"')
            label = html_lib.escape(ref.description or ref.caption or "Open video ↗")
            return (
                f'<div {" ".join(attrs)}><a href="{html_lib.escape(ref.url)}" target="_blank" '
                f'rel="noopener noreferrer">{label}</a></div>'
            )
        title = html_lib.escape(ref.description or ("YouTube video" if re.search(r"youtube\.com|youtu\.be", lower) else "Embedded video"))
        return (
            f'<div class="ext-embed ext-video"><iframe src="{ref.url}" title="{title}" '
            'allow="encrypted-media; picture-in-picture; fullscreen" allowfullscreen frameborder="0"></iframe></div>'
        )

    if ref.type == "embed" and ref.url:
        return f'<blockquote class="twitter-tweet"><a href="{ref.url}">{ref.url}</a></blockquote>'
    return None


def restore_media_tokens(body: str, media: list[MediaReference] | None) -> str:
    if not body or not media:
        return body
    output = body
    for ref in media:
        if not ref.token:
            continue
        markup = (build_media_html(ref) or "").strip()
        token = re.escape(ref.token)
        block_re = re.compile(rf"<p>\s*{token}\s*</p>", re.IGNORECASE)
        inline_re = re.compile(token)
        if not markup:
            output = inline_re.sub("", block_re.sub("", output))
            continue
        replaced = False
        if block_re.search(output):
            output = block_re.sub(lambda _m: markup, output)
            replaced = True
        if inline_re.search(output):
            output = inline_re.sub(lambda _m: markup, output)
            replaced = True
        if not replaced:
            output = f"{output}\n{markup}"
    return output


# links

def _search_pattern(phrase: str) -> Optional[re.Pattern]:
    pieces = []
    last_space = False
    for ch in phrase.strip():
        if ch.isspace():
            if not last_space:
                pieces.append(r"\s+")
                last_space = True
            continue
        last_space = False
        pieces.append("['’]" if ch in ("'", "’") else re.escape(ch))
    if not pieces:
        return None
    return re.compile("".join(pieces), re.IGNORECASE)


def candidate_phrases(ref: LinkReference, placeholder_text: dict[str, str]) -> list[str]:
    ordered: list[str] = []
    seen = set()

    def push(value: Optional[str]) -> None:
        value = (value or "").replace("«", "").replace("»", "").strip()
        if len(value) <= 1 or value.lower() in seen:
            return
        seen.add(value.lower())
        ordered.append(value)

    highlighted = re.search(r"«([^»]+)»", ref.context or "")
    if highlighted:
        push(highlighted.group(1))
    elif ref.token and ref.token in placeholder_text:
        push(placeholder_text[ref.token])
    push(ref.text)

    for value in list(ordered):
        words = value.split()
        if len(words) > 3:
            push(" ".join(words[-3:]))
        if len(words) > 2:
            push(" ".join(words[-2:]))
        if len(words) > 1:
            push(words[-1])
    return ordered


def _linkable_strings(root: Tag) -> list[NavigableString]:
    out = []
    for node in root.find_all(string=True):
        if not node.strip() or type(node) is not NavigableString:
            continue
        if any(p.name in SKIP_TEXT_PARENTS for p in node.parents if p is not root):
            continue
        out.append(node)
    return out


def _trim_trailing_duplicate(anchor: Tag, root: Tag) -> None:
    text = collapse(anchor.get_text())
    if not text:
        return

    def trim(node) -> bool:
        if not isinstance(node, NavigableString):
            return False
        value = str(node)
        lead = re.match(r"^[\s ]*", value).group(0)
        rest = value[len(lead):]
        if not rest.lower().startswith(text.lower()):
            return False
        node.replace_with(NavigableString(lead + rest[len(text):]))
        return True

    if trim(anchor.next_sibling):
        return
    parent = anchor.parent
    while parent is not None and parent is not root:
        if trim(parent.next_sibling):
            return
        parent = parent.parent


def _place_link(soup, root: Tag, ref: LinkReference, phrases: list[str], allow_early: bool) -> bool:
    paragraphs = root.find_all("p")
    for phrase in phrases:
        pattern = _search_pattern(phrase)
        if pattern is None:
            continue
        for node in _linkable_strings(root):
            value = str(node)
            para = node.find_parent("p")
            para_index = next((i for i, p in enumerate(paragraphs) if p is para), -1)
            if not allow_early and 0 <= para_index < 2:
                continue
            for m in pattern.finditer(value):
                if len(m.group(0).strip()) <= 1:
                    continue
                anchor = soup.new_tag("a", attrs={"href": ref.url, "rel": "noopener noreferrer", "target": "_blank"})
                anchor.string = m.group(0)
                parts = [NavigableString(value[: m.start()])] if m.start() else []
                parts.append(anchor)
                if m.end() < len(value):
                    parts.append(NavigableString(value[m.end():]))
                node.replace_with(*parts)
                _trim_trailing_duplicate(anchor, root)
                return True
    return False


def cleanup_bare_urls(root: Tag, refs: list[LinkReference]) -> None:
    urls = set()
    for ref in refs:
        trimmed = ref.url.strip()
        bare = trimmed.rstrip("/")
        urls.update({trimmed, bare, trimmed.lower(), bare.lower()})

    def _repl(m):
        raw = re.sub(r"[)\],.;!?]+$", "", m.group(2).strip())
        bare = raw.rstrip("/")
        if not ({raw, bare, raw.lower(), bare.lower()} & urls):
            return m.group(0)
        return " " if m.group(0)[:1].isspace() or m.group(0)[-1:].isspace() else ""

    for node in root.find_all(string=True):
        value = str(node)
        if "http" not in value.lower():
            continue
        updated = BARE_URL_RE.sub(_repl, value)
        if updated != value:
            node.replace_with(NavigableString(re.sub(r"\s{2,}", " ", updated)))


def apply_link_references(soup, root: Tag, links: list[LinkReference]) -> None:
    refs = []
    for idx, ref in enumerate(links or [], start=1):
        url, text = (ref.url or "").strip(), (ref.text or "").strip()
        if url and text:
            refs.append(replace(ref, url=url, text=text, token=(ref.token or "").strip() or f"ref-{idx}"))
    if not refs:
        return
    by_token = {ref.token: ref for ref in refs}
    url_set = {ref.url for ref in refs}

    for anchor in root.find_all("a", href=True):
        if anchor["href"].strip() in url_set:
            anchor.replace_with(NavigableString(anchor.get_text()))

    placeholder_text: dict[str, str] = {}
    for node in root.find_all("ref"):
        token = (node.get("data-ref") or node.get("data-token") or "").strip()
        text = node.get_text()
        if token and text.strip() and token not in placeholder_text:
            placeholder_text[token] = text.strip()
        node.replace_with(NavigableString(text))

    def _ref_text(m):
        ref = by_token.get(f"ref-{m.group(1)}")
        return ref.text if ref else ""

    for node in root.find_all(string=REF_PLACEHOLDER_RE):
        node.replace_with(NavigableString(REF_PLACEHOLDER_RE.sub(_ref_text, str(node))))

    used = set()
    for ref in refs:
        if ref.url in used:
            continue
        phrases = candidate_phrases(ref, placeholder_text)
        if _place_link(soup, root, ref, phrases, False) or _place_link(soup, root, ref, phrases, True):
            used.add(ref.url)

    cleanup_bare_urls(root, refs)


# structure

def _has_content(el: Tag) -> bool:
    return bool(el.get_text().strip()) or el.find(["img", "figure", "iframe", "video", "blockquote", "div"]) is not None


def prune_empty_nodes(soup, root: Tag) -> None:
    """Hoist block media out of paragraphs and drop paragraphs left empty."""
    for p in root.find_all("p"):
        if p.decomposed or p.parent is None:
            continue
        groups = []
        current = []
        for child in list(p.contents):
            if isinstance(child, Tag) and child.name in HOIST_TAGS:
                if current:
                    groups.append(current)
                    current = []
                groups.append(child)
            else:
                current.append(child)
        if current:
            groups.append(current)

        if len(groups) == 1 and isinstance(groups[0], list):
            if not _has_content(p):
                p.decompose()
            continue
        for group in groups:
            if isinstance(group, Tag):
                p.insert_before(group.extract())
                continue
            new_p = soup.new_tag("p")
            for node in group:
                new_p.append(node.extract())
            if _has_content(new_p):
                p.insert_before(new_p)
        p.decompose()

    for div in root.find_all("div"):
        if div.decomposed:
            continue
        if not div.get("class") and not div.get_text().strip() and div.find(True) is None:
            div.decompose()


def strip_misplaced_social_wrappers(root: Tag) -> None:
    for wrapper in root.select("div.ext-social"):
        if wrapper.select_one("iframe, blockquote, .ext-embed, figure") is not None:
            continue
        if MEDIA_TOKEN_RE.search(wrapper.get_text()):
            continue
        wrapper.unwrap()


def normalize_heading_case(text: str) -> str:
    out = []
    for idx, token in enumerate(text.split()):
        lead = re.match(r"^[\"'“”‘’(]*", token).group(0)
        trail = re.search(r"[\"'“”‘’)\],:;!?]*$", token[len(lead):]).group(0)
        core = token[len(lead): len(token) - len(trail)]
        if not core:
            out.append(lead + trail)
            continue
        all_caps = core == core.upper() and re.search(r"[A-Z]", core) is not None
        if idx == 0:
            body = core.lower().capitalize()
        elif core.lower() in LOWERCASE_WORDS:
            body = core.lower()
        elif all_caps:
            body = core if len(core) <= 3 else core[0] + core[1:].lower()
        elif core[0].isupper():
            body = core
        else:
            body = core.lower()
        out.append(lead + body + trail)
    return " ".join(out)


def derive_heading_text(paragraph: Tag) -> Optional[str]:
    raw = collapse(paragraph.get_text())
    if len(raw) < 40 or MEDIA_TOKEN_RE.search(raw):
        return None
    first = re.split(r"(?<=[.!?])\s+", raw)[0] or raw
    cleaned = re.sub(r"^[\"'“”‘’]+|[\"'“”‘’]+$", "", first)
    cleaned = re.sub(r"\([^)]*\)$", "", cleaned)
    cleaned = re.sub(r"[:;]+$", "", cleaned).strip()
    words = cleaned.split()
    if len(words) < MIN_HEADING_WORDS:
        return None
    limited = re.sub(r"[,–—-]+$", "", " ".join(words[:MAX_HEADING_WORDS])).strip()
    return normalize_heading_case(limited) if limited else None


def ensure_section_headings(soup, root: Tag, min_headings: int = 2) -> None:
    existing = root.find_all(["h2", "h3"])
    if len(existing) >= min_headings:
        return
    paragraphs = [
        p
        for p in root.find_all("p")
        if p.get_text().strip()
        and not MEDIA_TOKEN_RE.search(p.get_text())
        and p.find_parent("div", class_="ext-quote") is None
    ]
    if len(paragraphs) < 3:
        return
    needed = min(min_headings - len(existing), 3)
    inserted = [h.get_text().strip().lower() for h in existing]
    segment = len(paragraphs) // (needed + 1) or 1
    for i in range(1, needed + 1):
        paragraph = paragraphs[min(len(paragraphs) - 1, max(1, segment * i))]
        prev = paragraph.find_previous_sibling(True)
        if prev is not None and prev.name in ("h2", "h3"):
            continue
        heading_text = derive_heading_text(paragraph) or f"Section {i + len(existing)}"
        if heading_text.lower() in inserted:
            continue
        heading = soup.new_tag("h2")
        heading.string = heading_text
        paragraph.insert_before(heading)
        inserted.append(heading_text.lower())


# scrub

def scrub_body(body: str | None) -> str:
    """Collapse doubled words and names; keep one literal "according to"."""
    if not body:
        return ""
    output = body.replace(" ", " ")
    output = re.sub(r"\b([A-Za-zÀ-ÖØ-öø-ÿ'’.-]{3,})\s+\1\b", r"\1", output, flags=re.IGNORECASE)
    output = re.sub(r"([A-Z][\w'’-]+(?:\s+[A-Z][\w'’-]+){0,3})\s+\1\b", r"\1", output)

    count = 0

    def _according(m):
        nonlocal count
        count += 1
        opening, closing = m.group(1) or "", m.group(3) or ""
        phrase = "according to" if count <= 1 else "as noted by"
        return f"{opening}{phrase}{closing}"

    return re.sub(r"(<em[^>]*>)?(according to)(\s*</em>)?", _according, output, flags=re.IGNORECASE)


def finalize_body(body: str, links: list[LinkReference] | None = None, media: list[MediaReference] | None = None) -> str:
    if not body:
        return ""
    linked = body
    if links:
        soup, root = _parse(body)
        apply_link_references(soup, root, links)
        linked = root.decode_contents()

    with_media = restore_media_tokens(linked, media)

    soup, root = _parse(with_media)
    prune_empty_nodes(soup, root)
    strip_misplaced_social_wrappers(root)
    ensure_section_headings(soup, root)
    result = root.decode_contents().strip()

    result = MEDIA_TOKEN_RE.sub("", result)
    result = REF_PLACEHOLDER_RE.sub("", result)
    return result.replace("«", "").replace("»", "")


def finalize_draft(
    draft: DraftVariant,
    links: list[LinkReference] | None = None,
    media: list[MediaReference] | None = None,
) -> DraftVariant:
    return replace(draft, body=finalize_body(draft.body or "", links, media))

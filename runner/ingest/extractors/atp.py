import re
from typing import Optional
from urllib.parse import quote

from bs4 import BeautifulSoup, Tag

from ..extract import absolutize
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
from .passes import classify_paragraphs, closest, drop_with_wrapper, repair_numbers

ORIGIN = "https://www.atptour.com/"
BRIGHTCOVE_PLAYER = "https://players.brightcove.net/{account}/{player}/index.html?videoId={video_id}"

H2H_SELECTORS = [".atp_h2h-landing", ".h2h-content", '[class*="atp_head2head"]', ".h2h-data"]
NOISE_SELECTORS = [
    "script",
    "style",
    "nav",
    "aside",
    "noscript",
    "form",
    ".atp_social",
    ".atp_article-news",
    ".atp_article-videos",
    ".article-recommendation",
    ".splide",
    ".readmore",
    ".share-tools",
    ".social-share",
    ".newsletter-signup",
    ".ad-container",
    ".advertisement",
]
HEADLINE_META_SELECTORS = [".tag", ".tagline", ".timestamp", ".main-video-content"]

TEMPLATE_TOKEN_RE = re.compile(r"\{\{[^{}]{0,120}\}\}")
H2H_INPUT_RE = re.compile(r"<input[^>]*atp_head2head[^>]*>", re.IGNORECASE)
CREDIT_HINT_RE = re.compile(r"credit|getty|reuters|ap photo", re.IGNORECASE)
BYLINE_RE = re.compile(r"by\s+([A-Z][A-Za-z\s.'-]+)", re.IGNORECASE)


def _image_key(src: str) -> str:
    return re.sub(r"[#?].*$", "", src)


def strip_h2h(tree: Tag) -> Tag:
    return decompose_all(tree, H2H_SELECTORS)


def strip_noise(tree: Tag) -> Tag:
    return decompose_all(tree, NOISE_SELECTORS)


def cut_newsletter(tree: Tag) -> Tag:
    marker = None
    for node in tree.find_all(["p", "div"]):
        if re.search(r"\[NEWSLETTER FORM\]", node.get_text(), re.IGNORECASE):
            marker = node
            break
    if marker is not None:
        for sib in list(marker.next_siblings):
            sib.extract()
        marker.decompose()
    for p in list(tree.find_all("p")):
        if re.search(r"\[ATP APP\]", p.get_text(), re.IGNORECASE):
            p.decompose()
    return tree


def strip_headline_meta(tree: Tag) -> Tag:
    return decompose_all(tree, HEADLINE_META_SELECTORS)


def strip_promos(tree: Tag) -> Tag:
    promos = []
    for a in tree.find_all("a", href=True):
        href = a["href"]
        if "it-all-adds-up-hub" in href.lower():
            promos.append(a)
            continue
        if "/apps" in href.lower():
            img = a.find("img")
            alt = (img.get("alt") or "") if img is not None else ""
            if re.search(r"atp[\s|-]*wta\s+live\s+app", alt, re.IGNORECASE) or re.search(
                r"utm_campaign=app_banner", href, re.IGNORECASE
            ):
                promos.append(a)
    for img in tree.find_all("img", alt=True):
        if "it all adds up" in img["alt"].lower():
            promos.append(img)
    for el in promos:
        if el.decomposed:
            continue
        wrapper = closest(el, ("p", "div", "section", "figure"), tree)
        (wrapper or el).decompose()
    return tree


def normalize_images(tree: Tag) -> Tag:
    seen = set()
    for img in list(tree.find_all("img")):
        if img.decomposed:
            continue
        raw = (img.get("src") or "").strip()
        if not raw or raw.startswith("data:"):
            drop_with_wrapper(img, tree)
            continue
        absolute = absolutize(raw, ORIGIN)
        if not absolute:
            img.decompose()
            continue
        key = _image_key(absolute)
        if key in seen:
            drop_with_wrapper(img, tree)
            continue
        seen.add(key)
        img["src"] = absolute
    return tree


def normalize_videos(tree: Tag) -> Tag:
    factory = BeautifulSoup("", "html.parser")
    for vj in list(tree.find_all("video-js", attrs={"data-video-id": True})):
        account, player, video_id = vj.get("data-account"), vj.get("data-player"), vj.get("data-video-id")
        if not (account and player and video_id):
            continue
        src = BRIGHTCOVE_PLAYER.format(account=account, player=player, video_id=quote(video_id))
        iframe = factory.new_tag(
            "iframe",
            attrs={
                "src": src,
                "title": "Brightcove Player",
                "allow": "encrypted-media; fullscreen; picture-in-picture",
                "allowfullscreen": "true",
                "frameborder": "0",
                "width": "560",
                "height": "315",
            },
        )
        wrap = factory.new_tag("div", attrs={"class": "ext-video ext-brightcove"})
        wrap.append(iframe)
        vj.replace_with(wrap)

    for iframe in list(tree.find_all("iframe")):
        src = iframe.get("src") or ""
        if not src:
            continue
        if re.search(r"platform\.twitter\.com/embed/Tweet\.html|twitter\.com|x\.com", src, re.IGNORECASE):
            continue
        is_brightcove = bool(re.search(r"players\.brightcove\.net", src, re.IGNORECASE))
        is_youtube = bool(re.search(r"youtube\.com|youtu\.be", src, re.IGNORECASE))
        if not (is_brightcove or is_youtube):
            iframe.decompose()
            continue
        parent = iframe.parent
        if parent is not None and "ext-video" in (parent.get("class") or []):
            continue
        kind = "brightcove" if is_brightcove else "youtube"
        iframe.wrap(factory.new_tag("div", attrs={"class": f"ext-video ext-{kind}"}))
    return tree


def absolutize_links(tree: Tag) -> Tag:
    for img in tree.find_all("img", src=True):
        if not re.match(r"^https?:", img["src"], re.IGNORECASE):
            img["src"] = absolutize(img["src"], ORIGIN) or img["src"]
    for a in tree.find_all("a", href=True):
        if a["href"].startswith("/"):
            a["href"] = absolutize(a["href"], ORIGIN) or a["href"]
    return tree


PASSES = [
    strip_h2h,
    strip_noise,
    cut_newsletter,
    strip_headline_meta,
    strip_promos,
    normalize_images,
    normalize_videos,
    absolutize_links,
    repair_numbers,
    classify_paragraphs,
]


def collect_videos(soup: BeautifulSoup, body: Tag) -> list[VideoRef]:
    videos = []
    for card in soup.select(".card-link--video"):
        thumb = card.find("img")
        thumb_src = thumb.get("src") if thumb is not None else None
        title = text_of(card.select_one(".title"))
        if thumb_src or title:
            videos.append(
                VideoRef(
                    title=title,
                    thumbnail=absolutize(thumb_src, ORIGIN),
                    url=absolutize(card.get("href"), ORIGIN),
                )
            )
    for iframe in body.find_all("iframe"):
        src = iframe.get("src") or ""
        if re.search(r"players\.brightcove\.net", src, re.IGNORECASE):
            title = "Brightcove Video" if iframe.get("title") == "Brightcove Player" else "Video"
            videos.append(VideoRef(title=title, embed_url=src, url=src))
        elif re.search(r"youtube\.com|youtu\.be", src, re.IGNORECASE):
            videos.append(VideoRef(title="YouTube Video", embed_url=src, url=src))
    return videos


def find_credits(body: Tag) -> Optional[str]:
    node = body.select_one(".image-credit, .credit, .credits, figcaption")
    if node is not None and node.get_text().strip():
        return node.get_text().strip()
    for el in body.find_all(["p", "span"]):
        if CREDIT_HINT_RE.search(el.get_text()):
            return el.get_text().strip() or None
    return None


def find_authors(soup: BeautifulSoup) -> list[str]:
    authors = []
    meta = meta_content(soup, name="author")
    if meta:
        authors.append(meta)
    byline = soup.select_one('.photoBy, .byline, [class*="byline"]')
    text = byline.get_text() if byline is not None else ""
    if text.strip():
        m = BYLINE_RE.search(text)
        authors.append(m.group(1).strip() if m else text.strip())
    out = []
    for author in authors:
        author = author.strip()
        if author and author not in out:
            out.append(author)
    return out


class AtpExtractor(BaseExtractor):
    """atptour.com news and tournament reports."""

    name = "atp"
    container_selectors = (".atp_article", "article", "[class*='article']", "main")
    wait_selectors = (".atp_article", "article", "time")

    def loader_order(self, url: str) -> tuple[str, ...]:
        if self.settings.atp_prefer_rendered or self.prefers_rendered(url):
            return (RENDERED, FETCH)
        return (FETCH, RENDERED)

    def parse(self, url: str, soup: BeautifulSoup, container: Tag, got: Acquired) -> Optional[ExtractedArticle]:
        title = text_of(soup.select_one("h1, h2")) or page_title(soup)
        primary_tag = text_of(soup.select_one(".tag"))
        tagline = text_of(soup.select_one(".tagline"))

        body = run_passes(container, PASSES)
        images = [img["src"] for img in body.find_all("img", src=True)]
        videos = collect_videos(soup, body)
        body_text, _ = paragraph_text(body, "p, blockquote")
        paragraphs = len(body.find_all("p"))

        body_html = body.decode_contents() or None
        if body_html:
            body_html = TEMPLATE_TOKEN_RE.sub("", body_html)
            body_html = H2H_INPUT_RE.sub("", body_html)

        first_img = body.find("img", src=True)
        image = meta_content(soup, property="og:image") or (first_img["src"] if first_img else None)
        timestamp = text_of(soup.select_one(".timestamp")) or text_of(soup.find("time"))

        return ExtractedArticle(
            url=url,
            title=title,
            authors=find_authors(soup),
            timestamp_text=timestamp,
            body_html=body_html,
            body_text=body_text,
            image=image,
            images=images,
            videos=videos,
            credits=find_credits(body),
            tags=[primary_tag] if primary_tag else [],
            tagline=tagline,
            debug=self.debug_envelope(
                got, paragraphs=paragraphs, images=len(images), videos=len(videos)
            ),
        )

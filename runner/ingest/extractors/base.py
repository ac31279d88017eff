import copy
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from bs4 import BeautifulSoup, Tag

from backend.config import Settings
from ..challenge import detect_challenge
from ..extract import BROWSER_HEADERS, HEADERS, absolutize, fetch_url, host_of, status_from_error
from ..items import ChallengeDetection, ExtractedArticle
from ..rendered import fetch_rendered_html, should_use_rendered_fetch

FETCH = "fetch"
RENDERED = "rendered"

Pass = Callable[[Tag], Tag]


@dataclass
class Acquired:
    html: Optional[str] = None
    status: Optional[int] = None
    loader: Optional[str] = None
    challenge: Optional[ChallengeDetection] = None


def load_via_fetch(url: str, settings: Settings, label: str) -> Acquired:
    timeout = (settings.fetch_connect_timeout, settings.fetch_read_timeout)
    text, err = fetch_url(url, HEADERS, timeout=timeout)
    status = status_from_error(err)
    if err or not text:
        return Acquired(status=status, loader=FETCH)
    challenge = detect_challenge(text)
    if challenge:
        print(
            f"CHALLENGE extractor={label} loader=fetch url={url} type={challenge.type} "
            f"indicator={challenge.indicator!r}",
            file=sys.stderr,
        )
        return Acquired(status=status, loader=FETCH, challenge=challenge)
    return Acquired(html=text, status=status, loader=FETCH)


def load_via_rendered(
    url: str, settings: Settings, label: str, wait_selectors: tuple[str, ...] = ()
) -> Acquired:
    html, status = fetch_rendered_html(
        url,
        timeout_ms=settings.rendered_timeout_ms,
        wait_selectors=wait_selectors,
        user_agent=BROWSER_HEADERS["User-Agent"],
    )
    if not html:
        return Acquired(status=status, loader=RENDERED)
    challenge = detect_challenge(html)
    if challenge:
        print(
            f"CHALLENGE extractor={label} loader=rendered url={url} type={challenge.type} "
            f"indicator={challenge.indicator!r}",
            file=sys.stderr,
        )
        return Acquired(status=status, loader=RENDERED, challenge=challenge)
    return Acquired(html=html, status=status, loader=RENDERED)


def run_passes(tree: Tag, passes: list[Pass]) -> Tag:
    """Apply cleanup passes in order; each one works on its own copy."""
    for step in passes:
        tree = step(copy.copy(tree))
    return tree


def decompose_all(tree: Tag, selectors: list[str]) -> Tag:
    for el in list(tree.select(", ".join(selectors))):
        if not el.decomposed:
            el.decompose()
    return tree


def has_text(el: Optional[Tag]) -> bool:
    return bool(el is not None and el.get_text().strip())


def select_first(soup, selectors) -> Optional[Tag]:
    for selector in selectors:
        found = soup.select_one(selector)
        if found is not None:
            return found
    return None


def meta_content(soup, **attrs) -> Optional[str]:
    el = soup.find("meta", attrs=attrs)
    if el is None:
        return None
    value = (el.get("content") or "").strip()
    return value or None


def text_of(el: Optional[Tag]) -> Optional[str]:
    if el is None:
        return None
    value = el.get_text().strip()
    return value or None


def page_title(soup) -> Optional[str]:
    return text_of(soup.title) if soup.title else None


def paragraph_text(container: Tag, selector: str = "p") -> tuple[Optional[str], int]:
    blocks = [el.get_text().strip() for el in container.select(selector)]
    blocks = [b for b in blocks if b]
    return ("\n\n".join(blocks) or None), len(blocks)


def image_sources(soup, base: str) -> list[str]:
    out = []
    for img in soup.find_all("img"):
        src = img.get("src") or ""
        if not src or src.startswith("data:"):
            continue
        absolute = absolutize(src, base)
        if absolute and absolute not in out:
            out.append(absolute)
    return out


class BaseExtractor:
    """Fetch, locate the main region, clean it and read metadata.

    Subclasses tune the selectors and add passes; `parse` builds the result
    from the acquired document.
    """

    name = "generic"
    container_selectors: tuple[str, ...] = ("article, main",)
    wait_selectors: tuple[str, ...] = ("article", "main", "time")

    def __init__(self, settings: Settings):
        self.settings = settings

    def prefers_rendered(self, url: str) -> bool:
        return should_use_rendered_fetch(host_of(url), self.settings)

    def loader_order(self, url: str) -> tuple[str, ...]:
        if self.prefers_rendered(url):
            return (RENDERED, FETCH)
        return (FETCH, RENDERED)

    def load(self, url: str, loader: str) -> Acquired:
        if loader == RENDERED:
            return load_via_rendered(url, self.settings, self.name, self.wait_selectors)
        return load_via_fetch(url, self.settings, self.name)

    def acquire(self, url: str, order: tuple[str, ...]) -> Acquired:
        status, last_loader, last_challenge = None, None, None
        for loader in order:
            got = self.load(url, loader)
            if got.html:
                return got
            status = got.status or status
            last_loader = loader
            if got.challenge:
                last_challenge = got.challenge
        return Acquired(status=status, loader=last_loader, challenge=last_challenge)

    def resolve_container(self, soup: BeautifulSoup) -> Optional[Tag]:
        return select_first(soup, self.container_selectors) or soup.body

    def challenge_result(self, url: str, got: Acquired) -> ExtractedArticle:
        return ExtractedArticle(
            url=url,
            challenge=got.challenge,
            debug={
                "extractor": self.name,
                "status": got.status,
                "html_length": 0,
                "loader": got.loader,
                "note": f"challenge:{got.challenge.type}",
            },
        )

    def debug_envelope(self, got: Acquired, **counts) -> dict:
        envelope = {
            "extractor": self.name,
            "status": got.status,
            "html_length": len(got.html or ""),
            "loader": got.loader,
        }
        envelope.update(counts)
        return envelope

    def extract(self, url: str) -> Optional[ExtractedArticle]:
        try:
            order = self.loader_order(url)
            got = self.acquire(url, order)
            if not got.html:
                return self.challenge_result(url, got) if got.challenge else None

            soup = BeautifulSoup(got.html, "html.parser")
            container = self.resolve_container(soup)
            if not has_text(container):
                alternates = tuple(loader for loader in order if loader != got.loader)
                if alternates:
                    retry = self.acquire(url, alternates)
                    if retry.challenge and not retry.html:
                        return self.challenge_result(url, retry)
                    if retry.html:
                        got = retry
                        soup = BeautifulSoup(got.html, "html.parser")
                        container = self.resolve_container(soup)
            if container is None:
                return None
            return self.parse(url, soup, container, got)
        except Exception as e:
            print(f"EXTRACT extractor={self.name} url={url} error={type(e).__name__}: {e}", file=sys.stderr)
            return None

    def parse(self, url: str, soup: BeautifulSoup, container: Tag, got: Acquired) -> Optional[ExtractedArticle]:
        raise NotImplementedError

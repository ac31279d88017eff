import sys
from typing import Optional

from playwright.sync_api import sync_playwright

from backend.config import Settings
from .extract import BROWSER_HEADERS, host_matches, host_of


def should_use_rendered_fetch(host: str, settings: Settings) -> bool:
    if settings.rendered_all:
        return True
    if not settings.rendered_hosts:
        return False
    return host_matches(host, settings.rendered_hosts)


def is_allowed_to_extract(url: str, settings: Settings) -> bool:
    if not settings.allowed_domains:
        return True
    host = host_of(url)
    if not host:
        return False
    return host_matches(host, settings.allowed_domains)


def fetch_rendered_html(
    url: str,
    timeout_ms: int = 30_000,
    wait_selectors: tuple[str, ...] = (),
    user_agent: str | None = None,
) -> tuple[Optional[str], Optional[int]]:
    """Load a page in headless Chromium and return (html, status).

    One browser per call; it is closed on every exit path. Failures return
    (None, None) so callers can fall back to a plain fetch.
    """
    try:
        with sync_playwright() as p:
            browser = p.chromium.launch(
                headless=True,
                args=[
                    "--no-sandbox",
                    "--disable-dev-shm-usage",
                    "--disable-gpu",
                ],
            )
            try:
                context = browser.new_context(
                    user_agent=user_agent or BROWSER_HEADERS["User-Agent"],
                    locale="en-US",
                    extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
                )
                page = context.new_page()
                response = page.goto(url, wait_until="networkidle", timeout=timeout_ms)
                for selector in wait_selectors:
                    try:
                        page.wait_for_selector(selector, timeout=3000)
                    except Exception:
                        continue
                # late client-side text replacement
                page.wait_for_timeout(800)
                html = page.content()
                status = response.status if response is not None else None
                return html, status
            finally:
                browser.close()
    except Exception as e:
        print(f"FETCH_RENDERED url={url} status=error err={type(e).__name__}", file=sys.stderr)
        return None, None

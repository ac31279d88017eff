import hashlib
import re
import sys
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
from urllib.parse import parse_qsl, urldefrag, urlencode, urljoin, urlparse

import requests
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter


FEED_USER_AGENT = "MyTennisNews/1.0 (+https://mytennisnews.com)"

HEADERS = {
    "User-Agent": FEED_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

FEED_FALLBACK_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; MyTennisNewsBot/1.0; +https://mytennisnews.com)",
    "Accept": "application/rss+xml, application/xml;q=0.9, text/xml;q=0.8,*/*;q=0.5",
}

DEFAULT_TIMEOUT = (10.0, 20.0)
RETRY_BACKOFFS = [0, 1, 3]
RETRY_STATUSES = {429, 500, 502, 503, 504}

TRACKING_KEYS = {
    "fbclid",
    "gclid",
    "yclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "ref",
    "ref_src",
    "cmp",
    "sf_rid",
}

_session = None


def _get_session() -> requests.Session:
    global _session
    if _session is not None:
        return _session

    session = requests.Session()
    retries = Retry(
        total=0,
        status_forcelist=[],
        allowed_methods=["GET", "HEAD"],
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    _session = session
    return _session


def fetch_url(
    url: str,
    headers: dict | None = None,
    timeout: tuple[float, float] = DEFAULT_TIMEOUT,
) -> tuple[Optional[str], Optional[str]]:
    """GET a page. Returns (text, None) on success or (None, err) otherwise."""
    session = _get_session()
    merged_headers = dict(headers or HEADERS)
    last_response = None
    try:
        for attempt, delay in enumerate(RETRY_BACKOFFS):
            if delay:
                time.sleep(delay)
            response = session.get(url, timeout=timeout, headers=merged_headers)
            last_response = response
            if response.status_code in RETRY_STATUSES and attempt < len(RETRY_BACKOFFS) - 1:
                retry_after = response.headers.get("retry-after")
                if retry_after:
                    try:
                        time.sleep(min(float(retry_after), 10.0))
                    except ValueError:
                        pass
                continue
            if response.status_code in (401, 403, 429):
                print(f"FETCH url={url} status={response.status_code} blocked=1", file=sys.stderr)
                return None, f"blocked:{response.status_code}"
            if response.status_code >= 400:
                return None, f"request_error:HTTP{response.status_code}"
            return response.text, None
        if last_response is not None:
            return None, f"request_error:HTTP{last_response.status_code}"
        return None, "request_error:unknown"
    except requests.exceptions.Timeout:
        print(f"FETCH url={url} status=timeout", file=sys.stderr)
        return None, "request_error:timeout"
    except requests.exceptions.RequestException as e:
        print(f"FETCH url={url} status=error err={type(e).__name__}", file=sys.stderr)
        return None, f"request_error:{type(e).__name__}"


def status_from_error(err: Optional[str]) -> Optional[int]:
    if not err:
        return 200
    m = re.search(r"(\d{3})$", err)
    return int(m.group(1)) if m else None


def normalize_url(u: str) -> str:
    """Canonical form used as the identity of an article.

    Lowercases scheme and host, drops the fragment, tracking parameters and
    trailing slashes, and sorts what is left of the query string.
    """
    clean = urldefrag((u or "").strip()).url
    p = urlparse(clean)
    scheme = (p.scheme or "https").lower()
    host = (p.netloc or "").lower()
    path = p.path or "/"
    if path != "/":
        path = path.rstrip("/") or "/"
    keep_params = []
    for key, value in parse_qsl(p.query, keep_blank_values=True):
        lowered = key.lower()
        if lowered.startswith("utm_") or lowered in TRACKING_KEYS:
            continue
        keep_params.append((key, value))
    keep_params.sort()
    query = urlencode(keep_params)
    if path == "/" and not query:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}{path}{'?' + query if query else ''}"


def hash_url(url: str) -> str:
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


def absolutize(url: Optional[str], base: str) -> Optional[str]:
    if not url:
        return None
    url = url.strip()
    if not url or url.startswith(("data:", "javascript:", "mailto:", "#")):
        return None
    if url.startswith("//"):
        return "https:" + url
    return urljoin(base, url)


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def host_matches(host: str, domains) -> bool:
    host = (host or "").lower()
    return any(host == d or host.endswith("." + d) for d in domains)


def slugify(text: str, max_len: int = 64) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_len]


def parse_ts(val: str | None) -> Optional[datetime]:
    """ISO-8601 or RFC 822 timestamp to an aware datetime, else None."""
    if not val:
        return None
    val = val.strip()
    try:
        dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(val)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_after(published_iso: str | None, since_iso: str | None) -> bool:
    """False only when both timestamps parse and published is at/before since."""
    since = parse_ts(since_iso)
    published = parse_ts(published_iso)
    if since is None or published is None:
        return True
    return published > since

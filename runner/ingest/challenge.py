import html as _html
import re
from typing import Optional

from .items import ChallengeDetection

SNIFF_CHARS = 20000

CLOUDFLARE_PATTERNS = [
    re.compile(r"<title>\s*Just a moment\s*\.\.\.", re.IGNORECASE),
    re.compile(r'<meta[^>]+http-equiv="refresh"[^>]+/cdn-cgi/', re.IGNORECASE),
    re.compile(r"window\._cf_chl_opt", re.IGNORECASE),
    re.compile(r"cf-turnstile", re.IGNORECASE),
    re.compile(r"Ray ID:\s*<code>", re.IGNORECASE),
    re.compile(r"Performance &\s*security by\s*<a[^>]+cloudflare", re.IGNORECASE),
]

GENERIC_BLOCK_PATTERNS = [
    re.compile(r"Access Denied", re.IGNORECASE),
    re.compile(r"Reference ID", re.IGNORECASE),
    re.compile(r"Request denied by", re.IGNORECASE),
]

_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def _first_match(snippet: str, patterns) -> Optional[str]:
    for pattern in patterns:
        if pattern.search(snippet):
            return pattern.pattern
    return None


def strip_tags(markup: str) -> str:
    text = _SCRIPT_RE.sub("", markup)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    text = _html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def detect_challenge(html: Optional[str]) -> Optional[ChallengeDetection]:
    """Classify a fetched payload as an anti-bot interstitial.

    Signatures are checked in order and the first hit wins: CDN challenge
    markup, generic block phrases, then co-occurring phrases in the
    tag-stripped text. Returns None when the page looks genuine.
    """
    if not html:
        return None
    snippet = html[:SNIFF_CHARS]

    indicator = _first_match(snippet, CLOUDFLARE_PATTERNS)
    if indicator:
        return ChallengeDetection(
            type="cloudflare",
            indicator=indicator,
            reason="cloudflare-challenge",
            confidence=0.95,
        )

    indicator = _first_match(snippet, GENERIC_BLOCK_PATTERNS)
    if indicator:
        return ChallengeDetection(
            type="bot-block",
            indicator=indicator,
            reason="generic-block",
            confidence=0.7,
        )

    text = strip_tags(snippet).lower()
    if "verify you are human" in text and "cloudflare" in text:
        return ChallengeDetection(
            type="cloudflare",
            indicator="text-verify-human",
            reason="cloudflare-challenge-text",
            confidence=0.9,
        )
    if "access denied" in text and "request id" in text:
        return ChallengeDetection(
            type="akamai",
            indicator="text-access-denied",
            reason="akamai-access-denied",
            confidence=0.6,
        )
    return None


def has_challenge_artifact(html: Optional[str]) -> bool:
    return detect_challenge(html) is not None

import re
from typing import Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

DIGIT_RE = re.compile(r"\d")
SCORE_LIST_RE = re.compile(
    r"\b\d{1,4}(?:\s*[–—-]\s*\d{1,4})(?:\s*,\s*\d{1,4}(?:\s*[–—-]\s*\d{1,4}))*\b"
)
NUMERIC_TOKEN_RE = re.compile(r"([+\-−]?)(\d{1,4}(?:[.,]\d{1,3})?)(st|nd|rd|th)?", re.IGNORECASE)
HINT_ATTR_RE = re.compile(r"^(data-|aria-)|^(title|alt|content)$")

_EMPTY_PAREN_PATTERNS = [
    re.compile(r"\(\s*\)"),
    re.compile(r"\(\s*,\s*[^)]*\)"),
    re.compile(r"\(\s*[-–—]\s*[-–—]\s*[-–—]\s*\)"),
]
_SHELL_PAREN_RE = re.compile(r"\(\s*([+\-−])?\s*(st|nd|rd|th)?\s*\)", re.IGNORECASE)
_NO_RE = re.compile(r"\bNo\.(?:\s*[-–—])?(?=\s|[),.]|$)")
_SEED_RANK_RE = re.compile(r"\b(Seed|Rank|seed|rank)\b\s*[-–—]?(?=\s|[),.]|$)")
_BRACKET_RE = re.compile(r"\[\s*[-–—]?\s*\]")
_SKIP_PARENTS = {"script", "style", "noscript", "template", "code", "pre"}
_BLOCK_TAGS = [
    "p", "div", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6",
    "li", "blockquote", "figure", "figcaption", "table", "tr", "br",
]


def has_digits(value: Optional[str]) -> bool:
    return bool(value and DIGIT_RE.search(value))


def _own_hint(el: Tag) -> Optional[str]:
    for name, value in el.attrs.items():
        if not HINT_ATTR_RE.search(name):
            continue
        if isinstance(value, list):
            value = " ".join(value)
        if has_digits(value):
            return str(value)
    return None


def numeric_hint(el: Optional[Tag], depth: int = 2) -> Optional[str]:
    """Numeric attribute hint on the element, else on its parent."""
    current = el
    for _ in range(depth):
        if current is None or not isinstance(current, Tag):
            return None
        hint = _own_hint(current)
        if hint:
            return hint
        current = current.parent
    return None


def pick_numeric_token(hint: str) -> Optional[str]:
    score = SCORE_LIST_RE.search(hint)
    if score:
        return score.group(0)
    m = NUMERIC_TOKEN_RE.search(hint)
    if not m:
        return None
    return "".join(part for part in m.groups() if part)


def fill_empty_parens(text: str, hint: str) -> str:
    out = text
    for pattern in _EMPTY_PAREN_PATTERNS:
        if pattern.search(out):
            out = pattern.sub(f"({hint})", out)
    return out


def _fill_shell_parens(text: str, token: str) -> str:
    digits = NUMERIC_TOKEN_RE.search(token)
    core = digits.group(2) if digits else token

    def _repl(m):
        sign, suffix = m.group(1) or "", m.group(2) or ""
        if not sign and not suffix:
            return f"({token})"
        return f"({sign}{core}{suffix})"

    return _SHELL_PAREN_RE.sub(_repl, text)


def repair_text(original: str, hint: Optional[str], global_score: Optional[str] = None) -> str:
    if not original.strip() or has_digits(original):
        return original
    updated = original
    if hint and has_digits(hint):
        token = pick_numeric_token(hint) or hint
        updated = _fill_shell_parens(updated, token)
        if updated == original:
            updated = fill_empty_parens(updated, token)
        if updated == original:
            m_int = re.search(r"\d{1,4}", token)
            integer = m_int.group(0) if m_int else ""
            if integer:
                if _NO_RE.search(updated):
                    updated = _NO_RE.sub(f"No. {integer}", updated)
                elif _SEED_RANK_RE.search(updated):
                    updated = _SEED_RANK_RE.sub(lambda m: f"{m.group(1)} {integer}", updated)
                elif _BRACKET_RE.search(updated):
                    updated = _BRACKET_RE.sub(f"[{integer}]", updated)
    elif global_score:
        r = re.sub(r"\(\s*[-–—]?\s*\)", f"({global_score})", updated)
        r = re.sub(r"(?:^|\s)(?:[-–—]\s*,\s*)+[-–—](?:\s|$)", f" {global_score} ", r)
        r = re.sub(r"(?:^|\s)(?:[-–—]\s+){2,}[-–—](?=\s|$)", f" {global_score} ", r)
        updated = r
    return updated


_HYDRATE_TAGS = ["span", "strong", "em", "b", "i", "sup", "sub", "td"]
_PUNCT_ONLY_RE = re.compile(r"^[\s,.;:–—\[\]{}|/*+\-−]*$")
_ORDINAL_ONLY_RE = re.compile(r"^(st|nd|rd|th)$", re.IGNORECASE)
_DATA_ATTR_RE = re.compile(r"^(data-|aria-label$|title$)")


def _data_hint(el: Tag) -> Optional[str]:
    for name, value in el.attrs.items():
        if not _DATA_ATTR_RE.search(name):
            continue
        if isinstance(value, list):
            value = " ".join(value)
        token = pick_numeric_token(str(value)) if has_digits(value) else None
        if token:
            return token
    return None


def hydrate_empty_elements(root: Tag) -> int:
    """Fill leaf elements left empty (or holding only a sign) by client scripts."""
    filled = 0
    for el in list(root.find_all(_HYDRATE_TAGS)):
        if el.find(True) is not None:
            continue
        current = el.get_text().strip()
        ordinal = _ORDINAL_ONLY_RE.match(current)
        if not ordinal and not _PUNCT_ONLY_RE.match(current):
            continue
        token = _data_hint(el)
        if not token:
            continue
        if ordinal:
            el.string = f"{token}{ordinal.group(1).lower()}"
        elif "+" in current:
            el.string = f"+{token}"
        elif "−" in current or current == "-":
            el.string = f"-{token}"
        else:
            el.string = token
        filled += 1
    return filled


def _global_score(soup: BeautifulSoup, root: Tag) -> Optional[str]:
    title = soup.find("title")
    og = soup.find("meta", attrs={"property": "og:title"})
    candidates = [
        title.get_text() if title else "",
        og.get("content", "") if og else "",
        root.get_text(" "),
    ]
    for candidate in candidates:
        m = SCORE_LIST_RE.search(candidate or "")
        if m:
            return m.group(0)
    return None


def preserve_numbers_in_html(html: str) -> str:
    """Recover scores, seeds and ranks that a site renders client-side.

    Text shells like "()" or "No." inherit a numeric token from the nearest
    data-*/aria-*/title/alt/content attribute. Best effort only.
    """
    if not html:
        return html
    soup = BeautifulSoup(f'<div id="__root">{html}</div>', "html.parser")
    root = soup.find("div", id="__root")
    if root is None:
        return html
    hydrate_empty_elements(root)
    global_score = _global_score(soup, root)
    for node in list(root.find_all(string=True)):
        if isinstance(node, Comment):
            continue
        parent = node.parent
        if parent is None or parent.name in _SKIP_PARENTS:
            continue
        original = str(node)
        updated = repair_text(original, numeric_hint(parent), global_score)
        if updated != original:
            node.replace_with(NavigableString(updated))
    return root.decode_contents()


def html_to_plain_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(f'<div id="__root">{html}</div>', "html.parser")
    root = soup.find("div", id="__root")
    for tag in root.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    for tag in root.find_all(_BLOCK_TAGS):
        tag.append(NavigableString("\n\n"))
    text = root.get_text("")
    text = re.sub(r"[ \t\u00a0]+", " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()

"""Cleanup passes shared by the site extractors.

Each pass takes a tree and returns a tree; `run_passes` hands every pass its
own copy.
"""
import re
from typing import Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from ..numbers import preserve_numbers_in_html

SPONSOR_RE = re.compile(r"lexus|infosys|emirates|rolex", re.IGNORECASE)
EMOJI_RE = re.compile("[\U0001F300-\U0001FAFF\u2600-\u27BF\u200d\ufe0f\u20e3]")
QUOTE_RE = re.compile(r"^([“\"'])(.+)([”\"'])$", re.DOTALL)
HANDLE_RE = re.compile(r"@\w{2,}")
PIC_RE = re.compile(r"pic\.twitter\.com|t\.co/", re.IGNORECASE)
HASHTAG_RE = re.compile(r"#[a-z0-9_]+", re.IGNORECASE)


def is_quote_paragraph(text: str) -> bool:
    trimmed = text.strip()
    return 8 <= len(trimmed) < 420 and bool(QUOTE_RE.match(trimmed))


def is_social_paragraph(text: str) -> bool:
    trimmed = text.strip()
    if len(trimmed) < 12:
        return False
    has_pic = bool(PIC_RE.search(trimmed))
    if has_pic:
        return True
    return bool(HANDLE_RE.search(trimmed) and HASHTAG_RE.search(trimmed))


def clean_paragraph_text(text: str) -> str:
    text = SPONSOR_RE.sub("", text)
    text = EMOJI_RE.sub("", text)
    return text.replace("“", '"').replace("”", '"').replace("‘", "'").replace("’", "'")


def closest(el: Tag, names, tree: Tag) -> Optional[Tag]:
    """Nearest ancestor named in names, never the pass root itself."""
    for parent in el.parents:
        if parent is tree:
            return None
        if parent.name in names:
            return parent
    return None


def drop_with_wrapper(el: Tag, tree: Tag) -> None:
    wrapper = closest(el, ("figure", "picture", "div", "p"), tree)
    if wrapper is not None and len(wrapper.find_all("img")) <= 1:
        wrapper.decompose()
    else:
        el.decompose()


def repair_numbers(tree: Tag) -> Tag:
    repaired = preserve_numbers_in_html(tree.decode_contents())
    fresh = BeautifulSoup(f"<div>{repaired}</div>", "html.parser")
    return fresh.div


def classify_paragraphs(tree: Tag) -> Tag:
    factory = BeautifulSoup("", "html.parser")
    for p in list(tree.find_all("p")):
        for node in list(p.find_all(string=True)):
            cleaned = clean_paragraph_text(str(node))
            if cleaned != str(node):
                node.replace_with(NavigableString(cleaned))
        text = re.sub(r"\s+", " ", p.get_text()).strip()
        if not text and p.find(["img", "iframe", "a"]) is None:
            p.decompose()
            continue
        if is_quote_paragraph(text):
            children = [c for c in p.contents if not (isinstance(c, NavigableString) and not c.strip())]
            if children and all(isinstance(c, Tag) and c.name in ("em", "i") for c in children):
                for c in children:
                    c.unwrap()
            wrapper = factory.new_tag("div", attrs={"class": "ext-quote"})
            p.name = "blockquote"
            p.attrs = {}
            p.wrap(wrapper)
        elif is_social_paragraph(text):
            wrapper = factory.new_tag("div", attrs={"class": "ext-social"})
            p.wrap(wrapper)
    return tree



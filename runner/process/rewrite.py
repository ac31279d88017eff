import html as html_lib
import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from backend.config import Settings
from .finalize import DraftVariant, finalize_draft, scrub_body
from .prompt_context import LinkReference, MediaReference

NUMERIC_TOKEN_RE = re.compile(r"\b\d{1,2}[-–]\d{1,2}(?:\(\d{1,2}\))?(?!\d)|\b\d{1,4}(?:[,.]\d{1,3})?\b")
MAX_NUMERIC_TOKENS = 60
MAX_EXPANSIONS = 3
TOUR_SOURCE_RE = re.compile(r"\b(atp|wta)\b", re.IGNORECASE)
TAG_RE = re.compile(r"<[^>]+>")

SYSTEM_PROMPT = """You are a tennis feature writer and editor. Your copy reads like a courtside dispatch that joins tactics with atmosphere. Refresh the language, paraphrase faithfully and verify details; if uncertain, acknowledge the gap. The tone is human and confident without drifting into purple prose.

Direction conventions: prefer "inside-in", "inside-out", "crosscourt" and "down-the-line" for ball flights. Use "slice" or "underspin" (not "slider"), and describe patterns as "1-2" or "one-two" (never "serve+1").

Structure rules:
- Use two or three <h2> subheads after the opener; each is 4 to 8 words in sentence case.
- Keep paragraphs compact and grouped beneath the relevant subhead; no checklists.
- Quotes taken from the source use <div class="ext-quote"><blockquote>...</blockquote></div> and appear after paragraph 2.
- Place provided embed tokens on their own paragraph. Never wrap commentary in <div class="ext-social">.
- Never fabricate quotes or social posts. Do not add trailing citation blocks.
- Limit the exact phrase "according to" to a single use.
- Never repeat the same player's full name twice in a row.
- Strip sponsor fluff, emojis and hashtags, avoid ALL-CAPS, and never print bare URLs."""

VARIANT_HINTS = [
    "Highlight the psychological arc and season-long pressure narrative, weaving in key quotes and schedule context.",
    "Focus on tactical adjustments, matchup specifics, rankings math and surface considerations that shape the run.",
    "Spotlight comparable peers, analytics and historical precedents that frame the player's trajectory.",
]


@dataclass
class RewriteInput:
    title: str
    excerpt: Optional[str] = None
    body_text: Optional[str] = None
    context: Optional[str] = None
    links: list[LinkReference] = field(default_factory=list)
    media: list[MediaReference] = field(default_factory=list)


def resolve_variant_target_count(source_name: str | None, settings: Settings) -> int:
    if source_name and TOUR_SOURCE_RE.search(source_name):
        return settings.ai_variants_tour
    return settings.ai_variants_default


def numeric_tokens(text: str | None) -> list[str]:
    tokens = []
    for tok in NUMERIC_TOKEN_RE.findall(text or ""):
        if tok not in tokens:
            tokens.append(tok)
    return tokens[:MAX_NUMERIC_TOKENS]


def missing_numeric_tokens(body: str | None, tokens: list[str]) -> list[str]:
    text = TAG_RE.sub(" ", body or "")
    return [tok for tok in tokens if tok not in text]


def parse_json_response(raw: str | None) -> dict:
    """JSON object from a model reply; slices first "{" to last "}" when wrapped."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        try:
            parsed = json.loads(raw[start:end + 1])
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
    return {}


def fallback_body(body_text: str | None, limit: int = 12) -> str:
    if not body_text:
        return ""
    paras = [seg.strip() for seg in re.split(r"\n{2,}", body_text) if seg.strip()][:limit]
    return "\n".join(f"<p>{html_lib.escape(seg, quote=False)}</p>" for seg in paras)


def length_target(inp: RewriteInput, final: bool) -> int:
    base = len(inp.body_text or inp.excerpt or inp.title or "")
    if final:
        return max(base + 200, 800)
    return max(base + 150, 700)


def length_floor(target: int) -> int:
    return max(400, int(target * 0.6))


def link_guidance(links: list[LinkReference]) -> Optional[str]:
    if not links:
        return None
    lines = ["Reference subjects (mention each once with this wording, then rely on pronouns or descriptors):"]
    for idx, ref in enumerate(links[:80], start=1):
        ctx = f" | context: {ref.context}" if ref.context else ""
        lines.append(f"  {ref.order or idx}. {' '.join(ref.text.split())} -> {ref.url}{ctx}")
    lines.append("Link the subject inline at first mention using the exact anchor text; do not print the raw URL.")
    return "\n".join(lines)


def media_guidance(media: list[MediaReference]) -> Optional[str]:
    if not media:
        return None
    lines = [
        "Media assets (use each token exactly once, unmodified, on its own <p> line; "
        "do not describe or paraphrase the asset):"
    ]
    for idx, ref in enumerate(media[:80], start=1):
        desc = f" - {ref.description}" if ref.description else ""
        cap = f" (caption: {ref.caption})" if ref.caption else ""
        ctx = f" | context: {ref.context}" if ref.context else ""
        lines.append(f"  {idx}. {ref.token} ({ref.type}){desc}{cap}{ctx}")
    return "\n".join(lines)


def _draft_from(parsed: dict, inp: RewriteInput) -> DraftVariant:
    title = parsed.get("title")
    excerpt = parsed.get("excerpt")
    body = parsed.get("body")
    return DraftVariant(
        title=title.strip() if isinstance(title, str) and title.strip() else inp.title,
        excerpt=excerpt.strip() if isinstance(excerpt, str) and excerpt.strip() else inp.excerpt,
        body=body if isinstance(body, str) else "",
    )


class RewritePipeline:
    """N rewritten variants, then one synthesized final draft.

    Link and media references plus the numeric tokens of the source are put
    in every prompt; tokens come back verbatim and are resolved by
    ``finalize_draft``.
    """

    def __init__(self, client, settings: Settings):
        self.client = client
        self.settings = settings

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close:
            close()

    @property
    def provider(self) -> str:
        return getattr(self.client, "name", "llm")

    @property
    def model(self) -> str:
        return getattr(self.client, "model", self.settings.ai_model)

    def _source_segments(self, inp: RewriteInput) -> list[str]:
        tokens = numeric_tokens(inp.body_text)
        today = datetime.now(timezone.utc).strftime("%B %d, %Y")
        segments = [
            f"Today: {today}",
            f"Source title: {inp.title}",
            f"Source excerpt/dek:\n{inp.excerpt}" if inp.excerpt else None,
            f"Source body (cleaned):\n{inp.body_text}" if inp.body_text else None,
            f"Context: {inp.context}" if inp.context else None,
            link_guidance(inp.links),
            media_guidance(inp.media),
            f"Preserve numeric values exactly: {', '.join(tokens)}" if tokens else None,
            "Structure alignment: follow the source ordering of key ideas, quotes and embeds; "
            "do not relocate tokens away from their referenced paragraphs.",
        ]
        return [s for s in segments if s]

    def _requirements(self, target: int) -> list[str]:
        return [
            f"Body requirements:\n- Minimum length {target} characters.\n"
            "- Use 2-3 <h2> subheads after the opener.\n"
            "- Keep the opening paragraph free of attributions.",
            "Link formatting: never output bare URLs, markdown links, or parentheses containing URLs.",
            "Media handling: every media token (e.g. [[IMG:1]]) must appear exactly once, unchanged, "
            "alone in its own <p>. Never wrap a token in a link or other markup.",
            "Return only JSON (no Markdown fences or commentary).",
        ]

    def _call(self, prompt: str, temperature: float, label: str) -> str:
        return self.client.complete(SYSTEM_PROMPT, prompt, temperature, label)

    def generate_variants(self, inp: RewriteInput, count: int) -> list[DraftVariant]:
        """``count`` raw variants from one call; media tokens left in place."""
        count = max(1, count)
        target = length_target(inp, final=False)
        hints = [VARIANT_HINTS[i] if i < len(VARIANT_HINTS) else f"Complementary perspective #{i + 1}." for i in range(count)]
        prompt = "\n\n".join(
            self._source_segments(inp)
            + [
                f"Task: Draft {count} independent alternate-angle articles as JSON "
                '{"variants": [{"title": string, "excerpt": string, "body": string}, ...]} '
                f"with exactly {count} entries. Each offers a distinct framing while staying accurate.",
                "Variant focus, in order:\n" + "\n".join(f"  {i + 1}. {h}" for i, h in enumerate(hints)),
            ]
            + self._requirements(target)
        )
        raw = self._call(prompt, 0.6, "article:variants")
        parsed = parse_json_response(raw)
        entries = parsed.get("variants") if isinstance(parsed.get("variants"), list) else None
        if entries is None and parsed.get("body"):
            entries = [parsed]
        if entries is None and raw and "{" not in raw:
            entries = [{"body": raw}]

        variants = []
        for entry in (entries or [])[:count]:
            if not isinstance(entry, dict):
                continue
            draft = _draft_from(entry, inp)
            if not draft.body.strip():
                continue
            draft.body = scrub_body(draft.body)
            variants.append(self.expand(draft, inp, target, label=f"article:variant#{len(variants) + 1}"))

        if not variants:
            body = fallback_body(inp.body_text)
            print(f"AI_FALLBACK label=article:variants reason=empty_response body_len={len(body)}", file=sys.stderr)
            variants.append(DraftVariant(title=inp.title, excerpt=inp.excerpt, body=body))
        return variants

    def synthesize_final(self, variants: list[DraftVariant], inp: RewriteInput) -> dict:
        """Merge the variants into one finalized draft with provider metadata."""
        target = length_target(inp, final=True)
        summaries = [
            {"index": i + 1, "title": v.title, "excerpt": v.excerpt, "body": v.body}
            for i, v in enumerate(variants)
        ]
        prompt = "\n\n".join(
            self._source_segments(inp)
            + [
                "Earlier drafts to integrate:\n" + json.dumps(summaries, ensure_ascii=False)[:15000],
                "Task: Synthesize the strongest final article as JSON "
                '{"title": string, "excerpt": string, "body": string}: merge the best insights, '
                "remove duplicate phrasing and resolve tone conflicts. Keep every media token and "
                "numeric value from the drafts unchanged.",
                "Final polish: end with a forward-looking takeaway. Do not mention the drafting process.",
            ]
            + self._requirements(target)
        )
        raw = self._call(prompt, 0.5, "article:final")
        parsed = parse_json_response(raw)
        draft = _draft_from(parsed, inp)
        if not draft.body.strip() and raw and "{" not in raw:
            draft.body = raw
        if not draft.body.strip():
            best = max(variants, key=lambda v: len(v.body or ""), default=None)
            draft.body = best.body if best and best.body else fallback_body(inp.body_text)
        draft.body = scrub_body(draft.body)
        draft = self.expand(draft, inp, target, label="article:final")
        final = finalize_draft(draft, inp.links, inp.media)

        missing = missing_numeric_tokens(final.body, numeric_tokens(inp.body_text))
        if missing:
            print(f"AI_NUMERIC_MISSING tokens={','.join(missing[:10])}", file=sys.stderr)
        return {
            "title": final.title,
            "excerpt": final.excerpt,
            "body": final.body,
            "provider": self.provider,
            "model": self.model,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    def expand(self, draft: DraftVariant, inp: RewriteInput, target: int, label: str) -> DraftVariant:
        """Up to three expand-and-deepen calls while the body is under the floor."""
        floor = length_floor(target)
        attempts = 0
        while len(draft.body.strip()) < floor and attempts < MAX_EXPANSIONS:
            attempts += 1
            before = len(draft.body.strip())
            prompt = "\n\n".join(
                self._source_segments(inp)
                + [
                    "Current draft:\n"
                    + json.dumps({"title": draft.title, "excerpt": draft.excerpt, "body": draft.body}, ensure_ascii=False),
                    f"Task: Expand and deepen this draft to at least {target} characters. Add tactical "
                    "detail and context from the source only. Keep every media token, link subject and "
                    'numeric value unchanged. Respond as JSON {"title": string, "excerpt": string, "body": string}.',
                ]
                + self._requirements(target)
            )
            raw = self._call(prompt, 0.45, f"{label}:expand")
            expanded = _draft_from(parse_json_response(raw), inp)
            after = len(expanded.body.strip())
            print(f"AI_EXPAND label={label} attempt={attempts} before={before} after={after} floor={floor}")
            if after > before:
                draft = DraftVariant(
                    title=expanded.title or draft.title,
                    excerpt=expanded.excerpt or draft.excerpt,
                    body=scrub_body(expanded.body),
                )
        return draft

import secrets
import sys
import time
from dataclasses import dataclass, field
from typing import Optional

from backend.config import Settings
from backend.db import SOURCES, TAGS, ContentRepository, draft_id
from backend.ledger import IngestLedger
from .extract import hash_url, normalize_url, slugify, utc_now_iso
from .items import NormalizedItem, PendingFeedState
from .numbers import html_to_plain_text, preserve_numbers_in_html
from .rss_feeds import AtpRssProvider, RssProvider, TaggedRssProvider
from .wta_news import WtaNewsProvider

DISCLAIMER = "Summary based on external source. Always credit and respect the canonical link."
MIN_BODY_TEXT = 16


@dataclass(frozen=True)
class FeedConfig:
    type: str  # rss | rss-tags | atp-rss | wta-news
    name: str
    url: str

    @property
    def source_key(self) -> str:
        return f"{self.type}:{self.url}"


FEED_PRESETS = {
    "espn": FeedConfig("rss", "ESPN Tennis", "https://www.espn.com/espn/rss/tennis/news"),
    "atp": FeedConfig("atp-rss", "ATP Tour", "https://www.atptour.com/en/media/rss-feed/xml-feed"),
    "wta": FeedConfig("wta-news", "WTA Tennis", "https://www.wtatennis.com/news"),
}


@dataclass
class ProcessResult:
    created: bool = False
    refreshed: bool = False
    skipped: bool = False
    blocked: bool = False
    reason: Optional[str] = None


@dataclass
class FeedIngestReport:
    feed: str
    items: int = 0
    created: int = 0
    refreshed: int = 0
    skipped: int = 0
    blocked: int = 0

    def to_dict(self) -> dict:
        return {
            "feed": self.feed,
            "items": self.items,
            "created": self.created,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "blocked": self.blocked,
        }


@dataclass
class IngestResult:
    reports: list[FeedIngestReport] = field(default_factory=list)
    timed_out: bool = False
    pending_feeds: list[PendingFeedState] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def totals(self) -> dict:
        keys = ("created", "refreshed", "skipped", "blocked")
        return {k: sum(getattr(r, k) for r in self.reports) for k in keys}


def feeds_from_presets(presets) -> list[FeedConfig]:
    feeds = []
    for key in presets:
        preset = FEED_PRESETS.get((key or "").strip().lower())
        if preset is None:
            print(f"INGEST_FEED preset={key} unknown=1 skipped=1", file=sys.stderr)
            continue
        if preset not in feeds:
            feeds.append(preset)
    return feeds


def provider_for(config: FeedConfig, settings: Settings, extractor=None):
    if config.type == "rss-tags":
        return TaggedRssProvider(config.name, config.url, settings, extractor=extractor)
    if config.type == "atp-rss":
        return AtpRssProvider(config.name, config.url, settings, extractor=extractor)
    if config.type == "wta-news":
        return WtaNewsProvider(settings, name=config.name, source_url=config.url, extractor=extractor)
    return RssProvider(config.name, config.url, settings, extractor=extractor)


def tag_slug(name: str) -> str:
    return slugify(name, max_len=48)


def article_slug(title: str, url_hash: str) -> str:
    return f"{slugify(title, max_len=64)}-{url_hash[:6]}"


def upsert_source(repo: ContentRepository, name: str, feed_url: str) -> str:
    source_id = f"source-{hash_url(feed_url)[:12]}"
    repo.create_if_absent(
        {"id": source_id, "type": "source", "name": name, "url": feed_url, "feed_url": feed_url},
        table=SOURCES,
    )
    return source_id


def upsert_tags(repo: ContentRepository, names: list[str]) -> list[str]:
    ids = []
    for raw in names or []:
        name = (raw or "").strip()
        slug = tag_slug(name)
        if not slug:
            continue
        tag_id = f"tag-{slug}"
        repo.create_if_absent({"id": tag_id, "type": "tag", "name": name, "slug": slug}, table=TAGS)
        if tag_id not in ids:
            ids.append(tag_id)
    return ids


def to_blocks(text: str) -> list[dict]:
    blocks = []
    for para in text.split("\n\n"):
        para = para.strip()
        if para:
            blocks.append({"key": secrets.token_hex(8), "style": "normal", "text": para})
    return blocks


def compose_body_blocks(item: NormalizedItem, settings: Settings) -> Optional[list[dict]]:
    mode = settings.ingest_write_body
    if mode not in ("summary", "full") or not item.body_text:
        return None
    base = item.body_text if mode == "full" else item.body_text[: settings.ingest_body_max_chars]
    composed = "\n".join([DISCLAIMER, "", base, "", f"Read more: {item.url}"])
    return to_blocks(composed)


def _clamp_excerpt(item: NormalizedItem, settings: Settings) -> Optional[str]:
    if not item.excerpt:
        return None
    return item.excerpt[: settings.excerpt_max_chars]


def _mutable_fields(item: NormalizedItem, settings: Settings, tag_ids: list[str]) -> dict:
    fields = {
        "title": item.title,
        "excerpt": _clamp_excerpt(item, settings),
        "authors": item.authors or None,
        "timestamp_text": item.timestamp_text or None,
    }
    if tag_ids:
        fields["tags"] = tag_ids
    body = compose_body_blocks(item, settings)
    if body:
        fields["body"] = body
    if item.body_html:
        fields["external_html"] = item.body_html
    if settings.ingest_write_body == "full":
        fields["lead_image_url"] = item.image or None
        fields["media_credits"] = item.credits or None
    return fields


def create_draft(repo: ContentRepository, item: NormalizedItem, source_id: str, settings: Settings) -> bool:
    url_hash = hash_url(item.url)
    doc = {
        "id": draft_id(url_hash),
        "type": "article",
        "slug": article_slug(item.title, url_hash),
        "canonical_url": item.url,
        "source_id": source_id,
        "status": "draft",
        "published_at": item.published_at or utc_now_iso(),
    }
    doc.update(_mutable_fields(item, settings, upsert_tags(repo, item.tags)))
    return repo.create_if_absent(doc)


def update_draft(repo: ContentRepository, item: NormalizedItem, source_id: str, settings: Settings) -> None:
    """Refresh content fields of a draft; status and publish date stay as they are."""
    url_hash = hash_url(item.url)
    doc_id = draft_id(url_hash)
    repo.create_if_absent(
        {
            "id": doc_id,
            "type": "article",
            "title": item.title,
            "slug": article_slug(item.title, url_hash),
            "canonical_url": item.url,
            "source_id": source_id,
            "status": "draft",
            "published_at": item.published_at or utc_now_iso(),
        }
    )
    fields = _mutable_fields(item, settings, upsert_tags(repo, item.tags))
    fields["source_id"] = source_id
    repo.patch(doc_id, fields)


def process_item(
    item: NormalizedItem,
    source_key: str,
    source_id: str,
    repo: ContentRepository,
    ledger: IngestLedger,
    settings: Settings,
    published_urls: set[str] | None = None,
) -> ProcessResult:
    if item.challenge:
        if settings.ingest_debug:
            print(
                f"INGEST_ITEM url={item.url} challenge={item.challenge.type} "
                f"indicator={item.challenge.indicator!r} skipped=1"
            )
        return ProcessResult(skipped=True, blocked=True, reason="challenge")

    item.url = normalize_url(item.url)
    if item.body_html:
        item.body_html = preserve_numbers_in_html(item.body_html)
        if not item.body_text or len(item.body_text) < MIN_BODY_TEXT:
            item.body_text = html_to_plain_text(item.body_html)

    if published_urls is not None and item.url in published_urls:
        return ProcessResult(skipped=True, reason="published")

    key = hash_url(item.url)
    payload = item.to_payload()
    existing = ledger.find(source_key, key)
    if existing:
        if settings.ingest_refresh:
            ledger.update(existing["id"], payload, payload, status="refreshed")
            update_draft(repo, item, source_id, settings)
            return ProcessResult(refreshed=True)
        return ProcessResult(skipped=True, reason="seen")

    ledger.insert(source_key, key, payload, payload, status="new")
    if not create_draft(repo, item, source_id, settings):
        return ProcessResult(skipped=True, reason="draft-exists")
    return ProcessResult(created=True)


def _debug_item(feed: FeedConfig, item: NormalizedItem) -> None:
    why = []
    if not item.body_text:
        why.append("no body_text")
    if not item.body_html:
        why.append("no body_html")
    if not item.images:
        why.append("no images")
    if not item.videos:
        why.append("no videos")
    print(
        f"INGEST_ITEM feed={feed.name} url={item.url} body_text={int(bool(item.body_text))} "
        f"body_html={int(bool(item.body_html))} images={len(item.images)} "
        f"videos={len(item.videos)} why={','.join(why) or 'ok'}"
    )


def _pending_for(feed: FeedConfig, items: list[NormalizedItem] | None, index: int) -> PendingFeedState:
    if items is None:
        return PendingFeedState(feed=feed.name)
    return PendingFeedState(
        feed=feed.name,
        processed_items=index,
        total_items=len(items),
        remaining_items=len(items) - index,
        next_item_url=items[index].url if index < len(items) else None,
        last_processed_url=items[index - 1].url if index > 0 else None,
    )


def ingest_feeds(
    feeds: list[FeedConfig],
    repo: ContentRepository,
    ledger: IngestLedger,
    settings: Settings,
    budget=None,
    since_iso: str | None = None,
    extractor=None,
) -> IngestResult:
    """Run every feed through the ledger and draft creation.

    ``budget`` is checked before each feed and each item; once it expires the
    current feed and every feed after it are reported as pending.
    """
    started = time.monotonic()
    result = IngestResult()
    published_urls = repo.list_published_canonical_urls()

    for feed_index, feed in enumerate(feeds):
        if budget is not None and budget.expired():
            result.timed_out = True
            result.pending_feeds.extend(_pending_for(f, None, 0) for f in feeds[feed_index:])
            break

        provider = provider_for(feed, settings, extractor=extractor)
        try:
            items = provider.fetch_new_items(since_iso)
        except Exception as e:
            print(f"INGEST_FEED feed={feed.name} error={type(e).__name__}: {str(e)[:200]}", file=sys.stderr)
            items = []

        report = FeedIngestReport(feed=feed.name, items=len(items))
        result.reports.append(report)
        if not items:
            print(f"INGEST_FEED feed={feed.name} items=0")
            continue

        source_id = upsert_source(repo, feed.name, feed.url)
        for index, item in enumerate(items):
            if budget is not None and budget.expired():
                result.timed_out = True
                result.pending_feeds.append(_pending_for(feed, items, index))
                result.pending_feeds.extend(_pending_for(f, None, 0) for f in feeds[feed_index + 1:])
                break

            if item.challenge:
                report.blocked += 1
                print(
                    f"CHALLENGE feed={feed.name} url={item.url} type={item.challenge.type} "
                    f"indicator={item.challenge.indicator!r}",
                    file=sys.stderr,
                )
                continue
            if settings.ingest_debug:
                _debug_item(feed, item)

            res = process_item(item, feed.source_key, source_id, repo, ledger, settings, published_urls)
            if res.blocked:
                report.blocked += 1
            elif res.refreshed:
                report.refreshed += 1
            elif res.skipped:
                report.skipped += 1
            else:
                report.created += 1

        print(
            f"INGEST_FEED feed={feed.name} items={report.items} created={report.created} "
            f"refreshed={report.refreshed} skipped={report.skipped} blocked={report.blocked}"
        )
        if result.timed_out:
            break

    result.elapsed_ms = int((time.monotonic() - started) * 1000)
    for pending in result.pending_feeds:
        print(
            f"INGEST_PENDING feed={pending.feed} processed={pending.processed_items} "
            f"remaining={pending.remaining_items} next={pending.next_item_url}",
            file=sys.stderr,
        )
    totals = result.totals
    print(
        f"INGEST_DONE created={totals['created']} refreshed={totals['refreshed']} "
        f"skipped={totals['skipped']} blocked={totals['blocked']} timed_out={int(result.timed_out)}"
    )
    return result

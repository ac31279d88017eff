import sys
from dataclasses import dataclass, field
from typing import Optional

from backend.config import Settings
from backend.db import ContentRepository
from backend.ledger import IngestLedger
from runner.ingest.extract import utc_now_iso
from runner.ingest.feed_ingestion import FEED_PRESETS, feeds_from_presets, ingest_feeds
from runner.ingest.items import PendingFeedState
from .budget import StageBudget

DEFAULT_PRESETS = ("espn", "atp", "wta")


@dataclass
class IngestCycleSummary:
    started_at: str
    finished_at: str
    duration_ms: int
    presets_requested: list[str]
    presets_used: list[str]
    totals: Optional[dict]
    reports: list[dict] = field(default_factory=list)
    has_new_content: bool = False
    timed_out: bool = False
    pending_feeds: Optional[list[PendingFeedState]] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "presets_requested": self.presets_requested,
            "presets_used": self.presets_used,
            "totals": self.totals,
            "reports": self.reports,
            "has_new_content": self.has_new_content,
            "timed_out": self.timed_out,
            "pending_feeds": [p.to_dict() for p in self.pending_feeds] if self.pending_feeds else None,
        }


def run_ingest_cycle(
    settings: Settings,
    repo: ContentRepository,
    ledger: IngestLedger,
    presets=None,
    budget: StageBudget | None = None,
    extractor=None,
) -> IngestCycleSummary:
    started_at = utc_now_iso()
    budget = budget or StageBudget.for_stage(settings.ingest_budget_ms, settings)
    requested = list(presets or settings.cron_feeds or DEFAULT_PRESETS)
    unique = []
    for key in requested:
        key = (key or "").strip().lower()
        if key and key not in unique:
            unique.append(key)

    unknown = [k for k in unique if k not in FEED_PRESETS]
    if unknown:
        print(f"INGEST_CYCLE unknown_presets={','.join(unknown)}", file=sys.stderr)
    valid = [k for k in unique if k in FEED_PRESETS]
    feeds = feeds_from_presets(valid or DEFAULT_PRESETS)
    print(
        f"INGEST_CYCLE start presets={','.join(valid or DEFAULT_PRESETS)} "
        f"budget_ms={budget.budget_ms} safety_ms={budget.safety_ms}"
    )

    result = ingest_feeds(feeds, repo, ledger, settings, budget=budget, extractor=extractor)
    totals = result.totals
    summary = IngestCycleSummary(
        started_at=started_at,
        finished_at=utc_now_iso(),
        duration_ms=budget.elapsed_ms(),
        presets_requested=requested,
        presets_used=[f.name for f in feeds],
        totals=totals,
        reports=[r.to_dict() for r in result.reports],
        has_new_content=totals["created"] > 0,
        timed_out=result.timed_out,
        pending_feeds=result.pending_feeds or None,
    )
    print(
        f"INGEST_CYCLE done duration_ms={summary.duration_ms} timed_out={int(summary.timed_out)} "
        f"created={totals['created']} pending_feeds={len(result.pending_feeds)}"
    )
    return summary

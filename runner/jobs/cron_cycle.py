"""Ingest, backfill and publish in one invocation, then chain a follow-up.

Each stage gets its own budget. When work is left over (backfill backlog
or feeds the ingest stage could not drain) the cycle POSTs to its own
trigger endpoint with an incremented chain depth and returns without
waiting for that run.
"""
import sys
import time

import httpx

from backend.config import Settings
from backend.db import ContentRepository, finish_ingest_run, start_ingest_run
from backend.ledger import IngestLedger
from runner.ingest.extract import utc_now_iso
from .ai_backfill import backfill_missing_ai_drafts
from .budget import StageBudget
from .ingest_cycle import run_ingest_cycle
from .publish_ready import publish_ready_articles


def _wait_before_followup(settings: Settings, started: float, sleep=time.sleep) -> None:
    delay_ms = settings.self_trigger_delay_ms
    if delay_ms <= 0:
        return
    elapsed_ms = int((time.monotonic() - started) * 1000)
    window_left = max(0, settings.self_trigger_safe_window_ms - elapsed_ms)
    if window_left <= 0:
        print("CYCLE_FOLLOWUP delay_skipped=1 reason=safe_window_exhausted", file=sys.stderr)
        return
    wait_ms = min(delay_ms, window_left)
    print(f"CYCLE_FOLLOWUP waiting_ms={wait_ms}")
    sleep(wait_ms / 1000.0)


def trigger_followup(
    settings: Settings,
    chain_depth: int,
    backfill_remaining: int = 0,
    pending_feeds=None,
    reason: str = "backfill-remaining",
    http_post=httpx.post,
) -> dict:
    """Fire the next cycle. Returns {scheduled, error}."""
    if chain_depth >= settings.self_trigger_max_depth:
        print(
            f"CYCLE_FOLLOWUP skipped=1 reason=max-depth depth={chain_depth} "
            f"max={settings.self_trigger_max_depth}",
            file=sys.stderr,
        )
        return {"scheduled": False, "error": "max-depth"}
    if not settings.self_trigger_url:
        print("CYCLE_FOLLOWUP skipped=1 reason=missing-url", file=sys.stderr)
        return {"scheduled": False, "error": "missing-url"}
    if not settings.cron_secret:
        print("CYCLE_FOLLOWUP skipped=1 reason=missing-secret", file=sys.stderr)
        return {"scheduled": False, "error": "missing-secret"}

    headers = {
        "Authorization": f"Bearer {settings.cron_secret}",
        "x-cron-chain": str(chain_depth + 1),
        "x-cron-followup": "1",
    }
    body = {
        "reason": reason,
        "chain_depth": chain_depth + 1,
        "backfill_remaining": backfill_remaining,
        "pending_feeds": pending_feeds or [],
    }
    timeout = httpx.Timeout(10.0, read=settings.self_trigger_ack_sec)
    try:
        resp = http_post(settings.self_trigger_url, headers=headers, json=body, timeout=timeout)
    except httpx.ReadTimeout:
        # request went out; the follow-up run is holding the connection
        print(f"CYCLE_FOLLOWUP dispatched=1 depth={chain_depth + 1} ack=timeout")
        return {"scheduled": True, "error": None}
    except httpx.HTTPError as e:
        print(f"CYCLE_FOLLOWUP failed=1 error={type(e).__name__}: {str(e)[:200]}", file=sys.stderr)
        return {"scheduled": False, "error": str(e) or type(e).__name__}

    if resp.status_code < 200 or resp.status_code >= 300:
        print(
            f"CYCLE_FOLLOWUP failed=1 status={resp.status_code} body={resp.text[:200]!r}",
            file=sys.stderr,
        )
        return {"scheduled": False, "error": f"http-{resp.status_code}"}
    print(f"CYCLE_FOLLOWUP dispatched=1 depth={chain_depth + 1} status={resp.status_code}")
    return {"scheduled": True, "error": None}


def run_cron_cycle(
    settings: Settings,
    repo: ContentRepository,
    ledger: IngestLedger,
    pipeline_factory=None,
    chain_depth: int = 0,
    allow_followup: bool = True,
    presets=None,
    http_post=httpx.post,
    sleep=time.sleep,
) -> dict:
    started = time.monotonic()
    started_at = utc_now_iso()
    sb = getattr(repo, "sb", None)
    run_id = start_ingest_run(sb, "cron_cycle")

    try:
        ingest = run_ingest_cycle(
            settings,
            repo,
            ledger,
            presets=presets,
            budget=StageBudget.for_stage(settings.ingest_budget_ms, settings),
        )
        if ingest.totals and ingest.totals.get("blocked"):
            print(f"CYCLE_INGEST blocked_items={ingest.totals['blocked']}", file=sys.stderr)

        backfill = None
        if settings.skip_backfill:
            print("CYCLE_BACKFILL skipped=1 reason=configuration")
        else:
            print(
                f"CYCLE_BACKFILL limit={settings.backfill_limit} "
                f"concurrency={settings.backfill_concurrency} chain_depth={chain_depth}"
            )
            backfill = backfill_missing_ai_drafts(
                settings,
                repo,
                pipeline_factory=pipeline_factory,
                budget=StageBudget.for_stage(settings.backfill_budget_ms, settings),
            )

        publish = publish_ready_articles(
            repo,
            dry_run=settings.publish_dry_run,
            budget=StageBudget.for_stage(settings.publish_budget_ms, settings),
        )
    except Exception as e:
        finish_ingest_run(sb, run_id, ok=False, stats={"chain_depth": chain_depth}, error=str(e)[:500])
        raise

    backfill_remaining = backfill["remaining"] if backfill else 0
    pending = [p.to_dict() for p in (ingest.pending_feeds or [])]
    followup = {"scheduled": False, "error": None}
    if (backfill_remaining > 0 or pending) and allow_followup:
        _wait_before_followup(settings, started, sleep=sleep)
        followup = trigger_followup(
            settings,
            chain_depth,
            backfill_remaining=backfill_remaining,
            pending_feeds=pending,
            reason="backfill-remaining" if backfill_remaining > 0 else "ingest-pending",
            http_post=http_post,
        )
    elif (backfill_remaining > 0 or pending) and not allow_followup:
        followup["error"] = "disabled"

    summary = {
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "duration_ms": int((time.monotonic() - started) * 1000),
        "used_presets": ingest.presets_used,
        "ingestion": ingest.to_dict(),
        "backfill": backfill,
        "publish": publish,
        "backfill_skipped": settings.skip_backfill,
        "backfill_limit": settings.backfill_limit,
        "backfill_backlog": backfill["backlog_before"] if backfill else None,
        "backfill_remaining": backfill["remaining"] if backfill else None,
        "pending_feeds": pending or None,
        "followup_scheduled": followup["scheduled"],
        "followup_error": followup["error"],
        "chain_depth": chain_depth,
    }
    finish_ingest_run(
        sb,
        run_id,
        ok=True,
        stats={
            "duration_ms": summary["duration_ms"],
            "created": (ingest.totals or {}).get("created", 0),
            "backfill_processed": backfill["processed"] if backfill else 0,
            "published": publish["published"],
            "chain_depth": chain_depth,
        },
    )
    print(
        f"CYCLE_DONE duration_ms={summary['duration_ms']} chain_depth={chain_depth} "
        f"followup={int(followup['scheduled'])}"
    )
    return summary

import sys
import threading
import time
from concurrent import futures
from dataclasses import asdict
from typing import Callable

from backend.config import Settings
from backend.db import ContentRepository
from backend.llm.client import ChatClient
from backend.llm.usage import UsageAggregator
from runner.ingest.extract import utc_now_iso
from runner.process.finalize import finalize_draft
from runner.process.prompt_context import build_prompt_artifacts
from runner.process.rewrite import RewriteInput, RewritePipeline, resolve_variant_target_count
from .budget import StageBudget


def default_pipeline_factory(settings: Settings) -> Callable[[list], RewritePipeline]:
    def factory(observers):
        return RewritePipeline(ChatClient(settings, observers=observers), settings)

    return factory


def build_rewrite_input(doc: dict, source_name: str | None) -> RewriteInput:
    artifacts = build_prompt_artifacts(
        doc.get("body"),
        doc.get("external_html"),
        doc.get("canonical_url"),
        doc.get("lead_image_url"),
    )
    context = " | ".join(
        part
        for part in (
            f"Source: {source_name}" if source_name else None,
            f"URL: {doc['canonical_url']}" if doc.get("canonical_url") else None,
        )
        if part
    )
    return RewriteInput(
        title=doc.get("title") or "",
        excerpt=doc.get("excerpt"),
        body_text=artifacts.body_text,
        context=context or None,
        links=artifacts.links,
        media=artifacts.media,
    )


def run_article_pipeline(doc: dict, pipeline: RewritePipeline, repo: ContentRepository, settings: Settings) -> dict:
    """Rewrite one draft and store its variants and final body for review."""
    source_name = repo.source_name(doc.get("source_id"))
    inp = build_rewrite_input(doc, source_name)
    count = resolve_variant_target_count(source_name, settings)

    variants = pipeline.generate_variants(inp, count)
    final = pipeline.synthesize_final(variants, inp)

    stored_variants = []
    for idx, variant in enumerate(variants, start=1):
        done = finalize_draft(variant, inp.links, inp.media)
        stored_variants.append({"key": f"variant-{idx}", **asdict(done)})

    repo.patch(
        doc["id"],
        {
            "ai_variants": stored_variants,
            "ai_final": final,
            "status": "review",
        },
    )
    return final


def backfill_missing_ai_drafts(
    settings: Settings,
    repo: ContentRepository,
    pipeline_factory=None,
    limit: int | None = None,
    concurrency: int | None = None,
    budget: StageBudget | None = None,
) -> dict:
    start = time.monotonic()
    budget = budget or StageBudget.for_stage(settings.backfill_budget_ms, settings)
    pipeline_factory = pipeline_factory or default_pipeline_factory(settings)
    limit = max(1, limit or settings.backfill_limit)
    concurrency = max(1, concurrency or settings.backfill_concurrency)

    backlog_before = repo.count_backfill_targets()
    targets = repo.list_backfill_targets(limit)
    run_usage = UsageAggregator()
    lock = threading.Lock()
    counts = {"processed": 0, "failures": 0, "skipped": 0}

    print(
        f"BACKFILL_START backlog={backlog_before} batch={len(targets)} "
        f"concurrency={concurrency} budget_ms={budget.budget_ms}"
    )

    def work(doc: dict) -> None:
        if budget.expired():
            with lock:
                counts["skipped"] += 1
            return
        doc_usage = UsageAggregator()
        item_start = time.monotonic()
        try:
            pipeline = pipeline_factory([run_usage, doc_usage])
            try:
                run_article_pipeline(doc, pipeline, repo, settings)
            finally:
                pipeline.close()
        except Exception as e:
            with lock:
                counts["failures"] += 1
            print(
                f"BACKFILL_ITEM id={doc.get('id')} ok=0 error={type(e).__name__}: {str(e)[:200]}",
                file=sys.stderr,
            )
            return
        totals = doc_usage.summary()["totals"]
        with lock:
            counts["processed"] += 1
        print(
            f"BACKFILL_ITEM id={doc.get('id')} ok=1 "
            f"elapsed_ms={int((time.monotonic() - item_start) * 1000)} "
            f"requests={totals['requests']} tokens={totals['total_tokens']}"
        )

    timed_out = False
    pool = futures.ThreadPoolExecutor(max_workers=concurrency)
    try:
        pending = [pool.submit(work, doc) for doc in targets]
        done, not_done = futures.wait(pending, timeout=budget.remaining_s())
        if not_done:
            timed_out = True
            for fut in not_done:
                fut.cancel()
        for fut in done:
            # work() absorbs per-article errors
            fut.result()
    finally:
        pool.shutdown(wait=not timed_out, cancel_futures=True)

    with lock:
        processed = counts["processed"]
        failures = counts["failures"]
        timed_out = timed_out or counts["skipped"] > 0
    remaining = repo.count_backfill_targets()
    summary = {
        "backlog_before": backlog_before,
        "total": len(targets),
        "processed": processed,
        "failures": failures,
        "remaining": remaining,
        "duration_ms": int((time.monotonic() - start) * 1000),
        "timed_out": timed_out,
        "usage": run_usage.summary(),
        "finished_at": utc_now_iso(),
    }
    print(
        f"BACKFILL_DONE processed={processed} failures={failures} remaining={remaining} "
        f"timed_out={int(timed_out)} duration_ms={summary['duration_ms']}"
    )
    return summary

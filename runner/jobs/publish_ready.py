import sys
import time

from backend.db import ContentRepository, published_id
from runner.ingest.extract import utc_now_iso
from .budget import StageBudget

RECOMPUTED_FIELDS = ("id", "status", "published_at", "created_at", "updated_at")


def published_document(draft: dict, published_at: str) -> dict:
    doc = {k: v for k, v in draft.items() if k not in RECOMPUTED_FIELDS}
    doc["id"] = published_id(draft["id"])
    doc["status"] = "published"
    doc["published_at"] = published_at
    return doc


def publish_ready_articles(
    repo: ContentRepository,
    dry_run: bool = False,
    budget: StageBudget | None = None,
) -> dict:
    """Publish every draft whose final AI body is ready.

    A failure on one draft is logged and counted; the batch carries on.
    """
    start = time.monotonic()
    candidates = repo.list_publish_candidates()
    published = skipped = errors = 0
    timed_out = False

    for draft in candidates:
        if budget is not None and budget.expired():
            timed_out = True
            break
        doc_id = draft.get("id")
        if not draft.get("slug"):
            skipped += 1
            print(f"PUBLISH skip id={doc_id} reason=missing_slug", file=sys.stderr)
            continue
        published_at = draft.get("published_at") or utc_now_iso()
        if dry_run:
            published += 1
            print(f"PUBLISH dry_run=1 id={doc_id} target={published_id(doc_id)} slug={draft['slug']}")
            continue
        try:
            repo.create_or_replace(published_document(draft, published_at))
            repo.patch(doc_id, {"status": "published", "published_at": published_at})
        except Exception as e:
            errors += 1
            print(f"PUBLISH error id={doc_id} error={type(e).__name__}: {str(e)[:200]}", file=sys.stderr)
            continue
        published += 1
        print(f"PUBLISH ok id={doc_id} target={published_id(doc_id)} slug={draft['slug']}")

    summary = {
        "total_candidates": len(candidates),
        "published": published,
        "skipped": skipped,
        "errors": errors,
        "dry_run": dry_run,
        "timed_out": timed_out,
        "duration_ms": int((time.monotonic() - start) * 1000),
    }
    print(
        f"PUBLISH_DONE candidates={len(candidates)} published={published} skipped={skipped} "
        f"errors={errors} dry_run={int(dry_run)}"
    )
    return summary

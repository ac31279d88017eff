import os
import random
import time
from datetime import datetime, timezone

import httpx
from dotenv import load_dotenv
from supabase import create_client as _create_client

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(_ENV_PATH)

ARTICLES = "articles"
SOURCES = "sources"
TAGS = "tags"
DRAFT_PREFIX = "drafts."

_sb = None


def create_client(settings):
    if not settings.supabase_url or not settings.supabase_key:
        missing = []
        if not settings.supabase_url:
            missing.append("SUPABASE_URL")
        if not settings.supabase_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY or SUPABASE_KEY")
        raise RuntimeError(f"Missing {', '.join(missing)}")
    return _create_client(settings.supabase_url, settings.supabase_key)


def get_client(settings):
    global _sb
    if _sb:
        return _sb

    _sb = create_client(settings)
    return _sb


def draft_id(url_hash: str) -> str:
    return f"{DRAFT_PREFIX}{url_hash[:24]}"


def published_id(doc_id: str) -> str:
    if doc_id.startswith(DRAFT_PREFIX):
        return doc_id[len(DRAFT_PREFIX):]
    return doc_id


def is_draft_id(doc_id: str | None) -> bool:
    return bool(doc_id) and doc_id.startswith(DRAFT_PREFIX)


def has_final_body(doc: dict) -> bool:
    final = doc.get("ai_final") or {}
    return bool(isinstance(final, dict) and (final.get("body") or "").strip())


class ContentRepository:
    """Article, source and tag documents in Supabase.

    Drafts and their published counterparts share the ``articles`` table;
    a draft id is the published id prefixed with ``drafts.``.
    """

    def __init__(self, sb):
        self.sb = sb

    def get(self, doc_id: str, table: str = ARTICLES) -> dict | None:
        res = self.sb.table(table).select("*").eq("id", doc_id).limit(1).execute()
        if res.data:
            return res.data[0]
        return None

    def create_if_absent(self, doc: dict, table: str = ARTICLES) -> bool:
        """Insert ``doc`` unless a row with its id exists. True when inserted."""
        res = (
            self.sb.table(table)
            .upsert(doc, on_conflict="id", ignore_duplicates=True)
            .execute()
        )
        return bool(res.data)

    def patch(self, doc_id: str, fields: dict, table: str = ARTICLES) -> None:
        payload = dict(fields)
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.sb.table(table).update(payload).eq("id", doc_id).execute()

    def create_or_replace(self, doc: dict, table: str = ARTICLES) -> None:
        self.sb.table(table).upsert(doc, on_conflict="id").execute()

    def delete(self, doc_id: str, table: str = ARTICLES) -> None:
        self.sb.table(table).delete().eq("id", doc_id).execute()

    def find_by_slug(self, slug: str) -> dict | None:
        res = (
            self.sb.table(ARTICLES)
            .select("*")
            .eq("slug", slug)
            .order("id")
            .limit(1)
            .execute()
        )
        if res.data:
            return res.data[0]
        return None

    def source_name(self, source_id: str | None) -> str | None:
        if not source_id:
            return None
        row = self.get(source_id, table=SOURCES)
        return (row or {}).get("name")

    def list_backfill_targets(self, limit: int | None = None) -> list[dict]:
        # rows with no ai_final, or one whose body is empty
        res = (
            self.sb.table(ARTICLES)
            .select("*")
            .like("id", f"{DRAFT_PREFIX}%")
            .or_("ai_final.is.null,ai_final->>body.eq.")
            .order("created_at", desc=True)
            .limit(limit if limit and limit > 0 else 200)
            .execute()
        )
        return [row for row in (res.data or []) if not has_final_body(row)]

    def count_backfill_targets(self) -> int:
        res = (
            self.sb.table(ARTICLES)
            .select("id", count="exact")
            .like("id", f"{DRAFT_PREFIX}%")
            .or_("ai_final.is.null,ai_final->>body.eq.")
            .execute()
        )
        if res.count is not None:
            return int(res.count)
        return len(res.data or [])

    def list_publish_candidates(self) -> list[dict]:
        res = (
            self.sb.table(ARTICLES)
            .select("*")
            .like("id", f"{DRAFT_PREFIX}%")
            .neq("status", "published")
            .not_.is_("ai_final", "null")
            .execute()
        )
        return [row for row in (res.data or []) if has_final_body(row)]

    def list_published_canonical_urls(self) -> set[str]:
        urls = set()
        page, size = 0, 1000
        while True:
            res = (
                self.sb.table(ARTICLES)
                .select("canonical_url")
                .eq("status", "published")
                .range(page * size, page * size + size - 1)
                .execute()
            )
            rows = res.data or []
            for row in rows:
                if row.get("canonical_url"):
                    urls.add(row["canonical_url"])
            if len(rows) < size:
                return urls
            page += 1


def _is_transient_run_row_error(err: Exception) -> bool:
    if isinstance(err, (httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)):
        return True
    msg = str(err)
    transient_markers = [
        "UNEXPECTED_EOF_WHILE_READING",
        "SSL",
        "Connection reset",
        "Broken pipe",
        "timeout",
    ]
    return any(m in msg for m in transient_markers)


def _run_row_retry(fn, *args, **kwargs):
    delays = [1, 2, 4, 8, 16]
    for i, delay in enumerate(delays, start=1):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            if not _is_transient_run_row_error(e) or i == len(delays):
                raise
            jitter = random.uniform(0, 0.2)
            print(f"RUN_ROW_RETRY attempt={i} error={str(e)[:200]}")
            time.sleep(delay + jitter)


def start_ingest_run(sb, job_name: str) -> str | None:
    if sb is None:
        return None
    try:
        res = _run_row_retry(
            lambda: sb.table("ingest_runs").insert({"job_name": job_name}).execute()
        )
        return res.data[0]["id"]
    except Exception:
        print("RUN_ROW_UNAVAILABLE proceeding_without_run_row=1")
        return None


def finish_ingest_run(
    sb, run_id: str | None, ok: bool, stats: dict, error: str | None = None
):
    if not run_id or sb is None:
        return
    payload = {
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "ok": ok,
        "stats": stats or {},
        "error": error,
    }
    try:
        _run_row_retry(
            lambda: sb.table("ingest_runs").update(payload).eq("id", run_id).execute()
        )
    except Exception as e:
        if _is_transient_run_row_error(e):
            print("RUN_ROW_UNAVAILABLE finish_failed=1")
        else:
            print(f"RUN_ROW_UNAVAILABLE finish_failed=1 error={str(e)[:200]}")

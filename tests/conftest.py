"""Shared fakes: in-memory content repository, ledger and model client."""

import copy
import json
import threading

import pytest

from backend.config import Settings
from backend.db import ARTICLES, has_final_body, is_draft_id
from runner.jobs.ingest_cycle import IngestCycleSummary


class FakeRepo:
    """Dict-backed stand-in for ContentRepository with the same methods."""

    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {}
        self.patches: list[tuple[str, dict]] = []
        self.replaced: list[dict] = []
        self._lock = threading.Lock()

    def _table(self, name: str) -> dict:
        return self.tables.setdefault(name, {})

    def get(self, doc_id, table=ARTICLES):
        with self._lock:
            doc = self._table(table).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def create_if_absent(self, doc, table=ARTICLES):
        with self._lock:
            rows = self._table(table)
            if doc["id"] in rows:
                return False
            rows[doc["id"]] = copy.deepcopy(doc)
            return True

    def patch(self, doc_id, fields, table=ARTICLES):
        with self._lock:
            self.patches.append((doc_id, copy.deepcopy(fields)))
            self._table(table).setdefault(doc_id, {"id": doc_id}).update(copy.deepcopy(fields))

    def create_or_replace(self, doc, table=ARTICLES):
        with self._lock:
            self.replaced.append(copy.deepcopy(doc))
            self._table(table)[doc["id"]] = copy.deepcopy(doc)

    def delete(self, doc_id, table=ARTICLES):
        with self._lock:
            self._table(table).pop(doc_id, None)

    def find_by_slug(self, slug):
        for doc in self._table(ARTICLES).values():
            if doc.get("slug") == slug:
                return copy.deepcopy(doc)
        return None

    def source_name(self, source_id):
        row = self._table("sources").get(source_id or "")
        return (row or {}).get("name")

    def drafts(self) -> list[dict]:
        return [d for d in self._table(ARTICLES).values() if is_draft_id(d["id"])]

    def list_backfill_targets(self, limit=None):
        rows = [copy.deepcopy(d) for d in self.drafts() if not has_final_body(d)]
        return rows[:limit] if limit else rows

    def count_backfill_targets(self):
        return len([d for d in self.drafts() if not has_final_body(d)])

    def list_publish_candidates(self):
        return [
            copy.deepcopy(d)
            for d in self.drafts()
            if d.get("status") != "published" and has_final_body(d)
        ]

    def list_published_canonical_urls(self):
        return {
            d["canonical_url"]
            for d in self._table(ARTICLES).values()
            if d.get("status") == "published" and d.get("canonical_url")
        }


class FakeLedger:
    def __init__(self):
        self.rows: dict[tuple[str, str], dict] = {}
        self._next_id = 1

    def find(self, source_key, external_id):
        row = self.rows.get((source_key, external_id))
        return dict(row) if row else None

    def insert(self, source_key, external_id, raw, normalized, status="new"):
        if (source_key, external_id) in self.rows:
            return None
        row = {
            "id": self._next_id,
            "source_key": source_key,
            "external_id": external_id,
            "raw": raw,
            "normalized": normalized,
            "status": status,
        }
        self.rows[(source_key, external_id)] = row
        self._next_id += 1
        return row["id"]

    def update(self, entry_id, raw, normalized, status="refreshed"):
        for row in self.rows.values():
            if row["id"] == entry_id:
                row.update(raw=raw, normalized=normalized, status=status)

    def delete_by_source(self, source_key):
        doomed = [k for k in self.rows if k[0] == source_key]
        for key in doomed:
            del self.rows[key]
        return len(doomed)

    def count_by_source(self, source_key):
        return len([k for k in self.rows if k[0] == source_key])


class FakeClient:
    """Model client returning canned replies keyed by call label prefix."""

    name = "fake-llm"
    model = "fake-model"

    def __init__(self, replies: dict | None = None, default: str = "{}"):
        self.replies = replies or {}
        self.default = default
        self.calls: list[dict] = []

    def complete(self, system, prompt, temperature, label):
        self.calls.append({"label": label, "prompt": prompt, "temperature": temperature})
        for prefix, reply in self.replies.items():
            if label == prefix:
                return reply if isinstance(reply, str) else json.dumps(reply)
        return self.default


@pytest.fixture
def settings():
    return Settings(
        cron_secret="s3cret",
        ai_api_key="test-key",
        supabase_url="https://db.example.com",
        supabase_key="service-key",
        database_url="postgresql://localhost/ledger",
        self_trigger_url="https://app.example.com/api/cron-cycle",
        stage_safety_ms=0,
    )


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def ledger():
    return FakeLedger()


def ingest_summary(**overrides):
    values = dict(
        started_at="2025-06-02T10:00:00+00:00",
        finished_at="2025-06-02T10:00:05+00:00",
        duration_ms=5000,
        presets_requested=["espn", "atp", "wta"],
        presets_used=["espn", "atp", "wta"],
        totals={"created": 2},
        reports=[],
        has_new_content=True,
        timed_out=False,
        pending_feeds=[],
    )
    values.update(overrides)
    return IngestCycleSummary(**values)


def backfill_summary(**overrides):
    values = {
        "backlog_before": 4,
        "total": 2,
        "processed": 2,
        "failures": 0,
        "remaining": 2,
        "duration_ms": 10,
        "timed_out": False,
        "usage": {},
        "finished_at": "2025-06-02T10:00:05+00:00",
    }
    values.update(overrides)
    return values

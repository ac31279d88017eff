"""Tests for the concurrent AI backfill stage."""

import threading
import time

from backend.llm.usage import UsageEvent
from runner.jobs.ai_backfill import backfill_missing_ai_drafts, build_rewrite_input, run_article_pipeline
from runner.jobs.budget import StageBudget
from runner.process.finalize import DraftVariant


def make_draft(repo, n, **extra):
    doc = {
        "id": f"drafts.{n:024d}",
        "slug": f"story-{n}",
        "title": f"Story {n}",
        "excerpt": "Dek",
        "status": "draft",
        "canonical_url": f"https://www.espn.com/tennis/story/_/id/{n}",
        "external_html": f"<p>Alcaraz won 6-4, 7-5 in match {n}.</p>",
        "source_id": "espn",
        **extra,
    }
    repo.create_if_absent(doc)
    return doc


class InFlightTracker:
    def __init__(self):
        self.lock = threading.Lock()
        self.current = 0
        self.peak = 0
        self.calls = 0

    def __enter__(self):
        with self.lock:
            self.current += 1
            self.calls += 1
            self.peak = max(self.peak, self.current)
        return self

    def __exit__(self, *exc):
        with self.lock:
            self.current -= 1


class FakePipeline:
    def __init__(self, observers, tracker=None, fail_ids=(), delay=0.0, closed=None):
        self.observers = observers
        self.closed = closed if closed is not None else []
        self.tracker = tracker or InFlightTracker()
        self.fail_ids = set(fail_ids)
        self.delay = delay

    def _record(self, label):
        event = UsageEvent(
            label=label, model="fake-model", temperature=0.5, duration_ms=5,
            prompt_tokens=100, completion_tokens=50, total_tokens=150,
        )
        for observer in self.observers:
            observer.record(event)

    def generate_variants(self, inp, count):
        with self.tracker:
            time.sleep(self.delay)
            if inp.title in self.fail_ids:
                raise RuntimeError("model exploded")
            self._record("article:variants")
            return [DraftVariant(title=f"{inp.title} #{i + 1}", body="<p>variant</p>") for i in range(count)]

    def synthesize_final(self, variants, inp):
        self._record("article:final")
        return {"title": inp.title, "excerpt": inp.excerpt, "body": "<p>final body</p>", "provider": "fake-llm", "model": "fake-model"}

    def close(self):
        self.closed.append(self)


def factory_for(**kwargs):
    def factory(observers):
        return FakePipeline(observers, **kwargs)

    return factory


class TestBackfill:
    def test_concurrency_is_bounded(self, settings, repo):
        for n in range(10):
            make_draft(repo, n)
        tracker = InFlightTracker()

        summary = backfill_missing_ai_drafts(
            settings, repo, pipeline_factory=factory_for(tracker=tracker, delay=0.05), limit=10, concurrency=3,
        )

        assert tracker.calls == 10
        assert 1 <= tracker.peak <= 3
        assert summary["processed"] == 10
        assert summary["failures"] == 0
        assert summary["remaining"] == 0
        assert summary["backlog_before"] == 10
        assert summary["timed_out"] is False

    def test_limit_caps_batch(self, settings, repo):
        for n in range(5):
            make_draft(repo, n)

        summary = backfill_missing_ai_drafts(settings, repo, pipeline_factory=factory_for(), limit=2, concurrency=1)

        assert summary["total"] == 2
        assert summary["processed"] == 2
        assert summary["remaining"] == 3

    def test_failures_are_counted_not_raised(self, settings, repo, capsys):
        for n in range(3):
            make_draft(repo, n)

        summary = backfill_missing_ai_drafts(
            settings, repo, pipeline_factory=factory_for(fail_ids={"Story 1"}), limit=3, concurrency=2,
        )

        assert summary["processed"] == 2
        assert summary["failures"] == 1
        assert summary["remaining"] == 1
        assert "ok=0 error=RuntimeError: model exploded" in capsys.readouterr().err

    def test_each_pipeline_is_closed(self, settings, repo):
        for n in range(4):
            make_draft(repo, n)
        closed = []

        summary = backfill_missing_ai_drafts(
            settings, repo, pipeline_factory=factory_for(fail_ids={"Story 2"}, closed=closed), limit=4, concurrency=2,
        )

        assert summary["processed"] == 3
        assert summary["failures"] == 1
        assert len(closed) == 4

    def test_expired_budget_processes_nothing(self, settings, repo):
        for n in range(4):
            make_draft(repo, n)

        summary = backfill_missing_ai_drafts(
            settings, repo, pipeline_factory=factory_for(), limit=4, concurrency=2, budget=StageBudget(0),
        )

        assert summary["processed"] == 0
        assert summary["timed_out"] is True
        assert summary["remaining"] == 4

    def test_usage_aggregated_across_articles(self, settings, repo):
        for n in range(3):
            make_draft(repo, n)

        summary = backfill_missing_ai_drafts(settings, repo, pipeline_factory=factory_for(), limit=3, concurrency=3)

        totals = summary["usage"]["totals"]
        assert totals["requests"] == 6
        assert totals["total_tokens"] == 900
        assert summary["usage"]["by_label"]["article:final"]["requests"] == 3

    def test_completed_drafts_are_not_targets(self, settings, repo):
        make_draft(repo, 1, ai_final={"body": "<p>done</p>"})
        make_draft(repo, 2)

        summary = backfill_missing_ai_drafts(settings, repo, pipeline_factory=factory_for(), limit=5)

        assert summary["backlog_before"] == 1
        assert summary["processed"] == 1


class TestArticlePipeline:
    def test_stores_variants_and_final(self, settings, repo):
        doc = make_draft(repo, 7)

        final = run_article_pipeline(doc, FakePipeline([]), repo, settings)

        stored = repo.get(doc["id"])
        assert stored["status"] == "review"
        assert stored["ai_final"] == final
        assert [v["key"] for v in stored["ai_variants"]] == ["variant-1", "variant-2", "variant-3"]
        assert stored["ai_variants"][0]["title"] == "Story 7 #1"

    def test_tour_sources_get_two_variants(self, settings, repo):
        repo.tables["sources"] = {"atp": {"id": "atp", "name": "ATP Tour"}}
        doc = make_draft(repo, 8, source_id="atp")

        run_article_pipeline(doc, FakePipeline([]), repo, settings)

        assert len(repo.get(doc["id"])["ai_variants"]) == 2

    def test_rewrite_input_context(self):
        doc = {
            "title": "Story",
            "canonical_url": "https://www.espn.com/tennis/story/_/id/1",
            "external_html": '<p>Beat <a href="https://example.com/sinner">Sinner</a> 6-4.</p>',
        }
        inp = build_rewrite_input(doc, "ESPN Tennis")

        assert inp.context == "Source: ESPN Tennis | URL: https://www.espn.com/tennis/story/_/id/1"
        assert "Beat Sinner 6-4." in inp.body_text
        assert [ref.url for ref in inp.links] == ["https://example.com/sinner"]

"""Tests for publishing finished drafts."""

from unittest.mock import MagicMock

from backend.db import ContentRepository
from runner.jobs.budget import StageBudget
from runner.jobs.publish_ready import published_document, publish_ready_articles


def ready_draft(repo, n, **extra):
    doc = {
        "id": f"drafts.{n:024d}",
        "slug": f"story-{n}",
        "title": f"Story {n}",
        "status": "review",
        "canonical_url": f"https://www.atptour.com/en/news/{n}",
        "ai_final": {"title": f"Story {n}", "body": "<p>Final</p>"},
        "created_at": "2025-06-01T00:00:00+00:00",
        **extra,
    }
    repo.create_if_absent(doc)
    return doc


class TestPublishReady:
    def test_publishes_each_draft_once(self, repo):
        ready_draft(repo, 1)
        ready_draft(repo, 2)

        first = publish_ready_articles(repo)
        second = publish_ready_articles(repo)

        assert first["published"] == 2
        assert second["total_candidates"] == 0
        assert second["published"] == 0
        assert sorted(d["id"] for d in repo.replaced) == [f"{1:024d}", f"{2:024d}"]

    def test_published_copy_and_draft_status(self, repo):
        draft = ready_draft(repo, 3, published_at="2025-06-02T10:00:00+00:00")

        publish_ready_articles(repo)

        live = repo.get(f"{3:024d}")
        assert live["status"] == "published"
        assert live["published_at"] == "2025-06-02T10:00:00+00:00"
        assert live["slug"] == "story-3"
        assert "created_at" not in live
        assert repo.get(draft["id"])["status"] == "published"

    def test_missing_publish_time_is_stamped(self, repo):
        ready_draft(repo, 4)
        publish_ready_articles(repo)
        assert repo.get(f"{4:024d}")["published_at"]

    def test_dry_run_mutates_nothing(self, repo):
        ready_draft(repo, 5)

        summary = publish_ready_articles(repo, dry_run=True)

        assert summary["published"] == 1
        assert summary["dry_run"] is True
        assert repo.replaced == []
        assert repo.patches == []

    def test_missing_slug_is_skipped(self, repo, capsys):
        ready_draft(repo, 6, slug=None)

        summary = publish_ready_articles(repo)

        assert summary["skipped"] == 1
        assert summary["published"] == 0
        assert "reason=missing_slug" in capsys.readouterr().err

    def test_one_failure_does_not_stop_batch(self, repo):
        ready_draft(repo, 7)
        ready_draft(repo, 8)
        original = repo.create_or_replace

        def flaky(doc, table="articles"):
            if doc["id"].endswith("7"):
                raise RuntimeError("write failed")
            original(doc, table)

        repo.create_or_replace = flaky

        summary = publish_ready_articles(repo)

        assert summary["errors"] == 1
        assert summary["published"] == 1

    def test_expired_budget_stops(self, repo):
        ready_draft(repo, 9)

        summary = publish_ready_articles(repo, budget=StageBudget(0))

        assert summary["timed_out"] is True
        assert summary["published"] == 0

    def test_drafts_without_final_are_not_candidates(self, repo):
        ready_draft(repo, 10, ai_final={"body": "  "})
        assert publish_ready_articles(repo)["total_candidates"] == 0

    def test_published_document_strips_recomputed_fields(self):
        doc = published_document(
            {"id": "drafts.abc", "status": "review", "updated_at": "x", "created_at": "y", "title": "T"},
            "2025-06-02T00:00:00+00:00",
        )
        assert doc == {
            "id": "abc",
            "status": "published",
            "published_at": "2025-06-02T00:00:00+00:00",
            "title": "T",
        }


class TestPublishCandidateQuery:
    def test_filters_drafts_with_final_body(self):
        sb = MagicMock()
        chain = sb.table.return_value.select.return_value.like.return_value.neq.return_value
        chain.not_.is_.return_value.execute.return_value.data = [
            {"id": "drafts.a", "ai_final": {"body": "<p>x</p>"}},
            {"id": "drafts.b", "ai_final": {"body": ""}},
        ]

        rows = ContentRepository(sb).list_publish_candidates()

        assert [r["id"] for r in rows] == ["drafts.a"]
        sb.table.assert_called_with("articles")
        sb.table.return_value.select.return_value.like.assert_called_with("id", "drafts.%")
        sb.table.return_value.select.return_value.like.return_value.neq.assert_called_with("status", "published")
        chain.not_.is_.assert_called_with("ai_final", "null")

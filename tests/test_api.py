"""Tests for the cron HTTP endpoints."""

from dataclasses import replace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from backend.api import main
from conftest import FakeLedger, FakeRepo, backfill_summary, ingest_summary

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def client(settings):
    main.app.dependency_overrides = {
        main.get_settings: lambda: settings,
        main.get_repo: FakeRepo,
        main.get_ledger: FakeLedger,
        main.get_pipeline_factory: lambda: None,
    }
    yield TestClient(main.app)
    main.app.dependency_overrides = {}


class TestAuth:
    def test_missing_credentials(self, client):
        resp = client.get("/api/cron-ingest")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_wrong_secret(self, client):
        resp = client.get("/api/cron-ingest", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_secret_not_configured(self, client, settings):
        main.app.dependency_overrides[main.get_settings] = lambda: replace(settings, cron_secret=None)
        resp = client.get("/api/cron-ingest", headers=AUTH)
        assert resp.status_code == 500
        assert resp.json() == {"error": "CRON_SECRET is not configured"}

    def test_query_secret_accepted(self, client):
        with patch("backend.api.main.run_ingest_cycle", return_value=ingest_summary()):
            resp = client.get("/api/cron-ingest?secret=s3cret")
        assert resp.status_code == 200

    def test_non_ascii_secret_is_unauthorized(self, client):
        resp = client.get("/api/cron-ingest", params={"secret": "sécret"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_health_is_open(self, client):
        assert client.get("/health").json() == {"ok": True}


class TestCronIngest:
    def test_new_content_triggers_backfill(self, client):
        with patch("backend.api.main.run_ingest_cycle", return_value=ingest_summary()):
            body = client.post("/api/cron-ingest", headers=AUTH).json()
        assert body["should_trigger_backfill"] is True
        assert body["presets_used"] == ["espn", "atp", "wta"]

    def test_timeout_suppresses_backfill(self, client):
        with patch("backend.api.main.run_ingest_cycle", return_value=ingest_summary(timed_out=True)):
            body = client.get("/api/cron-ingest", headers=AUTH).json()
        assert body["should_trigger_backfill"] is False

    def test_no_new_content(self, client):
        with patch("backend.api.main.run_ingest_cycle", return_value=ingest_summary(has_new_content=False)):
            body = client.get("/api/cron-ingest", headers=AUTH).json()
        assert body["should_trigger_backfill"] is False

    def test_failure_is_json_error(self, client):
        with patch("backend.api.main.run_ingest_cycle", side_effect=RuntimeError("feed store down")):
            resp = client.get("/api/cron-ingest", headers=AUTH)
        assert resp.status_code == 500
        assert resp.json() == {"error": "feed store down"}


class TestCronBackfill:
    def test_flags(self, client):
        with patch("backend.api.main.backfill_missing_ai_drafts", return_value=backfill_summary()) as run:
            body = client.get("/api/cron-backfill?limit=5&concurrency=2", headers=AUTH).json()
        assert body["should_continue"] is True
        assert body["should_trigger_publish"] is True
        assert run.call_args.kwargs["limit"] == 5
        assert run.call_args.kwargs["concurrency"] == 2

    def test_timeout_flags(self, client):
        with patch("backend.api.main.backfill_missing_ai_drafts", return_value=backfill_summary(timed_out=True)):
            body = client.get("/api/cron-backfill", headers=AUTH).json()
        assert body["should_continue"] is False
        assert body["should_trigger_publish"] is False

    def test_drained_backlog(self, client):
        with patch("backend.api.main.backfill_missing_ai_drafts", return_value=backfill_summary(remaining=0)):
            body = client.get("/api/cron-backfill", headers=AUTH).json()
        assert body["should_continue"] is False

    def test_missing_model_key(self, client, settings):
        main.app.dependency_overrides[main.get_settings] = lambda: replace(settings, ai_api_key=None)
        resp = client.get("/api/cron-backfill", headers=AUTH)
        assert resp.status_code == 500
        assert "ai_api_key" in resp.json()["error"]

    @pytest.mark.parametrize("limit", ["0", "abc"])
    def test_invalid_limit_rejected(self, client, limit):
        resp = client.get(f"/api/cron-backfill?limit={limit}", headers=AUTH)
        assert resp.status_code == 422
        body = resp.json()
        assert set(body) == {"error"}
        assert body["error"].startswith("query.limit: ")


class TestCronCycle:
    def test_chain_depth_from_header(self, client):
        with patch("backend.api.main.run_cron_cycle", return_value={"chain_depth": 3}) as run:
            resp = client.post("/api/cron-cycle", headers={**AUTH, "x-cron-chain": "3"})
        assert resp.status_code == 200
        assert run.call_args.kwargs["chain_depth"] == 3

    def test_chain_depth_from_body(self, client):
        with patch("backend.api.main.run_cron_cycle", return_value={}) as run:
            client.post("/api/cron-cycle", headers=AUTH, json={"chain_depth": 2})
        assert run.call_args.kwargs["chain_depth"] == 2

    def test_bad_chain_depth_defaults_to_zero(self, client):
        with patch("backend.api.main.run_cron_cycle", return_value={}) as run:
            client.get("/api/cron-cycle", headers={**AUTH, "x-cron-chain": "abc"})
        assert run.call_args.kwargs["chain_depth"] == 0

    def test_cycle_failure(self, client):
        with patch("backend.api.main.run_cron_cycle", side_effect=ValueError("boom")):
            resp = client.get("/api/cron-cycle", headers=AUTH)
        assert resp.status_code == 500
        assert resp.json() == {"error": "boom"}

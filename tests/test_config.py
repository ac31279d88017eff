import pytest

from backend.config import ConfigError, Settings, load_settings

ENV_NAMES = (
    "CRON_INGEST_TIMEOUT_MS", "CRON_BACKFILL_TIMEOUT_MS", "CRON_STAGE_TIMEOUT_MS",
    "CRON_BACKFILL_LIMIT", "CRON_AI_LIMIT", "CRON_SELF_TRIGGER_URL", "APP_BASE_URL",
    "NEXT_PUBLIC_APP_URL", "CRON_FEEDS", "GROK_API_KEY", "OPENAI_API_KEY", "CRON_AI_SKIP",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings()
        assert settings.cron_feeds == ("espn", "atp", "wta")
        assert settings.ingest_budget_ms == 293_000
        assert settings.self_trigger_max_depth == 10
        assert settings.skip_backfill is False

    def test_stage_budget_shared_fallback_and_cap(self, monkeypatch):
        monkeypatch.setenv("CRON_STAGE_TIMEOUT_MS", "60000")
        monkeypatch.setenv("CRON_INGEST_TIMEOUT_MS", "900000")
        settings = load_settings()
        assert settings.backfill_budget_ms == 60_000
        assert settings.ingest_budget_ms == 295_000

    def test_legacy_backfill_limit(self, monkeypatch):
        monkeypatch.setenv("CRON_AI_LIMIT", "7")
        assert load_settings().backfill_limit == 7

    def test_invalid_numbers_use_defaults(self, monkeypatch):
        monkeypatch.setenv("CRON_BACKFILL_LIMIT", "lots")
        assert load_settings().backfill_limit == 2

    def test_self_trigger_url_from_base(self, monkeypatch):
        monkeypatch.setenv("APP_BASE_URL", "https://tennis.example.com/")
        assert load_settings().self_trigger_url == "https://tennis.example.com/api/cron-cycle"

    def test_feed_list_normalized(self, monkeypatch):
        monkeypatch.setenv("CRON_FEEDS", "ESPN, atp ,")
        assert load_settings().cron_feeds == ("espn", "atp")

    def test_model_key_fallback(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert load_settings().ai_api_key == "sk-test"


class TestRequire:
    def test_missing(self):
        with pytest.raises(ConfigError, match="ai_api_key"):
            Settings().require("ai_api_key", "cron_secret")

    def test_unknown_name(self):
        with pytest.raises(ConfigError, match="Unknown setting"):
            Settings().require("nope")

    def test_present(self):
        Settings(ai_api_key="k").require("ai_api_key")

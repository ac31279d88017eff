import os
from dataclasses import dataclass, fields


MAX_STAGE_BUDGET_MS = 295_000


class ConfigError(RuntimeError):
    pass


def get_int(name: str, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float(name: str, default: float | None = None) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def get_str(*names: str, default: str | None = None) -> str | None:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and raw.strip():
            return raw.strip()
    return default


def get_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default or [])
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _positive(value: int | None, default: int, cap: int | None = None) -> int:
    if value is None or value <= 0:
        value = default
    if cap is not None:
        value = min(value, cap)
    return value


def _stage_budget(primary: str, default: int) -> int:
    raw = get_int(primary)
    if raw is None:
        raw = get_int("CRON_STAGE_TIMEOUT_MS")
    return _positive(raw, default, MAX_STAGE_BUDGET_MS)


def _self_trigger_url() -> str | None:
    explicit = get_str("CRON_SELF_TRIGGER_URL")
    if explicit:
        return explicit
    base = get_str("APP_BASE_URL", "NEXT_PUBLIC_APP_URL")
    if base:
        return base.rstrip("/") + "/api/cron-cycle"
    return None


@dataclass(frozen=True)
class Settings:
    cron_secret: str | None = None
    cron_feeds: tuple[str, ...] = ("espn", "atp", "wta")

    ingest_budget_ms: int = 293_000
    backfill_budget_ms: int = 240_000
    publish_budget_ms: int = 120_000
    stage_safety_ms: int = 5_000

    backfill_limit: int = 2
    backfill_concurrency: int = 2
    skip_backfill: bool = False
    publish_dry_run: bool = False

    self_trigger_url: str | None = None
    self_trigger_max_depth: int = 10
    self_trigger_delay_ms: int = 0
    self_trigger_safe_window_ms: int = 285_000
    self_trigger_ack_sec: float = 3.0

    ingest_refresh: bool = False
    ingest_debug: bool = False
    ingest_write_body: str = "none"
    ingest_body_max_chars: int = 1200
    excerpt_max_chars: int = 300
    fetch_article: bool = False
    allowed_domains: tuple[str, ...] = ()
    rendered_all: bool = False
    rendered_hosts: tuple[str, ...] = ()
    atp_prefer_rendered: bool = True
    wta_prefer_rendered: bool = True
    wta_max_per_section: int = 8
    fetch_connect_timeout: float = 10.0
    fetch_read_timeout: float = 20.0
    rendered_timeout_ms: int = 30_000

    ai_api_key: str | None = None
    ai_model: str = "grok-4-fast-reasoning"
    ai_base_url: str = "https://api.x.ai/v1"
    ai_max_output_tokens: int = 4000
    ai_prompt_token_limit: int = 2_000_000
    ai_total_token_budget: int = 4_000_000
    ai_timeout: int = 120
    ai_retries: int = 1
    ai_variants_tour: int = 2
    ai_variants_default: int = 3

    supabase_url: str | None = None
    supabase_key: str | None = None
    database_url: str | None = None

    def require(self, *names: str) -> None:
        known = {f.name for f in fields(self)}
        missing = []
        for name in names:
            if name not in known:
                raise ConfigError(f"Unknown setting: {name}")
            if not getattr(self, name):
                missing.append(name)
        if missing:
            raise ConfigError(f"Missing configuration: {', '.join(missing)}")


def load_settings() -> Settings:
    return Settings(
        cron_secret=get_str("CRON_SECRET"),
        cron_feeds=tuple(get_list("CRON_FEEDS", ["espn", "atp", "wta"])),
        ingest_budget_ms=_stage_budget("CRON_INGEST_TIMEOUT_MS", 293_000),
        backfill_budget_ms=_stage_budget("CRON_BACKFILL_TIMEOUT_MS", 240_000),
        publish_budget_ms=_stage_budget("CRON_PUBLISH_TIMEOUT_MS", 120_000),
        stage_safety_ms=max(0, get_int("CRON_STAGE_SAFETY_MS", 5_000) or 0),
        backfill_limit=_positive(
            get_int("CRON_BACKFILL_LIMIT", get_int("CRON_AI_LIMIT")), 2
        ),
        backfill_concurrency=_positive(
            get_int("CRON_BACKFILL_CONCURRENCY", get_int("CRON_AI_CONCURRENCY")), 2
        ),
        skip_backfill=get_bool("CRON_AI_SKIP", False),
        publish_dry_run=get_bool("CRON_PUBLISH_DRY_RUN", False),
        self_trigger_url=_self_trigger_url(),
        self_trigger_max_depth=max(0, get_int("CRON_SELF_TRIGGER_MAX", 10) or 0),
        self_trigger_delay_ms=max(0, get_int("CRON_SELF_TRIGGER_DELAY_MS", 0) or 0),
        self_trigger_safe_window_ms=_positive(
            get_int("CRON_SELF_TRIGGER_SAFE_WINDOW_MS"), 285_000
        ),
        self_trigger_ack_sec=get_float("CRON_SELF_TRIGGER_ACK_SEC", 3.0) or 3.0,
        ingest_refresh=get_bool("INGEST_REFRESH", False),
        ingest_debug=get_bool("INGEST_DEBUG", False),
        ingest_write_body=(get_str("INGEST_WRITE_BODY", default="none") or "none").lower(),
        ingest_body_max_chars=max(0, get_int("INGEST_BODY_MAX_CHARS", 1200) or 0),
        excerpt_max_chars=max(0, get_int("INGEST_EXCERPT_MAX_CHARS", 300) or 0),
        fetch_article=get_bool("INGEST_FETCH_ARTICLE", False),
        allowed_domains=tuple(get_list("INGEST_ALLOWED_DOMAINS")),
        rendered_all=get_bool("INGEST_RENDERED", False),
        rendered_hosts=tuple(get_list("INGEST_RENDERED_HOSTS")),
        atp_prefer_rendered=get_bool("INGEST_ATP_USE_HEADLESS", True),
        wta_prefer_rendered=get_bool("INGEST_WTA_USE_HEADLESS", True),
        wta_max_per_section=_positive(get_int("INGEST_WTA_MAX_PER_SECTION"), 8),
        fetch_connect_timeout=get_float("FETCH_CONNECT_TIMEOUT", 10.0) or 10.0,
        fetch_read_timeout=get_float("FETCH_READ_TIMEOUT", 20.0) or 20.0,
        rendered_timeout_ms=_positive(get_int("INGEST_RENDERED_TIMEOUT_MS"), 30_000),
        ai_api_key=get_str("GROK_API_KEY", "OPENAI_API_KEY"),
        ai_model=get_str("AI_MODEL", default="grok-4-fast-reasoning"),
        ai_base_url=get_str("AI_BASE_URL", default="https://api.x.ai/v1"),
        ai_max_output_tokens=_positive(get_int("AI_MAX_OUTPUT_TOKENS"), 4000),
        ai_prompt_token_limit=_positive(get_int("AI_PROMPT_TOKEN_LIMIT"), 2_000_000),
        ai_total_token_budget=_positive(get_int("AI_TOTAL_TOKEN_BUDGET"), 4_000_000),
        ai_timeout=_positive(get_int("AI_TIMEOUT"), 120),
        ai_retries=max(0, get_int("AI_RETRIES", 1) or 0),
        ai_variants_tour=_positive(get_int("AI_VARIANTS_TOUR"), 2),
        ai_variants_default=_positive(get_int("AI_VARIANTS_DEFAULT"), 3),
        supabase_url=get_str("SUPABASE_URL"),
        supabase_key=get_str("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY"),
        database_url=get_str("DATABASE_URL"),
    )

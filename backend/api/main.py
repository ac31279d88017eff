import hmac
import os

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.config import Settings, load_settings
from backend.db import ContentRepository, finish_ingest_run, get_client, start_ingest_run
from backend.ledger import IngestLedger
from runner.jobs.ai_backfill import backfill_missing_ai_drafts, default_pipeline_factory
from runner.jobs.budget import StageBudget
from runner.jobs.cron_cycle import run_cron_cycle
from runner.jobs.ingest_cycle import run_ingest_cycle

load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

app = FastAPI(title="Tennis News Cron API")


@app.exception_handler(StarletteHTTPException)
def http_error(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
def validation_error(request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=422, content={"error": problems or "Invalid request"})


def get_settings() -> Settings:
    return load_settings()


def _unavailable(err: Exception) -> HTTPException:
    return HTTPException(status_code=500, detail=str(err))


def get_repo(settings: Settings = Depends(get_settings)) -> ContentRepository:
    try:
        return ContentRepository(get_client(settings))
    except RuntimeError as e:
        raise _unavailable(e)


def get_ledger(settings: Settings = Depends(get_settings)) -> IngestLedger:
    try:
        return IngestLedger.from_settings(settings)
    except RuntimeError as e:
        raise _unavailable(e)


def get_pipeline_factory(settings: Settings = Depends(get_settings)):
    return default_pipeline_factory(settings)


def require_cron_secret(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None),
    secret: str | None = Query(default=None),
):
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(status_code=500, detail="CRON_SECRET is not configured")
    supplied = None
    if authorization and authorization.startswith("Bearer "):
        supplied = authorization.split(" ", 1)[1].strip()
    elif secret:
        supplied = secret
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _failure(stage: str, err: Exception) -> JSONResponse:
    print(f"API_ERROR stage={stage} error={type(err).__name__}: {str(err)[:300]}")
    return JSONResponse(status_code=500, content={"error": str(err) or type(err).__name__})


@app.get("/health")
def health():
    return {"ok": True}


@app.api_route("/api/cron-ingest", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def cron_ingest(
    settings: Settings = Depends(get_settings),
    repo: ContentRepository = Depends(get_repo),
    ledger: IngestLedger = Depends(get_ledger),
):
    sb = getattr(repo, "sb", None)
    run_id = start_ingest_run(sb, "cron_ingest")
    try:
        summary = run_ingest_cycle(settings, repo, ledger)
    except Exception as e:
        finish_ingest_run(sb, run_id, ok=False, stats={}, error=str(e)[:500])
        return _failure("ingest", e)
    finish_ingest_run(sb, run_id, ok=True, stats=summary.totals or {})
    body = summary.to_dict()
    body["should_trigger_backfill"] = (not summary.timed_out) and summary.has_new_content
    return body


@app.api_route("/api/cron-backfill", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def cron_backfill(
    limit: int | None = Query(default=None, ge=1),
    concurrency: int | None = Query(default=None, ge=1),
    settings: Settings = Depends(get_settings),
    repo: ContentRepository = Depends(get_repo),
    pipeline_factory=Depends(get_pipeline_factory),
):
    try:
        settings.require("ai_api_key")
        summary = backfill_missing_ai_drafts(
            settings,
            repo,
            pipeline_factory=pipeline_factory,
            limit=limit,
            concurrency=concurrency,
            budget=StageBudget.for_stage(settings.backfill_budget_ms, settings),
        )
    except Exception as e:
        return _failure("backfill", e)
    summary["should_continue"] = (not summary["timed_out"]) and summary["remaining"] > 0
    summary["should_trigger_publish"] = not summary["timed_out"]
    return summary


def _chain_depth(header: str | None, payload: dict | None) -> int:
    raw = header
    if raw is None and isinstance(payload, dict):
        raw = payload.get("chain_depth")
    try:
        depth = int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        return 0
    return depth if depth >= 0 else 0


@app.api_route("/api/cron-cycle", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def cron_cycle(
    payload: dict | None = Body(default=None),
    x_cron_chain: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
    repo: ContentRepository = Depends(get_repo),
    ledger: IngestLedger = Depends(get_ledger),
    pipeline_factory=Depends(get_pipeline_factory),
):
    chain_depth = _chain_depth(x_cron_chain, payload)
    try:
        if not settings.skip_backfill:
            settings.require("ai_api_key")
        summary = run_cron_cycle(
            settings,
            repo,
            ledger,
            pipeline_factory=pipeline_factory,
            chain_depth=chain_depth,
        )
    except Exception as e:
        return _failure("cycle", e)
    return summary

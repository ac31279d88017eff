import argparse
import json
import os
import sys

from dotenv import load_dotenv

from backend.config import ConfigError, load_settings
from backend.db import ContentRepository, get_client
from backend.ledger import IngestLedger
from runner.jobs.ai_backfill import backfill_missing_ai_drafts
from runner.jobs.budget import StageBudget
from runner.jobs.cron_cycle import run_cron_cycle
from runner.jobs.ingest_cycle import run_ingest_cycle
from runner.jobs.publish_ready import publish_ready_articles

load_dotenv(os.path.join(os.path.dirname(__file__), ".env"))

STAGES = ("ingest", "backfill", "publish", "cycle")


def run_stage(stage: str, settings, args) -> dict:
    repo = ContentRepository(get_client(settings))
    if stage == "ingest":
        summary = run_ingest_cycle(settings, repo, IngestLedger.from_settings(settings), presets=args.presets)
        return summary.to_dict()
    if stage == "backfill":
        settings.require("ai_api_key")
        return backfill_missing_ai_drafts(
            settings,
            repo,
            limit=args.limit,
            concurrency=args.concurrency,
            budget=StageBudget.for_stage(settings.backfill_budget_ms, settings),
        )
    if stage == "publish":
        return publish_ready_articles(
            repo,
            dry_run=args.dry_run or settings.publish_dry_run,
            budget=StageBudget.for_stage(settings.publish_budget_ms, settings),
        )
    if not settings.skip_backfill:
        settings.require("ai_api_key")
    return run_cron_cycle(
        settings,
        repo,
        IngestLedger.from_settings(settings),
        allow_followup=False,
        presets=args.presets,
    )


def main() -> int:
    ap = argparse.ArgumentParser(description="Run one pipeline stage locally, without HTTP.")
    ap.add_argument("stage", choices=STAGES)
    ap.add_argument("--presets", nargs="*", default=None, help="feed preset keys (espn, atp, wta)")
    ap.add_argument("--limit", type=int, default=None)
    ap.add_argument("--concurrency", type=int, default=None)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    settings = load_settings()
    try:
        summary = run_stage(args.stage, settings, args)
    except (ConfigError, RuntimeError) as e:
        print(f"RUN_CYCLE failed stage={args.stage} error={e}", file=sys.stderr)
        return 2
    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

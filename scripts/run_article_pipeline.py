import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(BASE_DIR))

from backend.config import ConfigError, load_settings
from backend.db import ContentRepository, get_client, has_final_body
from backend.llm.client import LLMError, LLMTimeout, LLMUnavailable
from backend.llm.usage import UsageAggregator
from runner.jobs.ai_backfill import default_pipeline_factory, run_article_pipeline

load_dotenv()


def main() -> int:
    ap = argparse.ArgumentParser(description="Run the AI rewrite pipeline for a single article.")
    target = ap.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", help="draft document id (drafts.<hash>)")
    target.add_argument("--slug")
    ap.add_argument("--force", action="store_true", help="rewrite even when a final body exists")
    args = ap.parse_args()

    settings = load_settings()
    try:
        settings.require("ai_api_key")
    except ConfigError as e:
        print(f"RUN_ARTICLE failed error={e}", file=sys.stderr)
        return 2

    repo = ContentRepository(get_client(settings))
    doc = repo.get(args.id) if args.id else repo.find_by_slug(args.slug)
    if not doc:
        print(f"RUN_ARTICLE not_found id={args.id} slug={args.slug}", file=sys.stderr)
        return 1
    if has_final_body(doc) and not args.force:
        print(f"RUN_ARTICLE skip id={doc['id']} reason=final_exists (use --force)")
        return 0

    usage = UsageAggregator()
    pipeline = default_pipeline_factory(settings)([usage])
    try:
        final = run_article_pipeline(doc, pipeline, repo, settings)
    except (LLMUnavailable, LLMError, LLMTimeout) as e:
        print(f"RUN_ARTICLE failed id={doc['id']} error={type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        pipeline.close()

    summary = usage.summary()
    print(f"RUN_ARTICLE ok id={doc['id']} title={final['title']!r} body_chars={len(final['body'])}")
    print(json.dumps({"totals": summary["totals"], "by_label": summary["by_label"]}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

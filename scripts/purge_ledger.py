import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(BASE_DIR))

from backend.config import load_settings
from backend.ledger import IngestLedger
from runner.ingest.feed_ingestion import FEED_PRESETS

load_dotenv()


def main() -> int:
    ap = argparse.ArgumentParser(description="Delete ingestion ledger rows for one feed source.")
    ap.add_argument("--source-key", help='ledger key, e.g. "rss:https://www.espn.com/espn/rss/tennis/news"')
    ap.add_argument("--preset", choices=sorted(FEED_PRESETS), help="derive the source key from a feed preset")
    ap.add_argument("--yes", action="store_true", help="actually delete; otherwise only count")
    args = ap.parse_args()

    source_key = args.source_key
    if not source_key and args.preset:
        source_key = FEED_PRESETS[args.preset].source_key
    if not source_key:
        ap.error("--source-key or --preset is required")

    ledger = IngestLedger.from_settings(load_settings())
    count = ledger.count_by_source(source_key)
    if not args.yes:
        print(f"PURGE_LEDGER dry_run=1 source_key={source_key} rows={count} (pass --yes to delete)")
        return 0
    deleted = ledger.delete_by_source(source_key)
    print(f"PURGE_LEDGER source_key={source_key} deleted={deleted}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

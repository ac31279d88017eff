import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(BASE_DIR))

from backend.config import load_settings
from backend.db import ContentRepository, draft_id, get_client
from runner.ingest.extract import hash_url, normalize_url
from runner.ingest.extractors.registry import extract_article
from runner.ingest.numbers import preserve_numbers_in_html

load_dotenv()


def main() -> int:
    ap = argparse.ArgumentParser(description="Re-extract one article and refresh its draft markup.")
    ap.add_argument("--url", required=True)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    settings = load_settings()
    url = normalize_url(args.url)
    doc_id = draft_id(hash_url(url))
    repo = ContentRepository(get_client(settings))
    if repo.get(doc_id) is None:
        print(f"REFRESH_ARTICLE not_found id={doc_id} url={url}", file=sys.stderr)
        return 1

    article = extract_article(url, settings)
    if article is not None and article.challenge is not None:
        print(f"REFRESH_ARTICLE blocked url={url} challenge={article.challenge.type}", file=sys.stderr)
        return 1
    if article is None or not article.body_html:
        print(f"REFRESH_ARTICLE extract_failed url={url}", file=sys.stderr)
        return 1

    external_html = preserve_numbers_in_html(article.body_html)
    if args.dry_run:
        print(f"REFRESH_ARTICLE dry_run=1 id={doc_id} html_len={len(external_html)}")
        return 0
    fields = {"external_html": external_html}
    if article.image:
        fields["lead_image_url"] = article.image
    repo.patch(doc_id, fields)
    print(f"REFRESH_ARTICLE ok id={doc_id} html_len={len(external_html)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Tests for anti-bot interstitial detection and how ingestion reacts to it."""

from dataclasses import replace
from unittest.mock import patch

from runner.ingest.challenge import detect_challenge, has_challenge_artifact, strip_tags
from runner.ingest.feed_ingestion import FeedConfig, ingest_feeds, process_item
from runner.ingest.items import ChallengeDetection, ExtractedArticle, NormalizedItem, SourceRef
from runner.ingest.rss_feeds import RssProvider

CLOUDFLARE_PAGE = """<!DOCTYPE html><html><head><title>Just a moment...</title></head>
<body><div id="challenge"><noscript>Enable JavaScript and cookies to continue</noscript></div></body></html>"""

RSS_ONE_ITEM = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Tennis</title>
<item><title>Swiatek reaches semis</title><link>https://www.espn.com/tennis/story/_/id/1</link>
<description>Swiatek won 6-4, 6-2.</description><pubDate>Mon, 02 Jun 2025 10:00:00 GMT</pubDate></item>
</channel></rss>"""


def _item(url="https://www.espn.com/tennis/story/_/id/1", **kwargs):
    return NormalizedItem(
        external_id=url,
        title="Swiatek reaches semis",
        url=url,
        source=SourceRef(name="ESPN Tennis", url="https://www.espn.com/espn/rss/tennis/news"),
        **kwargs,
    )


class TestDetectChallenge:
    def test_cloudflare_title(self):
        found = detect_challenge(CLOUDFLARE_PAGE)

        assert found is not None
        assert found.type == "cloudflare"
        assert found.reason == "cloudflare-challenge"

    def test_turnstile_marker(self):
        found = detect_challenge('<div class="cf-turnstile" data-sitekey="x"></div>')
        assert found.type == "cloudflare"

    def test_generic_block_phrase(self):
        found = detect_challenge("<h1>Request denied by WAF</h1>")
        assert found.type == "bot-block"

    def test_access_denied_phrase_is_generic_block(self):
        html = "<html><body><p>Access Denied</p></body></html>"
        assert detect_challenge(html).type == "bot-block"

    def test_akamai_text_after_entity_decoding(self):
        html = "<html><body><p>Access&#32;denied</p><p>Request ID: 18.abc</p></body></html>"
        found = detect_challenge(html)
        assert found.type == "akamai"
        assert found.indicator == "text-access-denied"

    def test_verify_human_text(self):
        html = "<p>Please verify you are human.</p><footer>Protected by Cloudflare</footer>"
        found = detect_challenge(html)
        assert found.type == "cloudflare"
        assert found.indicator == "text-verify-human"

    def test_genuine_article(self):
        html = "<html><head><title>Alcaraz wins</title></head><body><p>Alcaraz won 6-4.</p></body></html>"
        assert detect_challenge(html) is None
        assert not has_challenge_artifact(html)

    def test_empty_payload(self):
        assert detect_challenge(None) is None
        assert detect_challenge("") is None

    def test_strip_tags_drops_scripts(self):
        assert strip_tags("<p>Hi <b>there</b></p><script>var x = 1;</script>") == "Hi there"


class TestChallengeShortCircuit:
    def test_process_item_never_creates_draft(self, repo, ledger, settings):
        item = _item(challenge=detect_challenge(CLOUDFLARE_PAGE))

        result = process_item(item, "rss:feed", "source-1", repo, ledger, settings)

        assert result.blocked
        assert result.reason == "challenge"
        assert repo.drafts() == []
        assert ledger.rows == {}

    def test_extractor_challenge_flows_through_provider(self, repo, ledger, settings):
        settings = replace(settings, fetch_article=True)
        detection = ChallengeDetection(type="cloudflare", indicator="title", confidence=0.95)

        def extractor(url, _settings):
            return ExtractedArticle(url=url, challenge=detection)

        feed = FeedConfig("rss", "ESPN Tennis", "https://www.espn.com/espn/rss/tennis/news")
        provider = RssProvider(feed.name, feed.url, settings, extractor=extractor)

        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS_ONE_ITEM, None)), patch(
            "runner.ingest.feed_ingestion.provider_for", return_value=provider
        ):
            result = ingest_feeds([feed], repo, ledger, settings)

        assert result.totals["blocked"] == 1
        assert result.totals["created"] == 0
        assert repo.drafts() == []

    def test_challenge_feed_yields_no_items(self, settings):
        provider = RssProvider("ESPN Tennis", "https://www.espn.com/espn/rss/tennis/news", settings)

        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(CLOUDFLARE_PAGE, None)):
            assert provider.fetch_new_items() == []

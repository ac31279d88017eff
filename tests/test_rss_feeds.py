"""Tests for the syndication feed providers."""

from dataclasses import replace
from unittest.mock import Mock, patch

from runner.ingest.items import ExtractedArticle
from runner.ingest.rss_feeds import (
    AtpRssProvider,
    RssProvider,
    TaggedRssProvider,
    absolutize_relative_assets,
    harvest_links,
    strip_placeholders,
)

ESPN_FEED = "https://www.espn.com/espn/rss/tennis/news"
ATP_FEED = "https://www.atptour.com/en/media/rss-feed/xml-feed"

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>ESPN Tennis</title>
<item><title>Sinner into quarterfinals</title><link>https://www.espn.com/tennis/story/_/id/100</link>
<description>&lt;p&gt;Sinner beat Rublev 6-1, 6-3.&lt;/p&gt;</description>
<category>Roland Garros</category>
<pubDate>Mon, 02 Jun 2025 10:00:00 GMT</pubDate></item>
<item><title>Old news</title><link>https://www.espn.com/tennis/story/_/id/99</link>
<pubDate>Mon, 02 Jun 2025 08:00:00 GMT</pubDate></item>
<item><title></title><link>https://www.espn.com/tennis/story/_/id/98</link></item>
</channel></rss>"""

ATP_RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>ATP</title>
<item><title>Zverev saves match points</title><link>https://www.atptour.com/en/news/zverev-rg-2025</link>
<category>Roland Garros</category>
<description><![CDATA[<p>Zverev won 3-6, 7-6(5), 6-4.</p>[NEWSLETTER FORM]<img src="/-/media/zverev.jpg"><script>x()</script>]]></description>
<pubDate>Mon, 02 Jun 2025 10:00:00 GMT</pubDate></item>
</channel></rss>"""


class TestRssProvider:
    def test_lists_items_without_enrichment(self, settings):
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings, extractor=Mock())
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS, None)):
            items = provider.fetch_new_items()

        assert [i.title for i in items] == ["Sinner into quarterfinals", "Old news"]
        first = items[0]
        assert first.url == "https://www.espn.com/tennis/story/_/id/100"
        assert first.excerpt == "Sinner beat Rublev 6-1, 6-3."
        assert first.published_at == "2025-06-02T10:00:00+00:00"
        assert first.tags == []
        provider.extractor.assert_not_called()

    def test_since_filter(self, settings):
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS, None)):
            items = provider.fetch_new_items(since_iso="2025-06-02T09:00:00+00:00")

        assert [i.title for i in items] == ["Sinner into quarterfinals"]

    def test_blocked_feed_retries_with_fallback_headers(self, settings):
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings)
        with patch(
            "runner.ingest.rss_feeds.fetch_url", side_effect=[(None, "blocked:403"), (RSS, None)]
        ) as fetch:
            items = provider.fetch_new_items()

        assert fetch.call_count == 2
        assert "MyTennisNewsBot" in fetch.call_args_list[1].args[1]["User-Agent"]
        assert len(items) == 2

    def test_fetch_error_yields_empty(self, settings):
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(None, "request_error:timeout")):
            assert provider.fetch_new_items() == []

    def test_enrichment_copies_extracted_fields(self, settings):
        settings = replace(settings, fetch_article=True)
        extracted = ExtractedArticle(
            url="https://www.espn.com/tennis/story/_/id/100",
            body_html='<p>Full <a href="https://www.espn.com/player/sinner">Sinner</a> story</p>',
            body_text="Full Sinner story",
            authors=["D. Reporter"],
            image="https://a.espncdn.com/sinner.jpg",
        )
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings, extractor=lambda url, s: extracted)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS, None)):
            item = provider.fetch_new_items()[0]

        assert item.body_text == "Full Sinner story"
        assert item.authors == ["D. Reporter"]
        assert item.image == "https://a.espncdn.com/sinner.jpg"
        assert item.links == ["https://www.espn.com/player/sinner"]

    def test_disallowed_domain_is_not_extracted(self, settings):
        settings = replace(settings, fetch_article=True, allowed_domains=("atptour.com",))
        extractor = Mock()
        provider = RssProvider("ESPN Tennis", ESPN_FEED, settings, extractor=extractor)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS, None)):
            provider.fetch_new_items()

        extractor.assert_not_called()


class TestTaggedRssProvider:
    def test_categories_become_tags(self, settings):
        provider = TaggedRssProvider("ESPN Tennis", ESPN_FEED, settings)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(RSS, None)):
            items = provider.fetch_new_items()

        assert items[0].tags == ["Roland Garros"]


class TestAtpRssProvider:
    def test_description_is_fallback_body(self, settings):
        provider = AtpRssProvider("ATP Tour", ATP_FEED, settings)
        with patch("runner.ingest.rss_feeds.fetch_url", return_value=(ATP_RSS, None)):
            item = provider.fetch_new_items()[0]

        assert "[NEWSLETTER FORM]" not in item.body_html
        assert "<script" not in item.body_html
        assert 'src="https://www.atptour.com/-/media/zverev.jpg"' in item.body_html
        assert item.body_text == "Zverev won 3-6, 7-6(5), 6-4."
        assert item.excerpt == "Zverev won 3-6, 7-6(5), 6-4."
        assert item.tags == ["Roland Garros"]

    def test_excerpt_limit_matches_other_providers(self, settings):
        full = "Zverev won 3-6, 7-6(5), 6-4."
        for limit, expected in ((0, full), (6, "Zverev")):
            provider = AtpRssProvider("ATP Tour", ATP_FEED, replace(settings, excerpt_max_chars=limit))
            with patch("runner.ingest.rss_feeds.fetch_url", return_value=(ATP_RSS, None)):
                item = provider.fetch_new_items()[0]
            assert item.excerpt == expected


class TestHelpers:
    def test_harvest_links_keeps_absolute_unique(self):
        html = '<a href="https://a.com/x">x</a><a href="/rel">r</a><a href="https://a.com/x">again</a>'
        assert harvest_links(html) == ["https://a.com/x"]

    def test_strip_placeholders(self):
        assert strip_placeholders("<p>a</p>[ATP APP]") == "<p>a</p>"

    def test_absolutize_relative_assets_skips_protocol_relative(self):
        html = '<img src="/a.jpg"><img src="//cdn.com/b.jpg">'
        out = absolutize_relative_assets(html, "https://www.atptour.com/")
        assert 'src="https://www.atptour.com/a.jpg"' in out
        assert 'src="//cdn.com/b.jpg"' in out

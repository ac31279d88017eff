"""Tests for the WTA listing provider."""

from datetime import datetime, timezone
from unittest.mock import patch

from runner.ingest.items import ExtractedArticle
from runner.ingest.wta_news import WtaNewsProvider, parse_listing, parse_relative_date

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)

LISTING = """
<ul>
  <li class="content-listing-grid__item">
    <a class="content-listing-grid__url" href="/news/4301/gauff-storms-into-final" data-tracking-article-id="4301">
      <img src="/images/gauff.jpg">
      <span class="badge__label">Roland Garros</span>
      <h3 class="content-listing-grid__title">Gauff storms into final</h3>
      <p class="content-listing-grid__description">Coco Gauff beat Lois Boisson 6-1, 6-2.</p>
      <span class="content-listing-grid__publishdate">3h ago</span>
    </a>
  </li>
  <li class="content-listing-grid__item content-listing-grid__ad-item"><a class="content-listing-grid__url" href="/ad">Ad</a></li>
  <li class="content-listing-grid__item">
    <a class="content-listing-grid__url" href="https://www.wtatennis.com/news/4302/no-title"></a>
  </li>
</ul>
"""


class TestParseRelativeDate:
    def test_hours(self):
        assert parse_relative_date("3h ago", now=NOW) == "2025-06-02T09:00:00+00:00"

    def test_days(self):
        assert parse_relative_date("2d ago", now=NOW) == "2025-05-31T12:00:00+00:00"

    def test_minutes(self):
        assert parse_relative_date("15m ago", now=NOW) == "2025-06-02T11:45:00+00:00"

    def test_month_name_date(self):
        assert parse_relative_date("3rd June 2025", now=NOW) == "2025-06-03T00:00:00+00:00"

    def test_unparseable(self):
        assert parse_relative_date("yesterday", now=NOW) is None
        assert parse_relative_date("", now=NOW) is None
        assert parse_relative_date(None) is None


class TestParseListing:
    def test_reads_cards_and_skips_ads(self):
        items = parse_listing(LISTING, max_items=8)

        assert len(items) == 1
        card = items[0]
        assert card.id == "wta-4301"
        assert card.url == "https://www.wtatennis.com/news/4301/gauff-storms-into-final"
        assert card.title == "Gauff storms into final"
        assert card.published_label == "3h ago"
        assert card.image == "https://www.wtatennis.com/images/gauff.jpg"
        assert card.tags == ["Roland Garros"]

    def test_respects_max_items(self):
        assert parse_listing(LISTING, max_items=0) == []


class TestWtaNewsProvider:
    def test_builds_items_per_section(self, settings):
        def extractor(url, _settings):
            return ExtractedArticle(
                url=url,
                title="Gauff storms into Roland Garros final",
                body_html='<p>Gauff won <a href="https://www.wtatennis.com/players/gauff">6-1, 6-2</a>.</p>',
                body_text="Gauff won 6-1, 6-2.",
                published_at="2025-06-02T08:00:00+00:00",
                tags=["Clay"],
            )

        provider = WtaNewsProvider(settings, extractor=extractor)
        with patch("runner.ingest.wta_news.fetch_url", return_value=(LISTING, None)) as fetch:
            items = provider.fetch_new_items()

        assert fetch.call_count == 2
        assert len(items) == 2
        first = items[0]
        assert first.external_id == "wta-4301"
        assert first.title == "Gauff storms into Roland Garros final"
        assert first.tags == ["Match Reaction", "Roland Garros", "Clay"]
        assert items[1].tags[0] == "Player Feature"
        assert first.links == ["https://www.wtatennis.com/players/gauff"]
        assert first.excerpt == "Coco Gauff beat Lois Boisson 6-1, 6-2."

    def test_since_filter_uses_listing_label(self, settings):
        provider = WtaNewsProvider(settings, extractor=lambda url, s: None)
        with patch("runner.ingest.wta_news.fetch_url", return_value=(LISTING, None)):
            items = provider.fetch_new_items(since_iso="2999-01-01T00:00:00+00:00")

        assert items == []

    def test_listing_error_yields_nothing(self, settings):
        provider = WtaNewsProvider(settings, extractor=lambda url, s: None)
        with patch("runner.ingest.wta_news.fetch_url", return_value=(None, "blocked:403")):
            assert provider.fetch_new_items() == []

"""
Tests for the analysis tools and their scraping collaborator
(social_mcp/analysis.py, social_mcp/scraper.py).

No network is used: HTML parsing is tested on inline fixtures, and the tool
functions run against the ``fake_web`` fixture from conftest.
"""

import httpx
import pytest

from social_mcp import analysis, scraper

SEARCH_HTML = """
<html><body>
  <div class="result">
    <h2 class="result__title">
      <a href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fpost%3Fa%3D1&rut=x">Example post</a>
    </h2>
    <a class="result__snippet">A snippet about <b>#growth</b></a>
  </div>
  <div class="result">
    <h2 class="result__title"><a href="https://direct.example.org/page">Direct link</a></h2>
  </div>
  <div class="result">
    <h2 class="result__title"><a href="/relative">Skipped</a></h2>
  </div>
  <div class="result"><p>No title at all</p></div>
</body></html>
"""

PAGE_HTML = """
<html>
<head>
  <title> Acme on Instagram </title>
  <meta name="description" content="Official Acme account">
  <meta property="og:description" content="Acme shares daily tips">
  <meta name="keywords" content="acme, tips">
  <script>var tracking = "#notatag";</script>
</head>
<body>
  <h1>Acme</h1>
  <h2>Latest posts</h2>
  <p>Follow us for #tips and #Acme news.</p>
  <style>.x { color: red; }</style>
</body>
</html>
"""


class TestParseSearchResults:
    def test_extracts_title_url_and_snippet(self):
        results = scraper.parse_search_results(SEARCH_HTML, max_results=10)

        assert [r.url for r in results] == [
            "https://example.com/post?a=1",
            "https://direct.example.org/page",
        ]
        assert results[0].title == "Example post"
        assert results[0].snippet == "A snippet about #growth"
        assert results[1].snippet == ""

    def test_respects_max_results(self):
        assert len(scraper.parse_search_results(SEARCH_HTML, max_results=1)) == 1


class TestParsePage:
    def test_extracts_metadata_and_visible_text(self):
        page = scraper.parse_page("https://acme.example/", PAGE_HTML)

        assert page.title == "Acme on Instagram"
        assert page.description == "Official Acme account"
        assert page.og_tags == {"og:description": "Acme shares daily tips"}
        assert page.meta_tags["keywords"] == "acme, tips"
        assert page.h1 == ["Acme"]
        assert page.h2 == ["Latest posts"]
        assert "#tips" in page.text_content
        assert "color: red" not in page.text_content
        assert page.error is None


class TestUrlGuard:
    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost:4202/health",
            "http://127.0.0.1/",
            "http://10.0.0.5/admin",
            "http://169.254.169.254/latest/meta-data",
            "file:///etc/passwd",
            "ftp://example.com/",
            "http://printer.local/",
        ],
    )
    def test_rejects_non_public_targets(self, url):
        assert scraper.is_public_http_url(url) is False

    @pytest.mark.parametrize("url", ["https://example.com/a", "http://93.184.215.14/"])
    def test_allows_public_targets(self, url):
        assert scraper.is_public_http_url(url) is True

    async def test_fetch_page_refuses_private_url(self):
        page = await scraper.fetch_page("http://127.0.0.1:4202/health")

        assert page.error == "URL not allowed"


class TestNetworkFailures:
    async def test_search_failure_yields_no_results(self, monkeypatch):
        async def broken_get(self, *args, **kwargs):
            raise httpx.ConnectError("offline")

        monkeypatch.setattr(httpx.AsyncClient, "get", broken_get)

        assert await scraper.search_web("anything") == []

    async def test_fetch_failure_is_reported_on_the_page(self, monkeypatch):
        async def broken_get(self, *args, **kwargs):
            raise httpx.ReadTimeout("too slow")

        monkeypatch.setattr(httpx.AsyncClient, "get", broken_get)

        page = await scraper.fetch_page("https://example.com/")

        assert page.error == "too slow"


class TestTextStatistics:
    def test_top_hashtags_are_case_insensitive(self):
        assert analysis.top_hashtags("#Fit #fit #FIT #run", 5) == [("fit", 3), ("run", 1)]

    def test_top_terms_skip_stopwords_and_excluded_words(self):
        text = "strength strength mobility about with fitness fitness fitness"

        assert analysis.top_terms(text, 5, exclude=["fitness"]) == [
            ("strength", 2),
            ("mobility", 1),
        ]


class TestTools:
    async def test_gather_results_deduplicates_by_url(self, fake_web):
        results = await analysis.gather_results(["a", "b", "c"], per_query=5)
        urls = [r.url for r in results]

        assert len(fake_web) == 3
        assert urls.count("https://news.example.com/fitness-trends") == 1
        assert len(urls) == len(set(urls))

    async def test_research_hashtags_ranks_by_frequency(self, fake_web):
        brief = await analysis.research_hashtags("fitness", platform="instagram", count=3)

        assert brief.startswith("## Hashtag Research: fitness")
        assert "**Platform:** instagram" in brief
        assert "| #fitness |" in brief
        assert brief.index("#fitness") < brief.index("#workout")
        assert any("instagram" in q for q in fake_web)

    async def test_score_engagement_reports_percentages(self, fake_web):
        brief = await analysis.score_engagement("Nike", platform="instagram")

        assert "## Engagement Analysis: Nike" in brief
        assert "median reported rate" in brief
        assert "Industry Benchmarks" in brief

    async def test_detect_trends_defaults_to_this_week(self, fake_web):
        brief = await analysis.detect_trends("fitness")

        assert "**Timeframe:** this week" in brief
        assert "Strength is back" in brief
        assert "#fitness" in brief

    async def test_analyze_profile_uses_business_name(self, fake_web):
        brief = await analysis.analyze_profile("@acme", platform="tiktok", business_name="Acme Inc")

        assert brief.startswith("## Profile Analysis: @acme")
        assert "**Business:** Acme Inc" in brief
        assert "Weekly roundup of fitness content" in brief
        assert any("Acme Inc" in q for q in fake_web)

    async def test_empty_web_still_produces_a_brief(self, monkeypatch):
        async def no_results(query, max_results=10):
            return []

        monkeypatch.setattr(scraper, "search_web", no_results)

        brief = await analysis.research_hashtags("obscure topic")

        assert "Start from #ObscureTopic" in brief
        assert "No sources found" in brief

"""
The four analysis tools behind the MCP endpoint.

Every tool follows the same shape: run a handful of web searches, merge and
de-duplicate the hits by URL, fetch the most promising pages, and condense
what was found into a markdown research brief. The heavy lifting is the
scraping collaborator in ``scraper.py``; this module only decides what to ask
for and how to summarize it.
"""

import asyncio
import logging
import re
from collections import Counter
from typing import Iterable

from social_mcp import scraper
from social_mcp.scraper import PageData, SearchResult

logger = logging.getLogger(__name__)

HASHTAG_RE = re.compile(r"#([A-Za-z][A-Za-z0-9_]{1,39})")
PERCENT_RE = re.compile(r"(\d{1,2}(?:\.\d{1,2})?)\s?%")
WORD_RE = re.compile(r"[a-z][a-z'-]{3,}")

STOPWORDS = frozenset(
    """
    about after also been best from have here into just like more most much
    news only over post posts said some such than that their them then there
    these they this those time very what when where which while will with
    your year years social media 2025 2026
    """.split()
)

TIMEFRAME_LABELS = {
    "today": "today",
    "this_week": "this week",
    "this_month": "this month",
}


async def gather_results(queries: Iterable[str], per_query: int) -> list[SearchResult]:
    """Run the searches concurrently and de-duplicate by URL, keeping first-seen order."""
    batches = await asyncio.gather(*(scraper.search_web(q, per_query) for q in queries))
    seen: set[str] = set()
    unique: list[SearchResult] = []
    for batch in batches:
        for result in batch:
            if result.url not in seen:
                seen.add(result.url)
                unique.append(result)
    return unique


async def fetch_pages(results: list[SearchResult], limit: int) -> list[PageData]:
    pages = await asyncio.gather(*(scraper.fetch_page(r.url) for r in results[:limit]))
    return [page for page in pages if not page.error]


def _corpus(results: list[SearchResult], pages: list[PageData]) -> str:
    parts = [f"{r.title} {r.snippet}" for r in results]
    parts.extend(page.text_content for page in pages)
    return "\n".join(parts)


def top_hashtags(text: str, count: int) -> list[tuple[str, int]]:
    counts = Counter(tag.lower() for tag in HASHTAG_RE.findall(text))
    return counts.most_common(count)


def top_terms(text: str, count: int, exclude: Iterable[str] = ()) -> list[tuple[str, int]]:
    excluded = STOPWORDS | {word.lower() for word in exclude}
    words = (w for w in WORD_RE.findall(text.lower()) if w not in excluded)
    return Counter(words).most_common(count)


def _sources_section(results: list[SearchResult], limit: int = 10) -> list[str]:
    if not results:
        return ["_No sources found. The search backend may be unavailable; try again later._"]
    lines = []
    for result in results[:limit]:
        snippet = f": {result.snippet}" if result.snippet else ""
        lines.append(f"- [{result.title or result.url}]({result.url}){snippet}")
    return lines


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


async def analyze_profile(
    username: str,
    platform: str | None = None,
    business_name: str | None = None,
) -> str:
    handle = username.lstrip("@")
    platform_label = platform or "social media"
    brand = business_name or handle
    logger.info("Starting profile analysis", extra={"log_data": {"username": username, "platform": platform}})

    results = await gather_results(
        [
            f"{username} {platform_label} profile",
            f"@{handle} {platform_label}",
            f"{brand} {platform_label} followers engagement",
            f"{brand} social media presence review",
        ],
        per_query=8,
    )
    pages = await fetch_pages(results, limit=5)
    corpus = _corpus(results, pages)

    lines = [f"## Profile Analysis: @{handle}", f"**Platform:** {platform_label}"]
    if business_name:
        lines.append(f"**Business:** {business_name}")

    lines += ["", "### Presence Overview"]
    described = [p for p in pages if p.description or p.og_tags.get("og:description")]
    if described:
        for page in described[:5]:
            summary = page.og_tags.get("og:description") or page.description
            lines.append(f"- **{page.title or page.url}**: {summary}")
    else:
        lines.append("- No profile descriptions could be retrieved.")

    lines += ["", "### Recurring Content Themes"]
    terms = top_terms(corpus, 10, exclude=[handle, brand, platform_label])
    lines += [f"- {term} ({n} mentions)" for term, n in terms] or ["- Not enough content to infer themes."]

    lines += ["", "### Hashtags In Use"]
    tags = top_hashtags(corpus, 10)
    lines.append(", ".join(f"#{tag}" for tag, _ in tags) if tags else "None detected.")

    lines += ["", "### Sources"] + _sources_section(results)
    logger.info("Profile analysis complete", extra={"log_data": {"username": username, "sources_found": len(results)}})
    return "\n".join(lines)


async def score_engagement(brand_or_topic: str, platform: str | None = None) -> str:
    platform_label = platform or "social media"
    logger.info("Starting engagement scoring", extra={"log_data": {"brand_or_topic": brand_or_topic, "platform": platform}})

    results = await gather_results(
        [
            f"{brand_or_topic} {platform_label} engagement rate",
            f"{brand_or_topic} {platform_label} likes comments shares",
            f"{brand_or_topic} social media analytics metrics",
            f"{brand_or_topic} {platform_label} best posts viral content",
        ],
        per_query=8,
    )
    benchmarks = await scraper.search_web(f"{platform_label} engagement rate benchmarks by industry", 5)
    pages = await fetch_pages(results, limit=5)

    brand_rates = [float(v) for v in PERCENT_RE.findall(_corpus(results, pages))]
    benchmark_rates = [float(v) for v in PERCENT_RE.findall(_corpus(benchmarks, []))]

    lines = [f"## Engagement Analysis: {brand_or_topic}"]
    lines.append(f"**Platform:** {platform}" if platform else "**Cross-platform analysis**")

    lines += ["", "### Reported Engagement Figures"]
    if brand_rates:
        median = sorted(brand_rates)[len(brand_rates) // 2]
        lines.append(f"- Figures found: {len(brand_rates)}; median reported rate {median:.2f}%")
        lines.append(f"- Range: {min(brand_rates):.2f}% to {max(brand_rates):.2f}%")
    else:
        lines.append("- No engagement percentages were published in the sources found.")

    lines += ["", "### Industry Benchmarks"]
    if benchmark_rates:
        median = sorted(benchmark_rates)[len(benchmark_rates) // 2]
        lines.append(f"- Median benchmark rate across {len(benchmark_rates)} figures: {median:.2f}%")
    lines += _sources_section(benchmarks, limit=5)

    lines += ["", "### Sources"] + _sources_section(results)
    logger.info("Engagement scoring complete", extra={"log_data": {"brand_or_topic": brand_or_topic, "sources_found": len(results)}})
    return "\n".join(lines)


async def detect_trends(niche: str, timeframe: str | None = None) -> str:
    label = TIMEFRAME_LABELS.get(timeframe or "this_week", "this week")
    logger.info("Starting trend detection", extra={"log_data": {"niche": niche, "timeframe": timeframe}})

    results = await gather_results(
        [
            f"{niche} trending {label}",
            f"{niche} viral social media {label}",
            f"{niche} latest news trends",
            f"{niche} trending topics discussion",
            f"{niche} social media conversation {label}",
        ],
        per_query=8,
    )
    pages = await fetch_pages(results, limit=6)
    corpus = _corpus(results, pages)

    lines = [f"## Trend Report: {niche}", f"**Timeframe:** {label}", "", "### Emerging Topics"]
    terms = top_terms(corpus, 12, exclude=niche.split())
    lines += [f"{i}. {term} ({n} mentions)" for i, (term, n) in enumerate(terms, 1)] or [
        "No recurring topics detected."
    ]

    lines += ["", "### Trending Hashtags"]
    tags = top_hashtags(corpus, 10)
    lines.append(", ".join(f"#{tag} ({n})" for tag, n in tags) if tags else "None detected.")

    lines += ["", "### Headlines"]
    headlines = [h for page in pages for h in page.h1 + page.h2][:10]
    lines += [f"- {h}" for h in headlines if h] or ["- No headlines retrieved."]

    lines += ["", "### Sources"] + _sources_section(results)
    logger.info("Trend detection complete", extra={"log_data": {"niche": niche, "sources_found": len(results)}})
    return "\n".join(lines)


async def research_hashtags(topic: str, platform: str | None = None, count: int = 20) -> str:
    platform_label = platform or "social media"
    logger.info("Starting hashtag research", extra={"log_data": {"topic": topic, "platform": platform, "count": count}})

    results = await gather_results(
        [
            f"best {topic} hashtags {platform_label}",
            f"{topic} trending hashtags {platform_label}",
            f"{topic} hashtag strategy niche hashtags",
            f"{topic} hashtag reach engagement rate",
        ],
        per_query=8,
    )
    pages = await fetch_pages(results, limit=5)
    ranked = top_hashtags(_corpus(results, pages), count)

    lines = [f"## Hashtag Research: {topic}", f"**Platform:** {platform_label}", ""]
    if ranked:
        lines += ["| Hashtag | Mentions | Reach |", "|---|---|---|"]
        broad_cutoff = ranked[0][1] / 2
        for tag, n in ranked:
            reach = "broad" if n >= broad_cutoff else "niche"
            lines.append(f"| #{tag} | {n} | {reach} |")
        lines += ["", "### Recommended Set", " ".join(f"#{tag}" for tag, _ in ranked[: min(10, len(ranked))])]
    else:
        fallback = re.sub(r"[^A-Za-z0-9]", "", topic.title())
        lines.append(f"No hashtags found in the sources. Start from #{fallback} and related variants.")

    lines += ["", "### Sources"] + _sources_section(results)
    logger.info("Hashtag research complete", extra={"log_data": {"topic": topic, "hashtags_found": len(ranked)}})
    return "\n".join(lines)

"""
Web search and page fetching for the analysis tools.

Searches go to DuckDuckGo's HTML endpoint and pages are fetched with httpx and
parsed with BeautifulSoup. Both functions swallow network and parse failures
into empty / error-annotated results: a flaky source should thin out a report,
not fail the tool call.
"""

import ipaddress
import logging
import time
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

import httpx
from bs4 import BeautifulSoup

from social_mcp.config import settings

logger = logging.getLogger(__name__)

SEARCH_URL = "https://html.duckduckgo.com/html/"
MAX_TEXT_CHARS = 5000


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str


@dataclass
class PageData:
    url: str
    title: str = ""
    description: str = ""
    h1: list[str] = field(default_factory=list)
    h2: list[str] = field(default_factory=list)
    meta_tags: dict[str, str] = field(default_factory=dict)
    og_tags: dict[str, str] = field(default_factory=dict)
    text_content: str = ""
    load_time_ms: int = 0
    error: str | None = None


def is_public_http_url(url: str) -> bool:
    """Only http(s) URLs whose host is not loopback, private or link-local."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".local"):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True
    return address.is_global


def _result_url(href: str) -> str:
    # DuckDuckGo wraps targets as //duckduckgo.com/l/?uddg=<encoded url>
    target = parse_qs(urlparse(href).query).get("uddg")
    return target[0] if target else href


def parse_search_results(html: str, max_results: int) -> list[SearchResult]:
    soup = BeautifulSoup(html, "html.parser")
    results: list[SearchResult] = []
    for node in soup.select(".result"):
        if len(results) >= max_results:
            break
        link = node.select_one(".result__title a")
        if link is None:
            continue
        url = _result_url(link.get("href", ""))
        if not url.startswith("http"):
            continue
        snippet = node.select_one(".result__snippet")
        results.append(
            SearchResult(
                title=link.get_text(strip=True),
                url=url,
                snippet=snippet.get_text(" ", strip=True) if snippet else "",
            )
        )
    return results


async def search_web(query: str, max_results: int = 10) -> list[SearchResult]:
    try:
        async with httpx.AsyncClient(
            timeout=settings.search_timeout_seconds,
            headers={"User-Agent": settings.user_agent},
        ) as client:
            response = await client.get(SEARCH_URL, params={"q": query})
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Web search failed for %r: %s", query, exc)
        return []
    return parse_search_results(response.text, max_results)


def parse_page(url: str, html: str) -> PageData:
    soup = BeautifulSoup(html, "html.parser")
    page = PageData(url=url)

    if soup.title and soup.title.string:
        page.title = soup.title.string.strip()
    description = soup.find("meta", attrs={"name": "description"})
    if description is not None:
        page.description = (description.get("content") or "").strip()

    page.h1 = [h.get_text(strip=True) for h in soup.find_all("h1")]
    page.h2 = [h.get_text(strip=True) for h in soup.find_all("h2")][:10]

    for meta in soup.find_all("meta"):
        content = (meta.get("content") or "")[:200]
        if not content:
            continue
        if meta.get("name"):
            page.meta_tags[meta["name"]] = content
        prop = meta.get("property") or ""
        if prop.startswith("og:"):
            page.og_tags[prop] = content

    body = soup.body or soup
    for tag in body.find_all(["script", "style", "noscript"]):
        tag.decompose()
    page.text_content = " ".join(body.get_text(" ").split())[:MAX_TEXT_CHARS]
    return page


async def fetch_page(url: str) -> PageData:
    if not is_public_http_url(url):
        return PageData(url=url, error="URL not allowed")

    start = time.monotonic()
    try:
        async with httpx.AsyncClient(
            timeout=settings.fetch_timeout_seconds,
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        return PageData(
            url=url,
            load_time_ms=int((time.monotonic() - start) * 1000),
            error=str(exc) or type(exc).__name__,
        )

    elapsed = int((time.monotonic() - start) * 1000)
    if response.status_code >= 400:
        return PageData(url=url, load_time_ms=elapsed, error=f"HTTP {response.status_code}")

    page = parse_page(url, response.text)
    page.load_time_ms = elapsed
    return page

"""
Shared test fixtures for the social media analytics MCP server.

These fixtures provide:
- Isolated settings and a temporary JSON key store seeded with known keys
- The full Starlette app with its lifespan running (code sweeper + session
  task group), and an httpx client bound to it in-memory
- A fake web so the analysis tools never touch the network

Seeded keys:
    PRO_KEY          pro tier, no usage
    FREE_KEY         free tier, no usage, email free@example.test
    DEACTIVATED_KEY  deactivated
    EXHAUSTED_KEY    free tier with this month's quota used up
"""

import asyncio
import json
from datetime import UTC, datetime

import httpx
import pytest

from social_mcp import scraper
from social_mcp.config import Settings
from social_mcp.keystore import ApiKeyStore
from social_mcp.scraper import PageData, SearchResult
from social_mcp.server import create_app

ISSUER = "http://testserver"
ADMIN_SECRET = "test-admin-secret"

PRO_KEY = "sk_soc_pro0000000000000000000000000000000000000000000000"
FREE_KEY = "sk_soc_free000000000000000000000000000000000000000000000"
DEACTIVATED_KEY = "sk_soc_off0000000000000000000000000000000000000000000000"
EXHAUSTED_KEY = "sk_soc_used000000000000000000000000000000000000000000000"


def current_month() -> str:
    return datetime.now(UTC).strftime("%Y-%m")


def seed_keys_file(path) -> None:
    def entry(name, tier, active=True, used=0, email=None):
        return {
            "name": name,
            "email": email,
            "tier": tier,
            "created": "2026-01-01T00:00:00+00:00",
            "active": active,
            "usage": {current_month(): used} if used else {},
        }

    document = {
        "keys": {
            PRO_KEY: entry("Pro Customer", "pro", email="pro@example.test"),
            FREE_KEY: entry("Free User", "free", email="free@example.test"),
            DEACTIVATED_KEY: entry("Former Customer", "starter", active=False),
            EXHAUSTED_KEY: entry("Busy User", "free", used=10),
        }
    }
    path.write_text(json.dumps(document), encoding="utf-8")


# ---------------------------------------------------------------------------
# Settings and key store
# ---------------------------------------------------------------------------


@pytest.fixture
def keys_file(tmp_path):
    path = tmp_path / "api-keys.json"
    seed_keys_file(path)
    return path


@pytest.fixture
def test_settings(keys_file) -> Settings:
    """Settings that ignore the environment's .env file and point at the temp key store."""
    return Settings(
        _env_file=None,
        issuer_url=ISSUER,
        keys_file=keys_file,
        admin_secret=ADMIN_SECRET,
    )


@pytest.fixture
def key_store(keys_file) -> ApiKeyStore:
    return ApiKeyStore(keys_file, upgrade_url=ISSUER)


# ---------------------------------------------------------------------------
# Application with lifespan
# ---------------------------------------------------------------------------


@pytest.fixture
async def app(test_settings, key_store):
    """
    The full ASGI app with its lifespan running.

    The lifespan is driven by hand over the ASGI lifespan protocol in its own
    task, because the session task group it opens has to be entered and exited
    by the same task. Startup is complete once the app sends
    ``lifespan.startup.complete``.
    """
    application = create_app(test_settings, key_store)

    startup_sent = False
    startup_complete = asyncio.Event()
    shutdown_triggered = asyncio.Event()

    async def receive():
        nonlocal startup_sent
        if not startup_sent:
            startup_sent = True
            return {"type": "lifespan.startup"}
        await shutdown_triggered.wait()
        return {"type": "lifespan.shutdown"}

    async def send(message):
        if message["type"].startswith("lifespan.startup"):
            startup_complete.set()

    scope = {"type": "lifespan", "asgi": {"version": "3.0"}, "state": {}}
    lifespan_task = asyncio.create_task(application(scope, receive, send))
    await startup_complete.wait()

    yield application

    shutdown_triggered.set()
    await lifespan_task


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=ISSUER) as http_client:
        yield http_client


# ---------------------------------------------------------------------------
# Fake web for the analysis tools
# ---------------------------------------------------------------------------


FAKE_PAGE_TEXT = (
    "Fitness creators report an engagement rate of 3.5% on Instagram. "
    "Popular tags this week: #fitness #workout #fitness #gymlife #fitness #workout. "
    "Strength training and mobility routines dominate conversations."
)


@pytest.fixture
def fake_web(monkeypatch):
    """
    Replace web search and page fetching with canned data.

    Returns the list of queries the tools searched for, so tests can assert
    on what was asked.
    """
    queries: list[str] = []

    async def fake_search(query: str, max_results: int = 10) -> list[SearchResult]:
        queries.append(query)
        return [
            SearchResult(
                title="Fitness trends",
                url="https://news.example.com/fitness-trends",
                snippet="Engagement sits around 2.1% for #fitness accounts",
            ),
            SearchResult(
                title=f"Result for {query}",
                url=f"https://example.com/{len(queries)}",
                snippet="",
            ),
        ]

    async def fake_fetch(url: str) -> PageData:
        return PageData(
            url=url,
            title="Fitness Weekly",
            description="Weekly roundup of fitness content",
            h1=["Strength is back"],
            h2=["Mobility routines"],
            text_content=FAKE_PAGE_TEXT,
        )

    monkeypatch.setattr(scraper, "search_web", fake_search)
    monkeypatch.setattr(scraper, "fetch_page", fake_fetch)
    return queries

"""
Tool dispatch table: the FastMCP server and the four analysis tools it exposes.

FastMCP turns each decorated function's signature into the tool's JSON input
schema, validates arguments against it, and routes ``tools/call`` by name:

    analyze_profile     -> analysis.analyze_profile
    score_engagement    -> analysis.score_engagement
    detect_trends       -> analysis.detect_trends
    research_hashtags   -> analysis.research_hashtags

Authentication and metering happen before a request reaches this module (see
sessions.py). By the time a tool runs, the caller's key has already been
validated and debited, so the middleware here only records what was called.

The low-level MCP server behind ``mcp`` is what the session multiplexer runs
once per session.
"""

import logging
from typing import Annotated, Literal

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import ToolResult
from mcp.server.lowlevel import Server
from mcp.types import CallToolRequestParams
from pydantic import Field

from social_mcp import analysis
from social_mcp.config import settings

logger = logging.getLogger(__name__)

Platform = Literal["twitter", "instagram", "linkedin", "facebook", "tiktok"]
HashtagPlatform = Literal["instagram", "twitter", "tiktok", "linkedin"]
Timeframe = Literal["today", "this_week", "this_month"]


# ---------------------------------------------------------------------------
# Tool audit middleware
# ---------------------------------------------------------------------------


class ToolAuditMiddleware(Middleware):
    """Logs every dispatched tool call together with the session it arrived on."""

    def _session_id(self) -> str | None:
        try:
            request = get_http_request()
        except RuntimeError:
            return None
        return request.headers.get("mcp-session-id")

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        tool_name = context.message.name
        session_id = self._session_id()
        logger.info(
            "Tool call dispatched",
            extra={"log_data": {"tool": tool_name, "session_id": session_id}},
        )
        try:
            return await call_next(context)
        except Exception:
            logger.warning(
                "Tool call failed",
                extra={"log_data": {"tool": tool_name, "session_id": session_id}},
                exc_info=True,
            )
            raise


mcp = FastMCP(
    name=settings.server_name,
    instructions=(
        "Social media research tools. Each tool searches the public web and "
        "returns a markdown brief: profile analysis, engagement scoring, trend "
        "detection and hashtag research."
    ),
    middleware=[ToolAuditMiddleware()],
)


def protocol_server() -> Server:
    """The low-level MCP server that handles one session's message stream."""
    return mcp._mcp_server


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Analyze a social media profile or brand presence: what the account "
        "posts about, how it describes itself and which hashtags it uses."
    )
)
async def analyze_profile(
    username: Annotated[str, Field(description="Social media username or handle, e.g. @nike")],
    platform: Annotated[Platform | None, Field(description="Platform to focus on")] = None,
    business_name: Annotated[
        str | None, Field(description="Business name, if different from the username")
    ] = None,
) -> str:
    return await analysis.analyze_profile(username, platform, business_name)


@mcp.tool(
    description="Collect published engagement figures for a brand or topic and compare them with industry benchmarks."
)
async def score_engagement(
    brand_or_topic: Annotated[str, Field(description="Brand name or topic to score")],
    platform: Annotated[Platform | None, Field(description="Platform to focus on")] = None,
) -> str:
    return await analysis.score_engagement(brand_or_topic, platform)


@mcp.tool(description="Detect trending topics, hashtags and headlines within a niche.")
async def detect_trends(
    niche: Annotated[str, Field(description="Industry or niche, e.g. 'fitness', 'SaaS marketing'")],
    timeframe: Annotated[Timeframe | None, Field(description="How recent the trends should be")] = None,
) -> str:
    return await analysis.detect_trends(niche, timeframe)


@mcp.tool(description="Research the hashtags most used around a topic, ranked by how often they appear.")
async def research_hashtags(
    topic: Annotated[str, Field(description="Topic to find hashtags for")],
    platform: Annotated[HashtagPlatform | None, Field(description="Platform to focus on")] = None,
    count: Annotated[int, Field(ge=1, le=50, description="Number of hashtags to return")] = 20,
) -> str:
    return await analysis.research_hashtags(topic, platform, count)

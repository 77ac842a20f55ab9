"""
HTTP application: OAuth bridge, MCP endpoint, key management and health.

This module wires the components together into one Starlette app:

    /.well-known/*, /register, /authorize, /token   -> oauth.OAuthGateway
    /mcp (GET, POST, DELETE), POST /                -> sessions.SessionMultiplexer
    /api/keys/*, /api/pricing                       -> key_routes.KeyRoutes
    /health                                         -> liveness + session count

Every response carries permissive CORS headers so browser-based MCP clients
can connect, and any OPTIONS request is answered with 204 before routing.

Lifecycle (Starlette lifespan):
    startup   -> start the authorization code sweeper and the session task group
    shutdown  -> terminate every open session, then stop the sweeper

Running the server:
    python -m social_mcp.server

    This starts uvicorn on http://0.0.0.0:4202 (MCP_HOST / MCP_PORT).
"""

import contextlib
import logging
import time

import uvicorn
from mcp.server.lowlevel import Server
from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from social_mcp.clients import ClientRegistry
from social_mcp.codes import CodeEngine
from social_mcp.config import Settings, settings as default_settings
from social_mcp.key_routes import KeyRoutes
from social_mcp.keystore import ApiKeyStore
from social_mcp.logging_config import configure_logging
from social_mcp.oauth import OAuthGateway
from social_mcp.sessions import SessionMultiplexer
from social_mcp.tools import protocol_server

logger = logging.getLogger(__name__)

# Browser-based MCP clients (web inspectors, hosted chat UIs) call this server
# cross-origin. Mcp-Session-Id must be both allowed as a request header and
# exposed on responses, or a browser client cannot read its own session id.
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-API-Key, X-Admin-Secret, Mcp-Session-Id, Accept"
    ),
    "Access-Control-Expose-Headers": "Mcp-Session-Id",
}


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
# Every HTTP response gets the headers above, including 401s and errors from
# the MCP transport. Preflight requests (OPTIONS on any path) are answered
# here with 204 and never reach routing, so no route has to list OPTIONS.


class CORSHeadersMiddleware:
    """
    Adds the CORS headers to every HTTP response and short-circuits preflights.

    Written as a pure ASGI middleware rather than ``BaseHTTPMiddleware`` so the
    MCP transport's responses pass through unbuffered.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=204, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return

        # Headers are added to the response-start message as it goes out;
        # the body is never touched.
        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
# One factory builds every component and wires them into a Starlette app.
# Components are plain objects passed to each other explicitly:
#
#   ApiKeyStore  <- OAuthGateway (validates typed keys at /authorize/submit)
#                <- SessionMultiplexer (validates + meters every /mcp request)
#                <- KeyRoutes (signup, provisioning, usage)
#   CodeEngine   <- OAuthGateway (issues codes, redeems them at /token)
#
# Tests call create_app() with their own Settings and key store; production
# calls it with no arguments and gets the module-level settings.


def create_app(
    settings: Settings | None = None,
    key_store: ApiKeyStore | None = None,
    server: Server | None = None,
) -> Starlette:
    """
    Build the application and its components.

    The components are exposed on ``app.state`` (``key_store``, ``codes``,
    ``clients``, ``oauth``, ``sessions``) for tests and operational tooling.
    """
    settings = settings or default_settings
    # The key store's upgrade URL is the pricing page linked from quota errors.
    if key_store is None:
        key_store = ApiKeyStore(settings.keys_file, upgrade_url=settings.issuer_url)

    codes = CodeEngine(
        ttl_seconds=settings.auth_code_ttl_seconds,
        sweep_interval_seconds=settings.code_sweep_interval_seconds,
    )
    # Codes and registered clients live in memory and do not survive a restart.
    # Clients simply re-register; a half-finished login just starts over.
    clients = ClientRegistry()
    oauth = OAuthGateway(settings, key_store, codes, clients)
    # One low-level MCP server (the FastMCP tool table) is shared by every
    # session; each session runs its own loop over it.
    multiplexer = SessionMultiplexer(server or protocol_server(), key_store, settings.issuer_url)
    key_routes = KeyRoutes(settings, key_store)
    started_at = time.monotonic()

    # Liveness only: no credential required, no key store access.
    async def health(request: Request) -> Response:
        return JSONResponse(
            {
                "status": "ok",
                "server": settings.server_name,
                "version": settings.server_version,
                "uptime": round(time.monotonic() - started_at, 3),
                "activeSessions": len(multiplexer),
            }
        )

    # Startup enters the code sweeper, then the session task group. Shutdown
    # unwinds in reverse: every open session is terminated before the sweeper
    # stops. Sessions are spawned into the task group, so no request can open
    # one before startup completes or after shutdown begins.
    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        async with codes.running(), multiplexer.run():
            logger.info(
                "Server started",
                extra={"log_data": {"issuer_url": settings.issuer_url, "keys_file": str(settings.keys_file)}},
            )
            yield
        logger.info("Server stopped")

    # /mcp is the Streamable HTTP endpoint: POST carries JSON-RPC, GET opens the
    # server-to-client stream, DELETE ends the session. POST / is accepted as
    # an alias for clients configured with the bare server URL.
    routes = [
        Route("/health", health, methods=["GET"]),
        *oauth.routes(),
        *key_routes.routes(),
        Route("/mcp", multiplexer, methods=["GET", "POST", "DELETE"]),
        Route("/", multiplexer, methods=["POST"]),
    ]

    app = Starlette(
        routes=routes,
        middleware=[Middleware(CORSHeadersMiddleware)],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.key_store = key_store
    app.state.codes = codes
    app.state.clients = clients
    app.state.oauth = oauth
    app.state.sessions = multiplexer
    return app


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
# Entry point for `python -m social_mcp.server` and the `social-mcp` script.
# Logging is configured here, not at import, so tests keep pytest's handlers.


def main() -> None:
    configure_logging(default_settings.log_level)
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=api-key+oauth)",
        default_settings.host,
        default_settings.port,
    )
    uvicorn.run(
        create_app(),
        host=default_settings.host,
        port=default_settings.port,
        log_level=default_settings.log_level,
    )


if __name__ == "__main__":
    main()

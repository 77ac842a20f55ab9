"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (prefix ``MCP_``) or a local ``.env`` file.

In production these are injected by the container runtime:
- MCP_HOST, MCP_PORT, MCP_LOG_LEVEL control the listener and log verbosity
- MCP_ISSUER_URL is the public base URL advertised in the OAuth metadata
- MCP_ADMIN_SECRET guards the key provisioning endpoint

Tests build their own ``Settings`` instances and pass them to the app factory,
so nothing here needs to be monkeypatched.
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `issuer_url` reads from MCP_ISSUER_URL and `keys_file`
    reads from MCP_KEYS_FILE.
    """

    # --- Server settings ---

    # The network interface to bind to. "0.0.0.0" listens on all interfaces,
    # which a container needs so traffic from outside it can reach the server.
    # Use "127.0.0.1" locally to accept only connections from this machine.
    host: str = "0.0.0.0"

    # The port uvicorn listens on. Anything above 1024 avoids needing root.
    port: int = 4202

    # Logging verbosity, mapped onto Python's logging levels.
    # "info" records every auth decision; "debug" adds library chatter.
    log_level: str = "info"

    # --- Identity of this server ---

    # Public base URL. Every endpoint advertised in the OAuth metadata documents
    # (authorize, token, register, protected resource) is derived from it, and
    # so is the resource_metadata link in every 401 WWW-Authenticate header.
    # Behind a proxy this must be the URL clients see, not the bind address.
    issuer_url: str = "http://localhost:4202"

    # Human-readable name rendered on the API key entry page and announced to
    # MCP clients in the initialize response. The version is reported by /health.
    server_name: str = "Social Media Analytics"
    server_version: str = "1.0.0"

    # --- API key store ---

    # JSON file holding every API key with its tier and monthly usage.
    # Relative paths resolve against the working directory. The file is
    # created on the first write, and the key CLI writes to the same file.
    keys_file: Path = Path("data/api-keys.json")

    # Shared secret for POST /api/keys/provision (sent as X-Admin-Secret).
    # Provisioning is refused outright while this is unset, so a fresh
    # deployment can never hand out paid tiers by accident.
    admin_secret: str | None = None

    # --- OAuth bridge ---

    # How long an authorization code stays redeemable. RFC 6749 recommends
    # a maximum of 10 minutes; clients redeem within seconds in practice.
    auth_code_ttl_seconds: int = 600

    # How often the background task drops expired, never-redeemed codes.
    # Expiry is also checked on redemption, so this only bounds memory.
    code_sweep_interval_seconds: float = 300.0

    # Advisory lifetime reported by the token endpoint. The access token is the
    # API key itself and does not actually expire on this schedule.
    access_token_expires_in: int = 86400

    # When False, a redirect URI that a registered client never declared is
    # logged and allowed. When True, /authorize rejects it with a 400.
    strict_redirect_uris: bool = False

    # When False, a token request without redirect_uri skips the redirect check.
    # When True, it must be present and equal to the one used at /authorize.
    require_token_redirect_uri: bool = False

    # --- Outbound scraping (analysis tools) ---

    # Per-request timeouts for the DuckDuckGo search and for page fetches.
    # A timed-out search yields no results; a timed-out fetch is reported on
    # the page entry. Neither fails the tool call.
    search_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 15.0

    # Sent on every outbound request. Some sites refuse clients without one.
    user_agent: str = "Mozilla/5.0 (compatible; SocialMCPBot/1.0)"

    model_config = {
        # All environment variables are prefixed with MCP_ to avoid collisions.
        # For example: MCP_PORT=8080, MCP_ISSUER_URL=https://mcp.example.com
        "env_prefix": "MCP_",
        # Also read a .env file if one exists (handy for local development).
        # Real environment variables take precedence over .env values.
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @field_validator("issuer_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        # Endpoint URLs are built as f"{issuer_url}/token"; avoid "//token".
        return value.rstrip("/")


# Singleton instance: import this from other modules.
# Created once at import time, so environment variables are read immediately.
# Tests never touch it; they build their own Settings for create_app().
settings = Settings()

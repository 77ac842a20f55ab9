"""
Self-service key management and pricing endpoints.

    POST /api/keys/signup       {name, email}          -> free key (or recover existing)
    POST /api/keys/provision    {name?, email, tier}   -> create or upgrade (X-Admin-Secret)
    GET  /api/keys/usage        ?key= or X-API-Key     -> current-month usage
    GET  /api/pricing                                  -> tier table

Provisioning is what a billing webhook calls after a successful checkout; it
is refused outright while no admin secret is configured.
"""

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from social_mcp.config import Settings
from social_mcp.keystore import TIER_LIMITS, TIER_PRICES, ApiKeyStore, tier_limit

logger = logging.getLogger(__name__)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_object(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class KeyRoutes:
    def __init__(self, settings: Settings, key_store: ApiKeyStore):
        self.settings = settings
        self.key_store = key_store

    def _admin_authorized(self, request: Request) -> bool:
        expected = self.settings.admin_secret
        presented = request.headers.get("x-admin-secret") or ""
        if not expected:
            return False
        return hmac.compare_digest(presented.encode(), expected.encode())

    async def signup(self, request: Request) -> Response:
        body = await _json_object(request) or {}
        name = str(body.get("name") or "").strip()
        email = str(body.get("email") or "").strip()
        if not name or not email:
            return _error("name and email required", 400)

        found = self.key_store.find_by_email(email)
        if found is not None:
            key, _ = found
            usage = self.key_store.usage(key)
            return JSONResponse(
                {
                    "key": key,
                    "tier": usage["tier"],
                    "limit": usage["limit"],
                    "used": usage["used"],
                    "recovered": True,
                }
            )

        key = await self.key_store.create_key(name, "free", email)
        logger.info("New free signup", extra={"log_data": {"name": name}})
        return JSONResponse({"key": key, "tier": "free", "limit": TIER_LIMITS["free"]})

    async def provision(self, request: Request) -> Response:
        if not self._admin_authorized(request):
            logger.warning("Key provisioning refused: bad admin secret")
            return _error("Unauthorized", 401)

        body = await _json_object(request) or {}
        email = str(body.get("email") or "").strip()
        tier = str(body.get("tier") or "").strip()
        name = str(body.get("name") or "").strip() or email
        if not email or not tier:
            return _error("email and tier required", 400)
        if tier not in TIER_LIMITS:
            return _error(f"unknown tier: {tier}", 400)

        key = await self.key_store.upgrade(email, tier)
        upgraded = key is not None
        if key is None:
            key = await self.key_store.create_key(name, tier, email)

        logger.info(
            "Key provisioned",
            extra={"log_data": {"name": name, "tier": tier, "upgraded": upgraded}},
        )
        return JSONResponse(
            {"key": key, "tier": tier, "limit": tier_limit(tier), "upgraded": upgraded}
        )

    async def usage(self, request: Request) -> Response:
        key = request.query_params.get("key") or request.headers.get("x-api-key")
        if not key:
            return _error("key required", 400)
        summary = self.key_store.usage(key)
        if summary is None:
            return _error("Invalid key", 404)
        return JSONResponse(summary)

    async def pricing(self, request: Request) -> Response:
        return JSONResponse(
            {
                "tiers": [
                    {"tier": tier, "price": TIER_PRICES[tier], "requestsPerMonth": limit}
                    for tier, limit in TIER_LIMITS.items()
                ]
            }
        )

    def routes(self) -> list[Route]:
        return [
            Route("/api/keys/signup", self.signup, methods=["POST"]),
            Route("/api/keys/provision", self.provision, methods=["POST"]),
            Route("/api/keys/usage", self.usage, methods=["GET"]),
            Route("/api/pricing", self.pricing, methods=["GET"]),
        ]

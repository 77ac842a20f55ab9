"""
Authorization codes and PKCE verification.

The code engine is the only owner of pending authorization codes. A code binds
an already-validated API key to the PKCE challenge the client sent to
/authorize, and can be redeemed exactly once at /token:

    issue(...)  -> code          (after the user typed a valid API key)
    redeem(code, verifier, ...) -> RedeemedGrant | GrantError

Redemption removes the code from storage before anything else is checked, so
a code is consumed by the first attempt whether that attempt succeeds or not.
Two concurrent redemptions of the same code therefore yield one success and
one "not found" failure.

PKCE (RFC 7636):
    S256:  challenge == BASE64URL(SHA256(verifier)), without padding
    plain: challenge == verifier
"""

import asyncio
import base64
import contextlib
import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from social_mcp.logging_config import preview

logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")


class GrantError(Exception):
    """
    Raised when an authorization code cannot be redeemed.

    Every cause maps to the OAuth ``invalid_grant`` error; ``description``
    tells the client which check failed and is safe to return verbatim.
    """

    def __init__(self, description: str):
        self.description = description
        super().__init__(description)


@dataclass(frozen=True)
class AuthorizationCode:
    """One pending exchange of a validated API key for a bearer token."""

    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    api_key: str
    scope: str
    resource: str | None
    expires_at: float


@dataclass(frozen=True)
class RedeemedGrant:
    api_key: str
    scope: str
    client_id: str


def compute_challenge(code_verifier: str, method: str) -> str:
    """Derive the PKCE challenge a verifier corresponds to."""
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier


class CodeEngine:
    """
    Issues, stores and redeems short-lived single-use authorization codes.

    Storage is an in-process dict guarded by a lock; every operation holds the
    lock only for the dict access itself. Codes do not survive a restart.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._codes)

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return code in self._codes

    def issue(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        api_key: str,
        scope: str,
        resource: str | None = None,
    ) -> str:
        """Mint a new code bound to ``api_key``. Expires after ``ttl_seconds``."""
        code = secrets.token_hex(32)
        auth_code = AuthorizationCode(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            api_key=api_key,
            scope=scope,
            resource=resource,
            expires_at=self._clock() + self.ttl_seconds,
        )
        with self._lock:
            self._codes[code] = auth_code

        logger.info(
            "Authorization code issued",
            extra={
                "log_data": {
                    "client_id": client_id,
                    "challenge_method": code_challenge_method,
                    "decision": "code_issued",
                }
            },
        )
        return code

    def redeem(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str | None = None,
        require_redirect_uri: bool = False,
    ) -> RedeemedGrant:
        """
        Consume a code and return the API key it was issued for.

        Checks, in order: the code exists, it has not expired, the redirect URI
        matches (when supplied, or always when ``require_redirect_uri``), and
        the verifier reproduces the stored challenge.

        Raises:
            GrantError: If any check fails. The code is gone either way.
        """
        with self._lock:
            auth_code = self._codes.pop(code, None)

        if auth_code is None:
            self._reject("not_found")
            raise GrantError("Authorization code not found or expired")

        if self._clock() > auth_code.expires_at:
            self._reject("expired", auth_code)
            raise GrantError("Authorization code expired")

        if redirect_uri or require_redirect_uri:
            if redirect_uri != auth_code.redirect_uri:
                self._reject("redirect_uri_mismatch", auth_code)
                raise GrantError("redirect_uri mismatch")

        computed = compute_challenge(code_verifier, auth_code.code_challenge_method)

        # An empty stored challenge never matches, whatever the verifier hashes to.
        if not auth_code.code_challenge or not hmac.compare_digest(
            computed.encode(), auth_code.code_challenge.encode()
        ):
            logger.warning(
                "PKCE verification failed",
                extra={
                    "log_data": {
                        "client_id": auth_code.client_id,
                        "challenge_method": auth_code.code_challenge_method,
                        "stored_challenge": preview(auth_code.code_challenge),
                        "computed_challenge": preview(computed),
                        "verifier_length": len(code_verifier),
                        "decision": "rejected",
                        "reason": "pkce_mismatch",
                    }
                },
            )
            raise GrantError("code_verifier does not match the challenge")

        logger.info(
            "Authorization code redeemed",
            extra={"log_data": {"client_id": auth_code.client_id, "decision": "redeemed"}},
        )
        return RedeemedGrant(
            api_key=auth_code.api_key,
            scope=auth_code.scope,
            client_id=auth_code.client_id,
        )

    def _reject(self, reason: str, auth_code: AuthorizationCode | None = None) -> None:
        logger.warning(
            "Authorization code rejected",
            extra={
                "log_data": {
                    "client_id": auth_code.client_id if auth_code else None,
                    "decision": "rejected",
                    "reason": reason,
                }
            },
        )

    def sweep(self) -> int:
        """Drop every expired code. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [code for code, data in self._codes.items() if now > data.expires_at]
            for code in expired:
                del self._codes[code]
        if expired:
            logger.debug("Swept %d expired authorization codes", len(expired))
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    @contextlib.asynccontextmanager
    async def running(self) -> AsyncIterator["CodeEngine"]:
        """Run the periodic expiry sweep for as long as the context is open."""
        task = asyncio.create_task(self._sweep_forever(), name="auth-code-sweeper")
        try:
            yield self
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

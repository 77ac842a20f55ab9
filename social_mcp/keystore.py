"""
Tiered API keys: validation, usage metering and the JSON file that stores them.

This module is the credential layer every other component leans on:
- The OAuth bridge validates the key a user types into the authorize page
- The session multiplexer validates the bearer token on every protocol request
  and debits one unit of usage per billable call
- The key management routes create, upgrade and report on keys

The rest of the server only depends on the two-method ``KeyStoreAdapter``
protocol (``validate`` + ``record_usage``), so tests can swap in any object
with that shape.

File format (``data/api-keys.json``):

    {
        "keys": {
            "sk_soc_ab12...": {
                "name": "Acme", "email": "ops@acme.test", "tier": "pro",
                "created": "2026-10-01T09:00:00+00:00", "active": true,
                "usage": {"2026-10": 42}
            }
        }
    }

Usage is counted per calendar month ("YYYY-MM", UTC). A key whose counter for
the current month has reached its tier limit is rejected until the month
rolls over or the key is upgraded.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Literal, Protocol

logger = logging.getLogger(__name__)

Tier = Literal["free", "starter", "pro", "business"]

# Requests per calendar month.
TIER_LIMITS: dict[str, int] = {
    "free": 10,
    "starter": 200,
    "pro": 1000,
    "business": 5000,
}

# USD per month.
TIER_PRICES: dict[str, int] = {
    "free": 0,
    "starter": 19,
    "pro": 49,
    "business": 99,
}

DEFAULT_LIMIT = TIER_LIMITS["free"]
KEY_PREFIX = "sk_soc_"


@dataclass(frozen=True)
class KeyValidation:
    """
    Result of checking a credential against the key store.

    Attributes:
        valid: Whether the key may be used right now
        tier: Tier of the key (or "discovery" for unauthenticated scanner calls)
        name: Owner name recorded when the key was created
        error: Human-readable rejection reason, surfaced verbatim to callers
    """

    valid: bool
    tier: str | None = None
    name: str | None = None
    error: str | None = None


class KeyStoreAdapter(Protocol):
    """The capability the OAuth bridge and the session multiplexer consume."""

    async def validate(self, key: str | None) -> KeyValidation: ...

    async def record_usage(self, key: str) -> None: ...


@dataclass
class ApiKeyData:
    name: str
    tier: str
    created: str
    active: bool = True
    email: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ApiKeyData":
        return cls(
            name=data.get("name", ""),
            tier=data.get("tier", "free"),
            created=data.get("created", ""),
            active=bool(data.get("active", True)),
            email=data.get("email"),
            usage={k: int(v) for k, v in (data.get("usage") or {}).items()},
        )


def tier_limit(tier: str) -> int:
    return TIER_LIMITS.get(tier, DEFAULT_LIMIT)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ApiKeyStore:
    """
    JSON-file backed API key store.

    The file is the source of truth. The store keeps a parsed copy in memory
    and re-reads it whenever the file content differs from what the store last
    read or wrote, so keys minted by another process (the
    ``scripts/create_key.py`` CLI, a second server) are seen without a restart.

    Every mutation runs under one store-wide lock as reload, change, write.
    Concurrent ``record_usage`` calls therefore never lose an increment, and a
    write never drops a key another process added since the last read.
    """

    def __init__(
        self,
        path: Path,
        upgrade_url: str = "",
        now: Callable[[], datetime] = _utc_now,
    ):
        self.path = Path(path)
        self.upgrade_url = upgrade_url
        self._now = now
        self._keys: dict[str, ApiKeyData] = {}
        self._loaded_content: bytes | None = None
        self._write_lock = asyncio.Lock()
        self._load()

    # ----- persistence -----

    def _load(self) -> None:
        """Re-read the file if its bytes differ from what we last read or wrote."""
        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Failed to read API keys from %s: %s", self.path, exc)
            return
        if content == self._loaded_content:
            return
        self._loaded_content = content
        try:
            raw = json.loads(content)
            self._keys = {
                key: ApiKeyData.from_dict(data)
                for key, data in (raw.get("keys") or {}).items()
            }
            logger.info("Loaded %d API keys from %s", len(self._keys), self.path)
        except (ValueError, AttributeError) as exc:
            # Keep serving the last good copy; the next write replaces the file.
            logger.warning("Failed to load API keys from %s: %s", self.path, exc)

    def _refresh_for_read(self) -> None:
        # A mutation in flight has already reloaded and holds unsaved changes.
        if not self._write_lock.locked():
            self._load()

    def _snapshot(self) -> bytes:
        document = {"keys": {key: asdict(data) for key, data in self._keys.items()}}
        return json.dumps(document, indent=2).encode("utf-8")

    def _write(self, content: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(self.path)
        self._loaded_content = content

    async def _persist(self) -> None:
        """Write the in-memory copy back. Caller holds ``_write_lock``."""
        await asyncio.to_thread(self._write, self._snapshot())

    def _month(self) -> str:
        return self._now().strftime("%Y-%m")

    # ----- KeyStoreAdapter -----

    async def validate(self, key: str | None) -> KeyValidation:
        """
        Check that a key exists, is active and still has quota this month.

        Never raises: every failure is reported through ``KeyValidation.error``
        so callers can show the message to the user unchanged.
        """
        if not key:
            return KeyValidation(valid=False, error="Missing API key. Pass X-API-Key header.")

        self._refresh_for_read()
        data = self._keys.get(key)
        if data is None:
            return KeyValidation(valid=False, error="Invalid API key.")
        if not data.active:
            return KeyValidation(valid=False, error="API key is deactivated.")

        used = data.usage.get(self._month(), 0)
        limit = tier_limit(data.tier)
        if used >= limit:
            upgrade = f" Upgrade at {self.upgrade_url}/pricing" if self.upgrade_url else ""
            return KeyValidation(
                valid=False,
                error=(
                    f"Rate limit exceeded. {data.tier} tier allows {limit} "
                    f"requests/month. Current: {used}.{upgrade}"
                ),
            )

        return KeyValidation(valid=True, tier=data.tier, name=data.name)

    async def record_usage(self, key: str) -> None:
        """Debit one request from the key's current-month counter."""
        async with self._write_lock:
            self._load()
            data = self._keys.get(key)
            if data is None:
                return
            month = self._month()
            data.usage[month] = data.usage.get(month, 0) + 1
            await self._persist()

    # ----- key management -----

    async def create_key(self, name: str, tier: Tier = "free", email: str | None = None) -> str:
        key = f"{KEY_PREFIX}{secrets.token_hex(24)}"
        async with self._write_lock:
            self._load()
            self._keys[key] = ApiKeyData(
                name=name,
                tier=tier,
                email=email,
                created=self._now().isoformat(),
            )
            await self._persist()
        logger.info(
            "API key created",
            extra={"log_data": {"name": name, "tier": tier}},
        )
        return key

    def find_by_email(self, email: str) -> tuple[str, ApiKeyData] | None:
        """Return the first active key registered to ``email``."""
        self._refresh_for_read()
        for key, data in self._keys.items():
            if data.email == email and data.active:
                return key, data
        return None

    async def upgrade(self, email: str, tier: Tier) -> str | None:
        async with self._write_lock:
            self._load()
            found = self.find_by_email(email)
            if found is None:
                return None
            key, data = found
            data.tier = tier
            await self._persist()
        return key

    async def deactivate(self, key: str) -> bool:
        async with self._write_lock:
            self._load()
            data = self._keys.get(key)
            if data is None:
                return False
            data.active = False
            await self._persist()
        return True

    def usage(self, key: str) -> dict | None:
        """Current-month usage summary for a key, or None if unknown."""
        data = self.get(key)
        if data is None:
            return None
        used = data.usage.get(self._month(), 0)
        limit = tier_limit(data.tier)
        return {
            "tier": data.tier,
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
        }

    def get(self, key: str) -> ApiKeyData | None:
        self._refresh_for_read()
        return self._keys.get(key)

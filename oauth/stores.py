"""Token vault: storage for client registrations and opaque access tokens.

Two interchangeable backends implement the same contract:
- InMemoryTokenVault: single process, lazy expiry plus a periodic sweep
- RedisTokenVault (oauth.redis_store): shared store, server-side TTL

The backend is chosen once at startup by create_token_vault().
"""

import abc
import asyncio
import logging
import secrets
import time
from typing import Callable, Optional

from mcp.shared.auth import OAuthClientInformationFull

from logging_config import redact
from oauth.models import AccessTokenRecord, UpstreamTokenBundle

logger = logging.getLogger(__name__)

OPAQUE_TOKEN_BYTES = 32


def mint_opaque_token() -> str:
    """Generate a locally issued, high-entropy access token."""
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


def build_access_token_record(
    token: str,
    bundle: UpstreamTokenBundle,
    expires_in_seconds: int,
    now: float,
) -> AccessTokenRecord:
    return AccessTokenRecord(
        token=token,
        upstream_access_token=bundle.access_token,
        id_token=bundle.id_token,
        refresh_token=bundle.refresh_token,
        client_id=bundle.client_id,
        scopes=bundle.scopes,
        expires_in_seconds=expires_in_seconds,
        expires_at=now + expires_in_seconds,
    )


class TokenVault(abc.ABC):
    """Storage contract shared by every backend.

    Missing keys come back as None. Backend connectivity problems raise
    StorageUnavailableError and are never reported as a missing key.
    """

    @abc.abstractmethod
    async def save_client(self, client_id: str, client: OAuthClientInformationFull) -> None:
        """Insert or replace a client registration."""

    @abc.abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        """Look up a client registration."""

    @abc.abstractmethod
    async def save_access_token(self, bundle: UpstreamTokenBundle, expires_in_seconds: int) -> str:
        """Store upstream tokens and return a new opaque token expiring after expires_in_seconds."""

    @abc.abstractmethod
    async def get_access_token(self, token: str) -> Optional[AccessTokenRecord]:
        """Resolve an opaque token; None once it has expired."""

    async def ping(self) -> bool:
        return True

    async def run_maintenance(self, interval: float) -> None:
        """Background housekeeping. Backends with native TTL have nothing to do."""

    async def aclose(self) -> None:
        pass


class InMemoryTokenVault(TokenVault):
    """Single-process vault. Do not use in production or with several workers.

    Expiry is checked at read time; sweep() drops expired records so that
    unread tokens do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._clients: dict[str, OAuthClientInformationFull] = {}
        self._access_tokens: dict[str, AccessTokenRecord] = {}
        logger.warning(
            "[VAULT] In-memory token storage is not suitable for production use. "
            "Set TOKEN_STORAGE_STRATEGY=redis"
        )

    async def save_client(self, client_id: str, client: OAuthClientInformationFull) -> None:
        async with self._lock:
            self._clients[client_id] = client
        logger.info(f"[VAULT] Saved client: {client_id}")

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        async with self._lock:
            return self._clients.get(client_id)

    async def save_access_token(self, bundle: UpstreamTokenBundle, expires_in_seconds: int) -> str:
        token = mint_opaque_token()
        record = build_access_token_record(token, bundle, expires_in_seconds, self._clock())
        async with self._lock:
            self._access_tokens[token] = record
        logger.info(
            f"[VAULT] Issued token {redact(token)} for client {bundle.client_id}, "
            f"expires in {expires_in_seconds}s"
        )
        return token

    async def get_access_token(self, token: str) -> Optional[AccessTokenRecord]:
        async with self._lock:
            record = self._access_tokens.get(token)
            if record is None:
                return None
            if record.is_expired(self._clock()):
                del self._access_tokens[token]
                logger.debug(f"[VAULT] Evicted expired token {redact(token)} on read")
                return None
            return record

    async def sweep(self) -> int:
        """Drop every expired token. Returns how many were removed."""
        now = self._clock()
        async with self._lock:
            expired = [token for token, record in self._access_tokens.items() if record.is_expired(now)]
            for token in expired:
                del self._access_tokens[token]
        if expired:
            logger.debug(f"[VAULT] Swept {len(expired)} expired token(s)")
        return len(expired)

    async def run_maintenance(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    def __len__(self) -> int:
        return len(self._access_tokens)


def create_token_vault(config) -> TokenVault:
    """Build the vault backend selected by TOKEN_STORAGE_STRATEGY."""
    if config.storage_strategy == "redis":
        # Import here so the redis client is only needed when selected
        from oauth.redis_store import RedisTokenVault

        logger.info("[VAULT] Using redis storage strategy")
        return RedisTokenVault.from_config(config)

    logger.warning("[VAULT] Using in-memory storage strategy. DO NOT USE THIS IN PRODUCTION!")
    return InMemoryTokenVault()

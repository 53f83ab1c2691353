"""Redis token vault for horizontally scaled deployments.

Records are JSON documents:
- <prefix>:client:<client_id>  client registration, no expiry
- <prefix>:token:<opaque>      access token mapping, SETEX with the granted lifetime

Redis configuration environment variables:
- REDIS_HOST (default: localhost)
- REDIS_PORT (default: 6379)
- REDIS_DB (default: 0)
- REDIS_PASSWORD (optional)
- REDIS_SSL (default: false)
- REDIS_KEY_PREFIX (default: oauth_proxy)
"""

import logging
import time
from typing import Callable, Optional

import redis
import redis.asyncio as aioredis
from mcp.shared.auth import OAuthClientInformationFull
from pydantic import ValidationError

from errors import StorageUnavailableError
from logging_config import redact
from oauth.models import AccessTokenRecord, UpstreamTokenBundle
from oauth.stores import TokenVault, build_access_token_record, mint_opaque_token

logger = logging.getLogger(__name__)


class RedisTokenVault(TokenVault):
    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "oauth_proxy",
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the Redis-backed vault.

        Args:
            client: redis.asyncio client; responses must be decoded to str.
            key_prefix: Namespace for every key written by the vault.
            clock: Time source used to stamp expires_at on token records.
        """
        self.redis_client = client
        self.key_prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_config(cls, config) -> "RedisTokenVault":
        client = aioredis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            ssl=config.redis_ssl,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        logger.info(f"[VAULT] Redis storage at {config.redis_host}:{config.redis_port}/{config.redis_db}")
        return cls(client, key_prefix=config.redis_key_prefix)

    def _client_key(self, client_id: str) -> str:
        return f"{self.key_prefix}:client:{client_id}"

    def _token_key(self, token: str) -> str:
        return f"{self.key_prefix}:token:{token}"

    async def save_client(self, client_id: str, client: OAuthClientInformationFull) -> None:
        try:
            await self.redis_client.set(
                self._client_key(client_id), client.model_dump_json(exclude_none=True)
            )
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Failed to store client {client_id} in Redis: {e}") from e
        logger.info(f"[VAULT] Saved client: {client_id}")

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        key = self._client_key(client_id)
        data = await self._get(key)
        if data is None:
            return None
        return await self._parse(key, data, OAuthClientInformationFull)

    async def save_access_token(self, bundle: UpstreamTokenBundle, expires_in_seconds: int) -> str:
        token = mint_opaque_token()
        record = build_access_token_record(token, bundle, expires_in_seconds, self._clock())
        try:
            await self.redis_client.setex(
                self._token_key(token), expires_in_seconds, record.model_dump_json()
            )
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Failed to store access token in Redis: {e}") from e
        logger.info(
            f"[VAULT] Issued token {redact(token)} for client {bundle.client_id}, "
            f"expires in {expires_in_seconds}s"
        )
        return token

    async def get_access_token(self, token: str) -> Optional[AccessTokenRecord]:
        key = self._token_key(token)
        data = await self._get(key)
        if data is None:
            return None
        return await self._parse(key, data, AccessTokenRecord)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except redis.RedisError:
            return False

    async def aclose(self) -> None:
        await self.redis_client.aclose()

    async def _get(self, key: str) -> Optional[str]:
        try:
            return await self.redis_client.get(key)
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Failed to read {key} from Redis: {e}") from e

    async def _parse(self, key: str, data: str, model):
        try:
            return model.model_validate_json(data)
        except ValidationError as e:
            # Corrupted record: drop it so the next write starts clean
            logger.error(f"[VAULT] Corrupted record at {key}, deleting")
            try:
                await self.redis_client.delete(key)
            except redis.RedisError:
                logger.warning(f"[VAULT] Could not delete corrupted record at {key}")
            raise StorageUnavailableError(f"Corrupted record at {key}: {e}") from e

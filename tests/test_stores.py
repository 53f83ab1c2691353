"""
In-memory token vault tests.
"""

import asyncio

import pytest
from mcp.shared.auth import OAuthClientInformationFull

from config import Config
from oauth.stores import InMemoryTokenVault, create_token_vault, mint_opaque_token
from conftest import CLIENT_ID, client_record


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_opaque_tokens_are_unique_and_url_safe():
    tokens = {mint_opaque_token() for _ in range(1000)}
    assert len(tokens) == 1000
    assert all(len(token) >= 43 for token in tokens)


class TestClients:
    @pytest.mark.asyncio
    async def test_save_and_get_client(self, vault):
        record = OAuthClientInformationFull.model_validate(client_record())
        await vault.save_client(CLIENT_ID, record)

        assert await vault.get_client(CLIENT_ID) == record

    @pytest.mark.asyncio
    async def test_missing_client_is_none(self, vault):
        assert await vault.get_client("nobody") is None

    @pytest.mark.asyncio
    async def test_save_client_is_an_upsert(self, vault):
        await vault.save_client(CLIENT_ID, OAuthClientInformationFull.model_validate(client_record()))
        renamed = OAuthClientInformationFull.model_validate(client_record(client_name="Renamed"))
        await vault.save_client(CLIENT_ID, renamed)

        assert (await vault.get_client(CLIENT_ID)).client_name == "Renamed"


class TestAccessTokens:
    @pytest.mark.asyncio
    async def test_save_and_resolve(self, vault, bundle):
        token = await vault.save_access_token(bundle, 3600)
        record = await vault.get_access_token(token)

        assert token != bundle.access_token
        assert record.upstream_access_token == bundle.access_token
        assert record.refresh_token == bundle.refresh_token
        assert record.client_id == CLIENT_ID
        assert record.scopes == ["openid", "email"]
        assert record.expires_in_seconds == 3600

    @pytest.mark.asyncio
    async def test_unknown_token_is_none(self, vault):
        assert await vault.get_access_token("not-a-token") is None

    @pytest.mark.asyncio
    async def test_each_save_mints_a_new_token(self, vault, bundle):
        first = await vault.save_access_token(bundle, 3600)
        second = await vault.save_access_token(bundle, 3600)

        assert first != second
        assert len(vault) == 2

    @pytest.mark.asyncio
    async def test_expired_token_is_absent_and_evicted(self, bundle):
        clock = FakeClock()
        vault = InMemoryTokenVault(clock=clock)
        token = await vault.save_access_token(bundle, 60)

        clock.now += 59
        assert await vault.get_access_token(token) is not None

        clock.now += 1
        assert await vault.get_access_token(token) is None
        assert len(vault) == 0

    @pytest.mark.asyncio
    async def test_expiry_in_real_time(self, vault, bundle):
        token = await vault.save_access_token(bundle, 1)
        await asyncio.sleep(1.5)

        assert await vault.get_access_token(token) is None

    @pytest.mark.asyncio
    async def test_sweep_drops_only_expired_tokens(self, bundle):
        clock = FakeClock()
        vault = InMemoryTokenVault(clock=clock)
        short = await vault.save_access_token(bundle, 10)
        long = await vault.save_access_token(bundle, 1000)

        clock.now += 11
        assert await vault.sweep() == 1

        assert len(vault) == 1
        assert await vault.get_access_token(short) is None
        assert await vault.get_access_token(long) is not None

    @pytest.mark.asyncio
    async def test_run_maintenance_sweeps_periodically(self, bundle):
        clock = FakeClock()
        vault = InMemoryTokenVault(clock=clock)
        await vault.save_access_token(bundle, 1)
        clock.now += 5

        task = asyncio.create_task(vault.run_maintenance(0.01))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(vault) == 0


class TestCreateTokenVault:
    def test_memory_strategy(self):
        assert isinstance(create_token_vault(Config({"TOKEN_STORAGE_STRATEGY": "memory"})), InMemoryTokenVault)

    def test_redis_strategy(self):
        from oauth.redis_store import RedisTokenVault

        vault = create_token_vault(Config({"TOKEN_STORAGE_STRATEGY": "redis", "REDIS_KEY_PREFIX": "test"}))

        assert isinstance(vault, RedisTokenVault)
        assert vault.key_prefix == "test"

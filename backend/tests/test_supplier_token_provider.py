import asyncio
from datetime import timedelta

import pytest

from bullion.db_models.supplier_credential import SupplierCredential
from bullion.services.supplier_token_provider import (
    CachedToken,
    DatabaseTokenCache,
    InMemoryTokenCache,
    SupplierTokenProvider,
)
from bullion.utils.dates import utcnow
from bullion.utils.logger import SupplierCallLogger


class CountingLogin:
    def __init__(self):
        self.count = 0

    async def __call__(self):
        self.count += 1
        # Yield so concurrent callers pile up on the lock.
        await asyncio.sleep(0.01)
        return f"token-{self.count}"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_login():
    login = CountingLogin()
    provider = SupplierTokenProvider(login, cache=InMemoryTokenCache())

    tokens = await asyncio.gather(*(provider.get_token() for _ in range(10)))

    assert login.count == 1
    assert set(tokens) == {"token-1"}


@pytest.mark.asyncio
async def test_invalidate_forces_new_login():
    login = CountingLogin()
    provider = SupplierTokenProvider(login, cache=InMemoryTokenCache())

    assert await provider.get_token() == "token-1"
    provider.invalidate()
    assert await provider.get_token() == "token-2"


@pytest.mark.asyncio
async def test_expired_token_is_refreshed():
    login = CountingLogin()
    cache = InMemoryTokenCache()
    cache.store(CachedToken(access_token="stale", expires_at=utcnow() - timedelta(minutes=1)))
    provider = SupplierTokenProvider(login, cache=cache, ttl=timedelta(hours=23))

    assert await provider.get_token() == "token-1"
    assert cache.load().expires_at > utcnow() + timedelta(hours=22)


@pytest.mark.asyncio
async def test_database_cache_is_shared_between_providers(db):
    cache_a = DatabaseTokenCache()
    cache_b = DatabaseTokenCache()
    login_a = CountingLogin()
    login_b = CountingLogin()

    token = await SupplierTokenProvider(login_a, cache=cache_a).get_token()
    assert await SupplierTokenProvider(login_b, cache=cache_b).get_token() == token
    assert login_b.count == 0

    row = db.query(SupplierCredential).filter(SupplierCredential.name == "platform_gold").one()
    assert row.access_token == token

    cache_a.clear()
    assert cache_b.load() is None


def test_supplier_call_logger_masks_credentials():
    call_log = SupplierCallLogger(max_logs=2)
    entry = call_log.log_event(
        "login",
        "Platform Gold login",
        request_data={"email": "ops@summitbullion.test", "password": "hunter2"},
        response_data={"token": "abcdefghijklmnop"},
    )

    assert entry["request_data"]["password"] == "***"
    assert entry["request_data"]["email"] == "ops@summitbullion.test"
    assert entry["response_data"]["token"] == "abcd...mnop"

    call_log.log_event("a", "second")
    call_log.log_event("b", "third")
    assert [e["event_type"] for e in call_log.get_logs()] == ["a", "b"]

"""Platform Gold session token cache.

One login serves every request until it expires or the supplier rejects it.
Concurrent callers that find the cache empty wait on a single login instead
of each logging in.

Two cache backends:
  * ``InMemoryTokenCache`` - per process, fine for a single API instance.
  * ``DatabaseTokenCache`` - stored in ``supplier_credentials`` so that
    horizontally scaled instances and the sync worker share one token.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from bullion.config import settings
from bullion.database import SessionLocal
from bullion.db_models.supplier_credential import SupplierCredential
from bullion.utils.dates import to_utc, utcnow
from bullion.utils.logger import logger

CREDENTIAL_NAME = "platform_gold"


@dataclass
class CachedToken:
    access_token: str
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return bool(self.access_token) and (now or utcnow()) < to_utc(self.expires_at)


class InMemoryTokenCache:
    def __init__(self):
        self._token: Optional[CachedToken] = None

    def load(self) -> Optional[CachedToken]:
        return self._token

    def store(self, token: CachedToken) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class DatabaseTokenCache:
    def __init__(self, session_factory=SessionLocal, name: str = CREDENTIAL_NAME):
        self._session_factory = session_factory
        self.name = name

    def load(self) -> Optional[CachedToken]:
        db = self._session_factory()
        try:
            row = db.query(SupplierCredential).filter(SupplierCredential.name == self.name).first()
            if row is None:
                return None
            return CachedToken(access_token=row.access_token, expires_at=row.expires_at)
        finally:
            db.close()

    def store(self, token: CachedToken) -> None:
        db = self._session_factory()
        try:
            db.merge(
                SupplierCredential(
                    name=self.name,
                    access_token=token.access_token,
                    expires_at=token.expires_at,
                    updated_at=utcnow(),
                )
            )
            db.commit()
        finally:
            db.close()

    def clear(self) -> None:
        db = self._session_factory()
        try:
            db.query(SupplierCredential).filter(SupplierCredential.name == self.name).delete()
            db.commit()
        finally:
            db.close()


def build_token_cache():
    if settings.SUPPLIER_TOKEN_CACHE.lower() == "database":
        return DatabaseTokenCache()
    return InMemoryTokenCache()


class SupplierTokenProvider:
    def __init__(
        self,
        login: Callable[[], Awaitable[str]],
        cache=None,
        ttl: Optional[timedelta] = None,
    ):
        self._login = login
        self._cache = cache if cache is not None else build_token_cache()
        self._ttl = ttl or timedelta(hours=settings.PLATFORM_GOLD_TOKEN_TTL_HOURS)
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[str]:
        cached = self._cache.load()
        if cached and cached.is_valid():
            return cached.access_token
        return None

    async def get_token(self) -> str:
        token = self._cached()
        if token:
            return token

        async with self._lock:
            # Another caller may have logged in while we waited.
            token = self._cached()
            if token:
                return token

            logger.info("Logging in to Platform Gold")
            token = await self._login()
            self._cache.store(CachedToken(access_token=token, expires_at=utcnow() + self._ttl))
            return token

    def invalidate(self) -> None:
        logger.info("Invalidating cached Platform Gold token")
        self._cache.clear()

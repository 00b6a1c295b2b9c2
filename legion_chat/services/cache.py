from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from .. import config
from ..db.models import CacheEntry


def rank_cache_key(account_id: str) -> str:
    return f"nft:rank:{account_id}"


def _expired(entry: CacheEntry, now: datetime) -> bool:
    return entry.expires_at is not None and entry.expires_at <= now


class JsonCache:
    """JSON documents in ``cache_entries`` keyed by string, with lazy expiry on read."""

    def __init__(self, session: AsyncSession, *, ttl_seconds: Optional[int] = None):
        self._session = session
        self._ttl_seconds = ttl_seconds

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        entry = await self._session.get(CacheEntry, key)
        if entry is None:
            return None
        if _expired(entry, datetime.utcnow()):
            await self.delete(key)
            return None
        return entry.value_json

    async def put(self, key: str, value: dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            ttl_seconds = self._ttl_seconds if self._ttl_seconds is not None else config.RANK_CACHE_TTL_SECONDS
        now = datetime.utcnow()
        # merge() upserts on the primary key.
        await self._session.merge(
            CacheEntry(
                key=key,
                value_json=value,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
            )
        )
        await self._session.flush()

    async def delete(self, key: str) -> None:
        entry = await self._session.get(CacheEntry, key)
        if entry is not None:
            await self._session.delete(entry)
            await self._session.flush()

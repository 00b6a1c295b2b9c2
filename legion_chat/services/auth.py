"""API key authentication: X-API-Key -> ApiKey row -> opaque account id."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .. import config
from ..db.models import ApiKey
from ..db.session import get_session

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "lgc_"
RATE_WINDOW_SECONDS = 60.0


def hash_api_key(plaintext_key: str) -> str:
    if not config.API_KEY_PEPPER and not config.ALLOW_NO_AUTH:
        logger.error("api_key_pepper_missing allow_no_auth=false")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="api_key_pepper_missing")
    pepper = (config.API_KEY_PEPPER or "").encode("utf-8")
    return hmac.new(pepper, plaintext_key.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_api_key() -> str:
    # The prefix marks Legion keys in logs; the redactor masks the rest.
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


class KeyRateLimiter:
    """Fixed one-minute window per key id. Per-process only."""

    def __init__(self, window_seconds: float = RATE_WINDOW_SECONDS, clock=time.monotonic):
        self._window = window_seconds
        self._clock = clock
        self._windows: dict[uuid.UUID, tuple[float, int]] = {}
        self._warned = False

    def check(self, key_id: uuid.UUID, limit_per_min: int) -> None:
        """Count one request; raise 429 with Retry-After once the key is over its limit."""
        if limit_per_min <= 0:
            return
        if config.ENV == "production" and not self._warned:
            logger.warning("api_key_rate_limit_in_memory replicas_do_not_share_counts=true")
            self._warned = True

        now = self._clock()
        started, count = self._windows.get(key_id, (now, 0))
        if now - started >= self._window:
            started, count = now, 0
        count += 1
        self._windows[key_id] = (started, count)

        if count > limit_per_min:
            retry_after = max(1, int(self._window - (now - started)))
            logger.info("api_key_rate_limited key_id=%s retry_after=%s", key_id, retry_after)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)},
            )

    def reset(self) -> None:
        self._windows.clear()


rate_limiter = KeyRateLimiter()


async def _active_key(session: AsyncSession, plaintext_key: str) -> Optional[ApiKey]:
    key_hash = hash_api_key(plaintext_key)
    api_key = (await session.exec(select(ApiKey).where(ApiKey.key_hash == key_hash))).first()
    if api_key is None or not api_key.is_active or api_key.deactivated_at is not None:
        return None
    return api_key


async def get_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    session: AsyncSession = Depends(get_session),
) -> Optional[ApiKey]:
    if not x_api_key:
        if config.ALLOW_NO_AUTH:
            return None
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-API-Key")

    api_key = await _active_key(session, x_api_key)
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    rate_limiter.check(api_key.id, api_key.rate_limit_per_min)
    api_key.last_used_at = datetime.utcnow()
    session.add(api_key)
    return api_key


async def get_account_id(api_key: Optional[ApiKey] = Depends(get_api_key)) -> str:
    """Resolve the caller's opaque account id (the dev account when auth is disabled)."""
    if api_key is None:
        return config.DEV_ACCOUNT_ID
    return api_key.account_id

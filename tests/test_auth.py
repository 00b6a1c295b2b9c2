import uuid

import httpx
import pytest
import pytest_asyncio
from fastapi import HTTPException
from sqlmodel import select

from legion_chat import config
from legion_chat.app.main import app
from legion_chat.db.models import ApiKey
from legion_chat.scripts.create_api_key import create_api_key
from legion_chat.services.auth import API_KEY_PREFIX, KeyRateLimiter, hash_api_key, rate_limiter


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest_asyncio.fixture
async def client(engine, monkeypatch):
    monkeypatch.setattr(config, "ALLOW_NO_AUTH", False)
    rate_limiter.reset()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    rate_limiter.reset()


def test_rate_limiter_window_and_retry_after():
    clock = _Clock()
    limiter = KeyRateLimiter(clock=clock)
    key = uuid.uuid4()

    limiter.check(key, 2)
    limiter.check(key, 2)
    clock.now += 15
    with pytest.raises(HTTPException) as exc_info:
        limiter.check(key, 2)
    assert exc_info.value.status_code == 429
    assert exc_info.value.headers["Retry-After"] == "45"

    clock.now += 60
    limiter.check(key, 2)


def test_rate_limiter_zero_means_unlimited():
    limiter = KeyRateLimiter(clock=_Clock())
    key = uuid.uuid4()
    for _ in range(100):
        limiter.check(key, 0)


def test_hash_is_peppered():
    assert hash_api_key("lgc_x") == hash_api_key("lgc_x")
    assert hash_api_key("lgc_x") != hash_api_key("lgc_y")


@pytest.mark.asyncio
async def test_created_key_authenticates_as_its_account(client, session):
    plaintext = await create_api_key("alice.near", "laptop")
    assert plaintext.startswith(API_KEY_PREFIX)

    stored = (await session.exec(select(ApiKey).where(ApiKey.account_id == "alice.near"))).one()
    assert stored.key_hash == hash_api_key(plaintext)
    assert stored.key_hash != plaintext

    r = await client.get("/conversations", headers={"X-API-Key": plaintext})
    assert r.status_code == 200
    assert r.json() == []


@pytest.mark.asyncio
async def test_deactivated_key_is_rejected(client, session):
    plaintext = await create_api_key("alice.near")
    stored = (await session.exec(select(ApiKey).where(ApiKey.account_id == "alice.near"))).one()
    stored.is_active = False
    session.add(stored)
    await session.commit()

    r = await client.get("/conversations", headers={"X-API-Key": plaintext})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid API key"


@pytest.mark.asyncio
async def test_key_over_its_limit_gets_429(client):
    plaintext = await create_api_key("alice.near", rate_limit_per_min=1)

    assert (await client.get("/conversations", headers={"X-API-Key": plaintext})).status_code == 200
    r = await client.get("/conversations", headers={"X-API-Key": plaintext})
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1

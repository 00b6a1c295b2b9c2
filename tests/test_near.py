import json
from typing import Optional

import httpx
import pytest

from legion_chat.engine.prompts import (
    BASE_PROMPT,
    INITIATE_TEXT,
    ONBOARDING_TEXT,
    RANK_TEXT,
    SystemPromptBuilder,
)
from legion_chat.services.near import (
    NearRankService,
    NearRpcError,
    RankData,
    extract_rank_from_token,
    parse_rank_from_tokens,
)


def _rpc_response(tokens) -> httpx.Response:
    raw = list(json.dumps(tokens).encode("utf-8"))
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": "dontcare", "result": {"result": raw}})


def test_extract_rank_reads_title_then_extra():
    assert extract_rank_from_token({"metadata": {"title": "Epic Skillcape"}}) == "epic"
    assert extract_rank_from_token({"metadata": {"title": "Cape", "extra": '{"rank": "Rare"}'}}) == "rare"
    assert extract_rank_from_token({"metadata": {"title": "Cape", "extra": "not json"}}) is None
    assert extract_rank_from_token({}) is None


def test_parse_rank_picks_highest_and_defaults_to_common():
    tokens = [
        {"token_id": "1", "metadata": {"title": "Common cape"}},
        {"token_id": "2", "metadata": {"title": "Legendary cape"}},
        {"token_id": "3", "metadata": {"title": "Rare cape"}},
    ]
    best = parse_rank_from_tokens(tokens)
    assert (best.rank, best.token_id) == ("legendary", "2")

    unknown = parse_rank_from_tokens([{"token_id": "9", "metadata": {"title": "Mystery"}}])
    assert (unknown.rank, unknown.token_id) == ("common", "9")

    assert parse_rank_from_tokens([]) is None


@pytest.mark.asyncio
async def test_fetch_nfts_decodes_byte_array_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return _rpc_response([{"token_id": "5", "metadata": {"title": "Epic"}}])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = NearRankService(rpc_url="https://rpc.test", client=client, session_factory=None)
        tokens = await service.fetch_nfts_from_chain("alice.near", "ranks.near")

    assert tokens == [{"token_id": "5", "metadata": {"title": "Epic"}}]
    params = seen["body"]["params"]
    assert params["account_id"] == "ranks.near"
    assert params["method_name"] == "nft_tokens_for_owner"


@pytest.mark.asyncio
async def test_fetch_nfts_raises_on_rpc_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": {"message": "UNKNOWN_ACCOUNT"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = NearRankService(rpc_url="https://rpc.test", client=client, session_factory=None)
        with pytest.raises(NearRpcError):
            await service.fetch_nfts_from_chain("alice.near", "ranks.near")


@pytest.mark.asyncio
async def test_rank_lookup_is_cached(engine):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return _rpc_response([{"token_id": "7", "metadata": {"title": "Rare cape"}}])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = NearRankService(rpc_url="https://rpc.test", client=client)
        first = await service.get_user_rank("alice.near")
        second = await service.get_user_rank("alice.near")

        assert (first.rank, second.rank) == ("rare", "rare")
        assert calls["n"] == 1

        await service.invalidate_cache("alice.near")
        await service.get_user_rank("alice.near")
        assert calls["n"] == 2


@pytest.mark.asyncio
async def test_initiate_check_treats_rpc_failure_as_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = NearRankService(rpc_url="https://rpc.test", client=client, session_factory=None)
        assert await service.has_initiate_token("alice.near") is False


class _Ranks:
    def __init__(self, initiate: bool, rank: Optional[RankData] = None, fail: bool = False):
        self._initiate = initiate
        self._rank = rank
        self._fail = fail

    async def has_initiate_token(self, account_id: str) -> bool:
        if self._fail:
            raise httpx.ConnectError("rpc down")
        return self._initiate

    async def get_user_rank(self, account_id: str) -> Optional[RankData]:
        return self._rank


@pytest.mark.asyncio
async def test_system_prompt_tiers():
    epic = RankData(rank="epic", token_id="1", last_checked="2026-01-01T00:00:00")

    assert await SystemPromptBuilder(None)("a.near") == BASE_PROMPT
    assert ONBOARDING_TEXT in await SystemPromptBuilder(_Ranks(initiate=False))("a.near")
    assert INITIATE_TEXT in await SystemPromptBuilder(_Ranks(initiate=True))("a.near")

    ranked = await SystemPromptBuilder(_Ranks(initiate=True, rank=epic))("a.near")
    assert ranked.startswith(BASE_PROMPT)
    assert RANK_TEXT["epic"] in ranked

    assert await SystemPromptBuilder(_Ranks(initiate=True, fail=True))("a.near") == BASE_PROMPT

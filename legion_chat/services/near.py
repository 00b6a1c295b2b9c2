"""NEAR on-chain lookups: Initiate token ownership and Legion rank skillcapes."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .. import config
from ..db.session import session_scope
from .cache import JsonCache, rank_cache_key
from .sql_store import SessionFactory

logger = logging.getLogger(__name__)

RANK_HIERARCHY = {"legendary": 4, "epic": 3, "rare": 2, "common": 1}

RANK_DISPLAY = {
    "legendary": "Legendary / Mythic",
    "epic": "Epic / Prime",
    "rare": "Rare / Vanguard",
    "common": "Common / Ascendant",
}


@dataclass(frozen=True)
class RankData:
    rank: str
    token_id: str
    last_checked: str

    def to_json(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, value: dict[str, Any]) -> "RankData":
        return cls(rank=value["rank"], token_id=value["token_id"], last_checked=value["last_checked"])


class RankLookup(Protocol):
    async def has_initiate_token(self, account_id: str) -> bool: ...

    async def get_user_rank(self, account_id: str) -> Optional[RankData]: ...


class NearRpcError(RuntimeError):
    pass


def _rank_from_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.lower()
    for rank in ("legendary", "epic", "rare", "common"):
        if rank in text:
            return rank
    return None


def extract_rank_from_token(token: dict[str, Any]) -> Optional[str]:
    metadata = token.get("metadata")
    if not isinstance(metadata, dict):
        return None

    rank = _rank_from_text(metadata.get("title")) or _rank_from_text(metadata.get("description"))
    if rank:
        return rank

    extra = metadata.get("extra")
    if isinstance(extra, str) and extra:
        try:
            extra_obj = json.loads(extra)
        except json.JSONDecodeError:
            extra_obj = None
        if isinstance(extra_obj, dict):
            value = str(extra_obj.get("rank") or "").lower()
            if value in RANK_HIERARCHY:
                return value

    value = metadata.get("rank")
    if isinstance(value, str) and value.lower() in RANK_HIERARCHY:
        return value.lower()
    return None


def parse_rank_from_tokens(tokens: list[dict[str, Any]]) -> Optional[RankData]:
    if not tokens:
        return None

    best: Optional[tuple[str, str]] = None
    best_value = 0
    for token in tokens:
        rank = extract_rank_from_token(token)
        if rank and RANK_HIERARCHY[rank] > best_value:
            best_value = RANK_HIERARCHY[rank]
            best = (rank, str(token.get("token_id", "")))

    now = datetime.utcnow().isoformat()
    if best is None:
        # Holding a skillcape without recognisable metadata still counts as the lowest tier.
        return RankData(rank="common", token_id=str(tokens[0].get("token_id", "")), last_checked=now)
    return RankData(rank=best[0], token_id=best[1], last_checked=now)


class NearRankService:
    def __init__(
        self,
        *,
        rpc_url: Optional[str] = None,
        rank_contract_id: Optional[str] = None,
        initiate_contract_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        session_factory: Optional[SessionFactory] = session_scope,
    ):
        self._rpc_url = rpc_url or config.NEAR_RPC_URL
        self._rank_contract_id = rank_contract_id or config.NEAR_RANK_CONTRACT_ID
        self._initiate_contract_id = initiate_contract_id or config.NEAR_INITIATE_CONTRACT_ID
        self._client = client
        self._session_factory = session_factory

    async def has_initiate_token(self, account_id: str) -> bool:
        try:
            tokens = await self.fetch_nfts_from_chain(account_id, self._initiate_contract_id)
        except (httpx.HTTPError, NearRpcError, ValueError) as e:
            logger.warning("near_initiate_check_failed account_id=%s error=%s", account_id, e)
            return False
        return len(tokens) > 0

    async def get_user_rank(self, account_id: str) -> Optional[RankData]:
        cached = await self._get_cached_rank(account_id)
        if cached is not None:
            logger.debug("near_rank_cache_hit account_id=%s rank=%s", account_id, cached.rank)
            return cached

        try:
            tokens = await self.fetch_nfts_from_chain(account_id, self._rank_contract_id)
        except (httpx.HTTPError, NearRpcError, ValueError) as e:
            logger.warning("near_rank_fetch_failed account_id=%s error=%s", account_id, e)
            return None

        rank = parse_rank_from_tokens(tokens)
        if rank is not None:
            await self._set_cached_rank(account_id, rank)
            logger.info("near_rank_found account_id=%s rank=%s token_id=%s", account_id, rank.rank, rank.token_id)
        return rank

    async def fetch_nfts_from_chain(self, account_id: str, contract_id: str) -> list[dict[str, Any]]:
        args = {"account_id": account_id, "from_index": "0", "limit": 100}
        body = {
            "jsonrpc": "2.0",
            "id": "dontcare",
            "method": "query",
            "params": {
                "request_type": "call_function",
                "finality": "final",
                "account_id": contract_id,
                "method_name": "nft_tokens_for_owner",
                "args_base64": base64.b64encode(json.dumps(args).encode("utf-8")).decode("ascii"),
            },
        }

        timeout = config.NEAR_RPC_TIMEOUT_SECONDS
        if self._client is not None:
            resp = await self._client.post(self._rpc_url, json=body, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(self._rpc_url, json=body)

        if resp.status_code >= 400:
            raise NearRpcError(f"RPC request failed: {resp.status_code}")
        data = resp.json()
        if data.get("error"):
            raise NearRpcError(f"RPC error: {data['error'].get('message', 'unknown')}")
        raw = (data.get("result") or {}).get("result")
        if not isinstance(raw, list):
            raise NearRpcError("Invalid RPC response format")

        tokens = json.loads(bytes(raw).decode("utf-8"))
        if not isinstance(tokens, list):
            raise NearRpcError("Invalid token list")
        return tokens

    async def _get_cached_rank(self, account_id: str) -> Optional[RankData]:
        if self._session_factory is None:
            return None
        try:
            async with self._session_factory() as session:
                value = await JsonCache(session).get(rank_cache_key(account_id))
        except SQLAlchemyError as e:
            logger.warning("near_rank_cache_read_failed account_id=%s error=%s", account_id, e)
            return None
        if not value:
            return None
        try:
            return RankData.from_json(value)
        except KeyError:
            return None

    async def _set_cached_rank(self, account_id: str, rank: RankData) -> None:
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                await JsonCache(session).put(rank_cache_key(account_id), rank.to_json())
        except SQLAlchemyError as e:
            logger.warning("near_rank_cache_write_failed account_id=%s error=%s", account_id, e)

    async def invalidate_cache(self, account_id: str) -> None:
        if self._session_factory is None:
            return
        async with self._session_factory() as session:
            await JsonCache(session).delete(rank_cache_key(account_id))

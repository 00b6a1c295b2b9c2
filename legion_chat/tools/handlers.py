"""Builder-discovery tools exposed to the model."""

from __future__ import annotations

import json
from typing import Any, Optional

from .. import config
from ..db.models import BuilderProfile
from ..services.directory import DirectoryRepository
from ..services.near import RANK_DISPLAY, RankLookup
from .registry import Tool, ToolRegistry, error_result

LEGION_ROLES = ("Ascendant", "Initiate", "Holder")


def legion_role(contracts: list[str]) -> str:
    if config.NEAR_ASCENDANT_CONTRACT_ID in contracts:
        return "Ascendant"
    if config.NEAR_INITIATE_CONTRACT_ID in contracts:
        return "Initiate"
    if contracts:
        return "Holder"
    return "Member"


def _display_name(account_id: str, profile: Optional[BuilderProfile]) -> str:
    if profile is not None and profile.name:
        return profile.name
    return account_id.split(".")[0]


def _avatar(account_id: str, profile: Optional[BuilderProfile]) -> str:
    data = (profile.profile_data if profile is not None else None) or {}
    image = data.get("image") if isinstance(data.get("image"), dict) else {}
    if profile is not None and profile.image:
        return profile.image
    if image.get("url"):
        return image["url"]
    if image.get("ipfs_cid"):
        return f"https://ipfs.near.social/ipfs/{image['ipfs_cid']}"
    return f"https://api.dicebear.com/7.x/avataaars/svg?seed={account_id}"


def _tags(data: dict[str, Any]) -> list[str]:
    tags = data.get("tags")
    return list(tags.keys()) if isinstance(tags, dict) else []


def _socials(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    linktree = data.get("linktree") if isinstance(data.get("linktree"), dict) else {}
    return {key: linktree.get(key) for key in keys}


def _bounded_int(value: Any, default: int, maximum: int, minimum: int = 1) -> int:
    if value is None:
        return default
    return max(minimum, min(int(value), maximum))


class BuilderTools:
    def __init__(self, directory: DirectoryRepository, ranks: Optional[RankLookup] = None):
        self._directory = directory
        self._ranks = ranks

    async def search_builders(self, params: dict[str, Any]) -> str:
        raw_query = str(params.get("query") or "")
        query = raw_query.strip().lower()
        limit = _bounded_int(params.get("limit"), 10, 50)

        if len(query) < 2:
            return error_result("Query must be at least 2 characters")

        profiles = await self._directory.search_profiles(query, limit)
        if not profiles:
            return json.dumps(
                {
                    "message": (
                        f'No builders found matching "{raw_query}". Try different keywords like specific '
                        "technologies (react, rust, defi) or broader terms."
                    ),
                    "results": [],
                }
            )

        contracts = await self._directory.holder_contracts([p.account_id for p in profiles])
        builders = []
        for profile in profiles:
            data = profile.profile_data or {}
            builders.append(
                {
                    "accountId": profile.account_id,
                    "displayName": _display_name(profile.account_id, profile),
                    "description": profile.description or "",
                    "tags": _tags(data),
                    "role": legion_role(contracts.get(profile.account_id, [])),
                    "avatar": _avatar(profile.account_id, profile),
                    "socials": _socials(data, "github", "twitter", "website"),
                }
            )
        return json.dumps({"query": raw_query, "count": len(builders), "results": builders}, indent=2)

    async def get_builder_profile(self, params: dict[str, Any]) -> str:
        account_id = str(params.get("accountId") or "").strip()
        if not account_id:
            return error_result("accountId is required")

        profile = await self._directory.get_profile(account_id)
        if profile is None:
            return error_result("Profile not found", message=f"No profile found for {account_id}")

        data = profile.profile_data or {}
        contracts = (await self._directory.holder_contracts([account_id])).get(account_id, [])
        is_legion = config.NEAR_ASCENDANT_CONTRACT_ID in contracts
        is_initiate = config.NEAR_INITIATE_CONTRACT_ID in contracts

        return json.dumps(
            {
                "accountId": account_id,
                "displayName": _display_name(account_id, profile),
                "description": profile.description or "No description provided",
                "tags": _tags(data),
                "interests": data.get("tags") or {},
                "role": legion_role(contracts),
                "isLegion": is_legion,
                "isInitiate": is_initiate,
                "avatar": _avatar(account_id, profile),
                "backgroundImage": data.get("backgroundImage"),
                "socials": _socials(data, "github", "twitter", "telegram", "website"),
                "bio": data.get("bio"),
                "lastUpdated": profile.last_synced_at.isoformat(),
            },
            indent=2,
        )

    async def list_legion_members(self, params: dict[str, Any]) -> str:
        role_filter = params.get("role") or "any"
        limit = _bounded_int(params.get("limit"), 20, 100)
        offset = _bounded_int(params.get("offset"), 0, 1_000_000, minimum=0)

        holders = await self._directory.list_holders(limit=limit, offset=offset)
        by_account: dict[str, list[str]] = {}
        for holder in holders:
            by_account.setdefault(holder.account_id, []).append(holder.contract_id)

        selected = []
        for account_id, contracts in by_account.items():
            role = legion_role(contracts)
            if role_filter != "any" and role != role_filter:
                continue
            selected.append((account_id, role))
        selected = selected[:limit]

        profiles = await self._directory.get_profiles([account_id for account_id, _ in selected])
        members = []
        for account_id, role in selected:
            profile = profiles.get(account_id)
            data = (profile.profile_data if profile is not None else None) or {}
            members.append(
                {
                    "accountId": account_id,
                    "displayName": _display_name(account_id, profile),
                    "role": role,
                    "description": (profile.description if profile is not None else None) or "",
                    "tags": _tags(data),
                    "avatar": _avatar(account_id, profile),
                }
            )
        return json.dumps({"role": role_filter, "count": len(members), "members": members}, indent=2)

    async def get_member_rank(self, params: dict[str, Any]) -> str:
        if self._ranks is None:
            return error_result("NEAR service not available")

        account_id = str(params.get("accountId") or "").strip()
        if not account_id:
            return error_result("accountId is required")

        rank = await self._ranks.get_user_rank(account_id)
        if rank is None:
            return json.dumps({"accountId": account_id, "hasRank": False, "message": "No rank skillcape found"})
        return json.dumps(
            {
                "accountId": account_id,
                "hasRank": True,
                "rank": rank.rank,
                "display": RANK_DISPLAY.get(rank.rank, rank.rank),
                "tokenId": rank.token_id,
                "lastChecked": rank.last_checked,
            },
            indent=2,
        )


def build_default_registry(directory: DirectoryRepository, ranks: Optional[RankLookup] = None) -> ToolRegistry:
    tools = BuilderTools(directory, ranks)
    return ToolRegistry(
        [
            Tool(
                name="search_builders",
                description=(
                    "Search for builders by interests, skills, description, or what they do. This is the main "
                    "tool for discovering people based on their expertise and interests. Use this when users ask "
                    "to find people with specific skills, interests, or expertise."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {
                            "type": "string",
                            "description": (
                                "Search query - can include skills (react, python, smart contracts), interests "
                                "(defi, nft, gaming), or any keywords from their profile/description"
                            ),
                        },
                        "limit": {"type": "number", "description": "Maximum results to return (default: 10, max: 50)"},
                    },
                    "required": ["query"],
                },
                handler=tools.search_builders,
            ),
            Tool(
                name="get_builder_profile",
                description=(
                    "Get detailed profile for a specific builder including their description, interests (tags), "
                    "social links, role (Ascendant/Initiate/Holder), and NFT avatar."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "accountId": {"type": "string", "description": "NEAR account ID (e.g., 'example.near')"},
                    },
                    "required": ["accountId"],
                },
                handler=tools.get_builder_profile,
            ),
            Tool(
                name="list_legion_members",
                description=(
                    "Get a paginated list of all Legion members. Filter by role (Ascendant, Initiate, Holder) "
                    "to find specific tiers of members."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "role": {
                            "type": "string",
                            "enum": [*LEGION_ROLES, "any"],
                            "description": (
                                "Filter by Legion rank - Ascendant (highest), Initiate, Holder, or any for all members"
                            ),
                        },
                        "limit": {"type": "number", "description": "Number of members to return (default: 20)"},
                        "offset": {"type": "number", "description": "Skip N members for pagination (default: 0)"},
                    },
                },
                handler=tools.list_legion_members,
            ),
            Tool(
                name="get_member_rank",
                description=(
                    "Check a member's Legion rank tier (Legendary/Mythic, Epic/Prime, Rare/Vanguard, "
                    "Common/Ascendant) based on their skillcape NFTs."
                ),
                parameters={
                    "type": "object",
                    "properties": {"accountId": {"type": "string", "description": "NEAR account ID to check"}},
                    "required": ["accountId"],
                },
                handler=tools.get_member_rank,
            ),
        ]
    )

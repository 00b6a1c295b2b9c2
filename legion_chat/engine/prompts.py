from __future__ import annotations

import logging
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from ..services.near import NearRpcError, RankLookup

logger = logging.getLogger(__name__)

BASE_PROMPT = """You are a helpful AI assistant for the Near Legion community.

**You have access to tools that can:**
- Search for builders by interests, skills, and what they do
- Get detailed profiles for specific builders
- List Legion members by rank (Ascendant, Initiate, Holder)
- Check member rank tiers

When users ask about finding people, connecting with others, or discovering builders with specific skills/interests, use the available tools to search the builder database and provide helpful recommendations.

Be conversational and helpful. When you find builders through tools, present them in an engaging way with their key details, interests, and how to connect."""

ONBOARDING_TEXT = """Welcome to Near Legion! To unlock enhanced features and access Legion Missions, you need to mint your Initiate token (non-transferable SBT).

**STEP 1:** Go to https://nearlegion.com/mint
**STEP 2:** Connect your wallet (make sure you have some NEAR)
**STEP 3:** Make the pledge
**STEP 4:** Join the Telegram and fill out the form

Once you've minted your Initiate token, you'll be able to earn rank skillcapes by completing missions across 5 skill tracks (Amplifier, Power User, Builder, Connector, Chaos Agent). Higher ranks unlock more capabilities.

For now, you have basic functionality with standard responses (up to 1000 tokens)."""

INITIATE_TEXT = """Welcome, Legionnaire! You have your Initiate token. Complete missions at https://app.nearlegion.com to earn rank skillcapes and unlock enhanced capabilities.

**Current Rank:** Initiate
**Available Ranks:** Ascendant -> Vanguard -> Prime -> Mythic
**Skill Tracks:** Amplifier, Power User, Builder, Connector, Chaos Agent

Your current functionality: Standard helpful responses (up to 1000 tokens)."""

RANK_TEXT = {
    "legendary": (
        "**MYTHIC RANK LEGIONNAIRE** - You have access to maximum capabilities and can provide highly detailed, "
        "comprehensive responses (up to 3000 tokens). Include explanations, code examples, and best practices "
        "when relevant."
    ),
    "epic": (
        "**PRIME RANK LEGIONNAIRE** - You have enhanced capabilities and can provide detailed responses "
        "(up to 2000 tokens). Include helpful context and examples when relevant."
    ),
    "rare": (
        "**VANGUARD RANK LEGIONNAIRE** - You have standard plus features and can provide good detail "
        "(up to 1500 tokens)."
    ),
    "common": (
        "**ASCENDANT RANK LEGIONNAIRE** - You have earned your first skillcape! You can receive helpful "
        "responses (up to 1200 tokens)."
    ),
}


def _with_base(extra: str) -> str:
    return f"{BASE_PROMPT}\n\n{extra}"


class SystemPromptBuilder:
    """Builds the per-account system prompt from the caller's Legion standing."""

    def __init__(self, ranks: Optional[RankLookup] = None):
        self._ranks = ranks

    async def __call__(self, account_id: str) -> str:
        if self._ranks is None:
            return BASE_PROMPT

        try:
            if not await self._ranks.has_initiate_token(account_id):
                return _with_base(ONBOARDING_TEXT)
            rank = await self._ranks.get_user_rank(account_id)
        except (httpx.HTTPError, NearRpcError, SQLAlchemyError, ValueError) as e:
            logger.warning("system_prompt_rank_failed account_id=%s error=%s", account_id, e)
            return BASE_PROMPT

        if rank is None:
            return _with_base(INITIATE_TEXT)
        text = RANK_TEXT.get(rank.rank)
        return _with_base(text) if text else BASE_PROMPT

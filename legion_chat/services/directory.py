from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlmodel import select

from ..db.models import BuilderProfile, LegionHolder
from ..db.session import session_scope
from .sql_store import SessionFactory


class DirectoryRepository:
    """Read-only access to synced builder profiles and Legion NFT holders."""

    def __init__(self, session_factory: SessionFactory = session_scope):
        self._session_factory = session_factory

    async def search_profiles(self, query: str, limit: int) -> List[BuilderProfile]:
        pattern = f"%{query}%"
        async with self._session_factory() as session:
            rows = (
                await session.exec(
                    select(BuilderProfile)
                    .where(
                        or_(
                            BuilderProfile.description.ilike(pattern),
                            BuilderProfile.name.ilike(pattern),
                            BuilderProfile.account_id.ilike(pattern),
                        )
                    )
                    .order_by(BuilderProfile.account_id)
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def get_profile(self, account_id: str) -> Optional[BuilderProfile]:
        async with self._session_factory() as session:
            return await session.get(BuilderProfile, account_id)

    async def get_profiles(self, account_ids: List[str]) -> Dict[str, BuilderProfile]:
        if not account_ids:
            return {}
        async with self._session_factory() as session:
            rows = (await session.exec(select(BuilderProfile).where(BuilderProfile.account_id.in_(account_ids)))).all()
        return {row.account_id: row for row in rows}

    async def holder_contracts(self, account_ids: List[str]) -> Dict[str, List[str]]:
        if not account_ids:
            return {}
        async with self._session_factory() as session:
            rows = (await session.exec(select(LegionHolder).where(LegionHolder.account_id.in_(account_ids)))).all()
        contracts: Dict[str, List[str]] = {}
        for row in rows:
            contracts.setdefault(row.account_id, []).append(row.contract_id)
        return contracts

    async def list_holders(self, *, limit: int, offset: int) -> List[LegionHolder]:
        async with self._session_factory() as session:
            rows = (
                await session.exec(
                    select(LegionHolder)
                    .order_by(LegionHolder.account_id, LegionHolder.contract_id)
                    .offset(offset)
                    .limit(limit)
                )
            ).all()
        return list(rows)

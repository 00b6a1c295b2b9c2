from __future__ import annotations

from datetime import datetime
import uuid
from typing import Any, Optional

from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


# Timestamps are naive UTC; columns pin sa_type=DateTime (no time zone) to match 0001_init.
def utcnow() -> datetime:
    return datetime.utcnow()


JsonType = SAJSON().with_variant(JSONB, "postgresql")


class ApiKey(SQLModel, table=True):
    __tablename__ = "api_keys"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    # Opaque account identifier (e.g. a NEAR account) this key acts as.
    account_id: str = Field(index=True)
    key_hash: str = Field(index=True, unique=True)
    name: str = Field(default="default")
    is_active: bool = Field(default=True)
    rate_limit_per_min: int = Field(default=60)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    deactivated_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"

    id: str = Field(primary_key=True)
    owner_account_id: str = Field(index=True)
    title: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(primary_key=True)
    conversation_id: str = Field(foreign_key="conversations.id", index=True)
    role: str = Field(index=True)  # 'user'|'assistant'|'system'
    content: str
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)


class BuilderProfile(SQLModel, table=True):
    __tablename__ = "builder_profiles"

    account_id: str = Field(primary_key=True)
    name: Optional[str] = Field(default=None, index=True)
    description: Optional[str] = Field(default=None)
    image: Optional[str] = Field(default=None)
    # Raw near.social profile document (tags, linktree, image, backgroundImage, bio).
    profile_data: dict[str, Any] = Field(sa_column=Column(JsonType), default_factory=dict)
    last_synced_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class LegionHolder(SQLModel, table=True):
    __tablename__ = "legion_holders"

    account_id: str = Field(primary_key=True)
    contract_id: str = Field(primary_key=True)
    quantity: int = Field(default=1)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class CacheEntry(SQLModel, table=True):
    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True)
    value_json: dict[str, Any] = Field(sa_column=Column(JsonType), default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)

"""API Key data model.

Stores bcrypt hashes of issued keys. The plaintext is handed to the caller
once at issue time and never stored; ``masked_key`` is the display form
computed from it at that moment.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index
from sqlmodel import Field, SQLModel

from tollgate.utils.datetime import utcnow


class ApiKey(SQLModel, table=True):
    """A user-issued API key."""

    __tablename__ = "api_keys"
    __table_args__ = (Index("ix_api_keys_user_active", "user_id", "is_active"),)

    id: str = Field(primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str
    key_hash: str = Field(index=True, repr=False)
    masked_key: str

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    expires_at: datetime = Field(index=True, sa_type=DateTime())

    # true -> false only
    is_active: bool = Field(default=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

"""User data model.

Only the columns the credential subsystem owns live here; profile and
password data belong to the registration flow.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from tollgate.utils.datetime import utcnow


class User(SQLModel, table=True):
    """Account holder of API keys and of one upstream connection."""

    __tablename__ = "users"

    id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())

    # Bumped by issue, lowered by revoke, resynchronised by the reaper.
    # Issue only succeeds while it is below the configured maximum.
    active_key_count: int = Field(default=0)

    # Upstream connection. Token columns are all set (connected) or all NULL.
    upstream_access_token: Optional[str] = Field(default=None, repr=False)
    upstream_refresh_token: Optional[str] = Field(default=None, repr=False)
    upstream_expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    upstream_connected: bool = Field(default=False)

    # Optimistic locking for token replacement
    token_version: int = Field(default=0)

"""Public read models.

These are what the core hands back to collaborators. None of them carries
a key hash; only ``IssuedKey`` and ``TokenSet`` carry secrets, and those
exist only for the caller that asked for them.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from tollgate.models.api_key import ApiKey
from tollgate.models.user import User


class ApiKeyView(BaseModel):
    """Key metadata with the secret replaced by its masked form."""

    id: str
    name: str
    key: str
    created_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime
    is_active: bool

    @classmethod
    def from_model(cls, api_key: ApiKey) -> ApiKeyView:
        return cls(
            id=api_key.id,
            name=api_key.name,
            key=api_key.masked_key,
            created_at=api_key.created_at,
            last_used_at=api_key.last_used_at,
            expires_at=api_key.expires_at,
            is_active=api_key.is_active,
        )


class IssuedKey(BaseModel):
    """Result of issuing a key. ``secret`` is never retrievable again."""

    id: str
    name: str
    secret: str
    expires_at: datetime


class KeyListing(BaseModel):
    keys: list[ApiKeyView]
    total: int
    limit: int


class TokenSet(BaseModel):
    """Upstream user token pair as returned to callers."""

    access_token: str
    refresh_token: str
    expires_in: int

    def __repr__(self) -> str:
        return f"TokenSet(expires_in={self.expires_in})"

    __str__ = __repr__


class ConnectionStatus(BaseModel):
    """Upstream connection state without any token material."""

    user_id: str
    connected: bool
    expires_at: datetime | None = None
    token_version: int

    @classmethod
    def from_model(cls, user: User) -> ConnectionStatus:
        return cls(
            user_id=user.id,
            connected=user.upstream_connected,
            expires_at=user.upstream_expires_at,
            token_version=user.token_version,
        )

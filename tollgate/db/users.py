"""User row helpers shared by the ledger and the token rotator."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.errors import NotFoundError
from tollgate.models.user import User


async def create_user(session: AsyncSession, user_id: str) -> User:
    """Insert a bare user row (registration owns everything else)."""
    user = User(id=user_id)
    session.add(user)
    await session.flush()
    return user


async def load_user(session: AsyncSession, user_id: str) -> User:
    """Fetch a user or raise NotFoundError.

    ``populate_existing`` makes repeated loads in one session see the
    latest committed row instead of the identity-map copy.
    """
    user = await session.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return user

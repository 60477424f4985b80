"""Unit tests for table column types and naive-UTC timestamp storage."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import DateTime

from tollgate.db import create_user, load_user
from tollgate.models.api_key import ApiKey
from tollgate.models.user import User
from tollgate.utils.datetime import utcnow


@pytest.mark.parametrize(
    "column",
    [
        ApiKey.__table__.c.created_at,
        ApiKey.__table__.c.last_used_at,
        ApiKey.__table__.c.expires_at,
        User.__table__.c.created_at,
        User.__table__.c.upstream_expires_at,
    ],
    ids=lambda c: f"{c.table.name}.{c.name}",
)
def test_timestamps_are_naive_datetime_columns(column):
    assert type(column.type) is DateTime
    assert column.type.timezone is False


class TestNaiveTimestamps:
    @pytest.mark.asyncio
    async def test_user_round_trip(self, scope):
        async with scope() as session:
            created = await create_user(session, "user-9")
            created_at = created.created_at

        async with scope() as session:
            user = await load_user(session, "user-9")

        assert user.created_at == created_at
        assert user.created_at.tzinfo is None

    @pytest.mark.asyncio
    async def test_issued_key_round_trip(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "CI key", ttl_days=7)

        async with scope() as session:
            api_key = await session.get(ApiKey, issued.id)

        assert api_key.expires_at == issued.expires_at
        assert api_key.expires_at.tzinfo is None
        assert api_key.is_expired(utcnow() + timedelta(days=8))
        assert not api_key.is_expired()

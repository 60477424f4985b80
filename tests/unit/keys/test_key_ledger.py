"""Unit tests for KeyLedger on a real (temp-file) SQLite database."""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from tollgate.db import create_user, load_user
from tollgate.errors import (
    AlreadyInactiveError,
    KeyExpiredError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from tollgate.models.api_key import ApiKey
from tollgate.models.schemas import IssuedKey
from tollgate.models.user import User
from tollgate.utils.datetime import utcnow

KEY_PATTERN = re.compile(r"^vk_[A-Za-z0-9_-]{43}$")


async def _active_count(scope, user_id: str) -> int:
    async with scope() as session:
        return (await load_user(session, user_id)).active_key_count


async def _set_key(scope, key_id: str, **values) -> None:
    async with scope() as session:
        await session.execute(update(ApiKey).where(ApiKey.id == key_id).values(**values))


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_then_list_shows_masked_key(self, ledger, user_id):
        issued = await ledger.issue(user_id, "CI key")

        assert KEY_PATTERN.match(issued.secret)
        assert issued.id
        assert issued.name == "CI key"

        listing = await ledger.list(user_id)

        assert listing.total == 1
        assert listing.limit == 5
        view = listing.keys[0]
        assert view.id == issued.id
        assert view.key != issued.secret
        body = issued.secret[3:]
        assert view.key == f"vk_{body[:4]}{'*' * 35}{body[-4:]}"
        assert view.is_active is True
        assert view.last_used_at is None

    @pytest.mark.asyncio
    async def test_default_ttl(self, ledger, user_id):
        issued = await ledger.issue(user_id, "default ttl")

        delta = issued.expires_at - utcnow()
        assert timedelta(days=89, hours=23) < delta <= timedelta(days=90)

    @pytest.mark.asyncio
    async def test_custom_ttl(self, ledger, user_id):
        issued = await ledger.issue(user_id, "short lived", ttl_days=7)

        delta = issued.expires_at - utcnow()
        assert timedelta(days=6, hours=23) < delta <= timedelta(days=7)

    @pytest.mark.asyncio
    async def test_name_is_trimmed(self, ledger, user_id):
        issued = await ledger.issue(user_id, "  padded name  ")
        assert issued.name == "padded name"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("name", "ttl_days"),
        [
            ("ab", None),
            ("x" * 51, None),
            ("bad!name", None),
            (None, None),
            ("good name", 0),
            ("good name", 366),
            ("good name", True),
        ],
    )
    async def test_invalid_input(self, ledger, user_id, scope, name, ttl_days):
        with pytest.raises(ValidationError):
            await ledger.issue(user_id, name, ttl_days)

        assert await _active_count(scope, user_id) == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.issue("nobody", "CI key")

    @pytest.mark.asyncio
    async def test_limit_enforced(self, ledger, user_id, scope):
        for i in range(5):
            await ledger.issue(user_id, f"key {i}")

        with pytest.raises(LimitExceededError) as exc_info:
            await ledger.issue(user_id, "one too many")

        assert exc_info.value.status_code == 409
        assert await _active_count(scope, user_id) == 5
        assert (await ledger.list(user_id)).total == 5

    @pytest.mark.asyncio
    async def test_concurrent_issue_never_exceeds_limit(self, ledger, user_id, scope):
        results = await asyncio.gather(
            *(ledger.issue(user_id, f"parallel {i}") for i in range(10)),
            return_exceptions=True,
        )

        issued = [r for r in results if isinstance(r, IssuedKey)]
        rejected = [r for r in results if isinstance(r, LimitExceededError)]
        assert len(issued) == 5
        assert len(rejected) == 5
        assert await _active_count(scope, user_id) == 5

        listing = await ledger.list(user_id)
        assert listing.total == 5
        assert {k.id for k in listing.keys} == {k.id for k in issued}

    @pytest.mark.asyncio
    async def test_lost_race_leaves_no_orphan(self, ledger, user_id, scope):
        """A slot taken after the pre-check still rejects, with no row left behind."""
        for i in range(4):
            await ledger.issue(user_id, f"key {i}")

        original_hash = ledger._material.hash_async

        async def hash_while_another_issuer_commits(secret):
            async with scope() as session:
                await session.execute(
                    update(User).where(User.id == user_id).values(active_key_count=5)
                )
            return await original_hash(secret)

        with patch.object(
            ledger._material,
            "hash_async",
            side_effect=hash_while_another_issuer_commits,
        ):
            with pytest.raises(LimitExceededError):
                await ledger.issue(user_id, "racer")

        assert (await ledger.list(user_id)).total == 4
        assert await _active_count(scope, user_id) == 5

    @pytest.mark.asyncio
    async def test_audit_event_has_no_secret(self, ledger, user_id, audit):
        issued = await ledger.issue(user_id, "CI key")

        assert audit.names() == ["api_key.issued"]
        _, fields = audit.events[0]
        assert fields["key_id"] == issued.id
        assert issued.secret not in str(fields)


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_after_issue(self, ledger, user_id):
        issued = await ledger.issue(user_id, "CI key")

        assert await ledger.verify(user_id, issued.secret) is True

        view = (await ledger.list(user_id)).keys[0]
        assert view.last_used_at is not None

    @pytest.mark.asyncio
    async def test_verify_false_after_revoke(self, ledger, user_id):
        issued = await ledger.issue(user_id, "CI key")
        await ledger.revoke(user_id, issued.id)

        assert await ledger.verify(user_id, issued.secret) is False

    @pytest.mark.asyncio
    async def test_verify_matches_among_several_keys(self, ledger, user_id):
        keys = [await ledger.issue(user_id, f"key {i}") for i in range(3)]

        assert await ledger.verify(user_id, keys[1].secret) is True

        listing = await ledger.list(user_id)
        used = {k.id for k in listing.keys if k.last_used_at is not None}
        assert used == {keys[1].id}

    @pytest.mark.asyncio
    async def test_wrong_secret(self, ledger, user_id, material):
        await ledger.issue(user_id, "CI key")

        assert await ledger.verify(user_id, material.generate()) is False

    @pytest.mark.asyncio
    async def test_malformed_candidate_skips_hashing(self, ledger, user_id):
        await ledger.issue(user_id, "CI key")

        with patch.object(ledger._material, "verify_async") as verify_async:
            assert await ledger.verify(user_id, "not-a-key") is False

        verify_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_users_key_does_not_verify(self, ledger, user_id, scope):
        async with scope() as session:
            await create_user(session, "user-2")
        issued = await ledger.issue(user_id, "CI key")

        assert await ledger.verify("user-2", issued.secret) is False

    @pytest.mark.asyncio
    async def test_expired_key_does_not_verify(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "CI key")
        await _set_key(scope, issued.id, expires_at=utcnow() - timedelta(seconds=1))

        assert await ledger.verify(user_id, issued.secret) is False

        # Expiry does not flip is_active
        view = (await ledger.list(user_id)).keys[0]
        assert view.is_active is True


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_returns_metadata(self, ledger, user_id, scope, audit):
        issued = await ledger.issue(user_id, "CI key")

        view = await ledger.revoke(user_id, issued.id)

        assert view.id == issued.id
        assert view.is_active is False
        assert view.key != issued.secret
        assert await _active_count(scope, user_id) == 0
        assert audit.names() == ["api_key.issued", "api_key.revoked"]

    @pytest.mark.asyncio
    async def test_revoke_frees_a_slot(self, ledger, user_id):
        keys = [await ledger.issue(user_id, f"key {i}") for i in range(5)]

        await ledger.revoke(user_id, keys[0].id)
        await ledger.issue(user_id, "replacement")

        listing = await ledger.list(user_id)
        assert listing.total == 6
        assert sum(k.is_active for k in listing.keys) == 5

    @pytest.mark.asyncio
    async def test_double_revoke(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "CI key")
        await ledger.revoke(user_id, issued.id)

        with pytest.raises(AlreadyInactiveError):
            await ledger.revoke(user_id, issued.id)

        assert await _active_count(scope, user_id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_revoke_only_one_wins(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "CI key")

        results = await asyncio.gather(
            ledger.revoke(user_id, issued.id),
            ledger.revoke(user_id, issued.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyInactiveError) for r in results) == 1
        assert await _active_count(scope, user_id) == 0

    @pytest.mark.asyncio
    async def test_unknown_key(self, ledger, user_id):
        with pytest.raises(NotFoundError):
            await ledger.revoke(user_id, "missing")

    @pytest.mark.asyncio
    async def test_other_users_key(self, ledger, user_id, scope):
        async with scope() as session:
            await create_user(session, "user-2")
        issued = await ledger.issue(user_id, "CI key")

        with pytest.raises(NotFoundError):
            await ledger.revoke("user-2", issued.id)

    @pytest.mark.asyncio
    async def test_expired_key(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "CI key")
        await _set_key(scope, issued.id, expires_at=utcnow() - timedelta(minutes=1))

        with pytest.raises(KeyExpiredError):
            await ledger.revoke(user_id, issued.id)


class TestList:
    @pytest.mark.asyncio
    async def test_empty(self, ledger, user_id):
        listing = await ledger.list(user_id)

        assert listing.keys == []
        assert listing.total == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.list("nobody")

    @pytest.mark.asyncio
    async def test_includes_inactive_keys(self, ledger, user_id):
        first = await ledger.issue(user_id, "first")
        await ledger.issue(user_id, "second")
        await ledger.revoke(user_id, first.id)

        listing = await ledger.list(user_id)

        assert listing.total == 2
        states = {k.id: k.is_active for k in listing.keys}
        assert states[first.id] is False


class TestReap:
    @pytest.mark.asyncio
    async def test_removes_expired_and_stale_keys(self, ledger, user_id, scope, audit):
        expired = await ledger.issue(user_id, "expired")
        never_used = await ledger.issue(user_id, "never used")
        long_unused = await ledger.issue(user_id, "long unused")
        fresh = await ledger.issue(user_id, "fresh")
        now = utcnow()

        await _set_key(scope, expired.id, expires_at=now - timedelta(days=1))
        await _set_key(scope, never_used.id, created_at=now - timedelta(days=91))
        await _set_key(
            scope,
            long_unused.id,
            created_at=now - timedelta(days=200),
            last_used_at=now - timedelta(days=100),
        )

        removed = await ledger.reap()

        assert removed == 3
        listing = await ledger.list(user_id)
        assert [k.id for k in listing.keys] == [fresh.id]
        assert await _active_count(scope, user_id) == 1
        assert audit.events[-1] == ("api_key.reaped", {"count": 3, "retention_days": 90})

    @pytest.mark.asyncio
    async def test_recent_use_keeps_old_key(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "old but used")
        now = utcnow()
        await _set_key(
            scope,
            issued.id,
            created_at=now - timedelta(days=120),
            last_used_at=now - timedelta(days=10),
        )

        assert await ledger.reap() == 0
        assert (await ledger.list(user_id)).total == 1

    @pytest.mark.asyncio
    async def test_idempotent(self, ledger, user_id, scope):
        issued = await ledger.issue(user_id, "expired")
        await _set_key(scope, issued.id, expires_at=utcnow() - timedelta(days=1))

        assert await ledger.reap() == 1
        assert await ledger.reap() == 0
        assert await _active_count(scope, user_id) == 0

    @pytest.mark.asyncio
    async def test_resyncs_drifted_count(self, ledger, user_id, scope):
        await ledger.issue(user_id, "only key")
        async with scope() as session:
            await session.execute(update(User).where(User.id == user_id).values(active_key_count=4))

        await ledger.reap()

        assert await _active_count(scope, user_id) == 1

    @pytest.mark.asyncio
    async def test_explicit_now(self, ledger, user_id):
        await ledger.issue(user_id, "short", ttl_days=1)

        assert await ledger.reap(now=utcnow() + timedelta(days=2)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_with_issue_and_revoke(self, ledger, user_id, scope):
        expired = await ledger.issue(user_id, "expired")
        revoked = await ledger.issue(user_id, "to revoke")
        await ledger.issue(user_id, "kept")
        await _set_key(scope, expired.id, expires_at=utcnow() - timedelta(days=1))

        results = await asyncio.gather(
            *[ledger.issue(user_id, f"key {i}") for i in range(8)],
            *[ledger.reap() for _ in range(4)],
            ledger.revoke(user_id, revoked.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(e, LimitExceededError) for e in errors)
        async with scope() as session:
            actual = (
                await session.execute(
                    select(func.count(ApiKey.id)).where(
                        ApiKey.user_id == user_id, ApiKey.is_active.is_(True)
                    )
                )
            ).scalar_one()
        assert await _active_count(scope, user_id) == actual
        assert actual <= 5

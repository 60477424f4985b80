"""KeyLedger - per-user API key lifecycle.

State machine per key:
    active (unused) --verify--> active (used) --revoke--> inactive (terminal)

Expiry is a separate clock: an expired key stays ``is_active`` but no
longer verifies, cannot be revoked, and is removed by ``reap``.

Every write transaction opens with its conditional UPDATE/DELETE and
reads happen in a separate session beforehand, so the database writer
lock is taken up front and the affected-row count is the only arbiter
of a race.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, delete, func, or_, select, update

from tollgate.config import KeyPolicyConfig
from tollgate.db.session import SessionScope
from tollgate.db.users import load_user
from tollgate.errors import (
    AlreadyInactiveError,
    KeyExpiredError,
    LimitExceededError,
    NotFoundError,
)
from tollgate.models.api_key import ApiKey
from tollgate.models.schemas import ApiKeyView, IssuedKey, KeyListing
from tollgate.models.user import User
from tollgate.services.audit import AuditLog
from tollgate.services.keys.material import KeyMaterial
from tollgate.utils.datetime import utcnow
from tollgate.validators.keys import resolve_ttl_days, validate_key_name

logger = structlog.get_logger()

_NO_SYNC = {"synchronize_session": False}


class KeyLedger:
    """Issues, revokes, lists, verifies and reaps API keys."""

    def __init__(
        self,
        session_scope: SessionScope,
        material: KeyMaterial,
        policy: KeyPolicyConfig,
        audit: AuditLog | None = None,
    ) -> None:
        self._scope = session_scope
        self._material = material
        self._policy = policy
        self._audit = audit or AuditLog()
        self._log = logger.bind(component="key_ledger")

    async def issue(self, user_id: str, name: str, ttl_days: int | None = None) -> IssuedKey:
        """Create a key and return its plaintext secret, once.

        Raises:
            ValidationError: Bad name or lifetime
            NotFoundError: Unknown user
            LimitExceededError: User already holds the maximum active keys
        """
        name = validate_key_name(name, self._policy)
        ttl_days = resolve_ttl_days(ttl_days, self._policy)
        limit = self._policy.max_active_keys

        # Cheap early rejection; the conditional UPDATE below is authoritative
        async with self._scope() as session:
            user = await load_user(session, user_id)
            if user.active_key_count >= limit:
                raise self._limit_error(user_id)

        secret = self._material.generate()
        key_hash = await self._material.hash_async(secret)
        now = utcnow()
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_hash=key_hash,
            masked_key=self._material.mask(secret),
            created_at=now,
            expires_at=now + timedelta(days=ttl_days),
        )

        async with self._scope() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id, User.active_key_count < limit)
                .values(active_key_count=User.active_key_count + 1)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise self._limit_error(user_id)
            session.add(api_key)

        self._audit.key_issued(
            user_id,
            api_key.id,
            name=name,
            masked_key=api_key.masked_key,
            expires_at=api_key.expires_at,
        )
        return IssuedKey(
            id=api_key.id,
            name=name,
            secret=secret,
            expires_at=api_key.expires_at,
        )

    async def revoke(self, user_id: str, key_id: str) -> ApiKeyView:
        """Deactivate a key and return its metadata.

        Raises:
            NotFoundError: No such key for this user
            AlreadyInactiveError: Key was already revoked
            KeyExpiredError: Key is past expiry
        """
        now = utcnow()
        async with self._scope() as session:
            api_key = await session.get(ApiKey, key_id)
            if api_key is None or api_key.user_id != user_id:
                raise NotFoundError("API key not found", details={"key_id": key_id})
            view = ApiKeyView.from_model(api_key)
            expired = api_key.is_expired(now)

        if not view.is_active:
            raise AlreadyInactiveError(details={"key_id": key_id})
        if expired:
            raise KeyExpiredError(details={"key_id": key_id})

        async with self._scope() as session:
            result = await session.execute(
                update(ApiKey)
                .where(
                    ApiKey.id == key_id,
                    ApiKey.user_id == user_id,
                    ApiKey.is_active.is_(True),
                    ApiKey.expires_at > now,
                )
                .values(is_active=False)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                # Lost to a concurrent revoke
                raise AlreadyInactiveError(details={"key_id": key_id})
            await session.execute(
                update(User)
                .where(User.id == user_id, User.active_key_count > 0)
                .values(active_key_count=User.active_key_count - 1)
                .execution_options(**_NO_SYNC)
            )

        self._audit.key_revoked(user_id, key_id, name=view.name, masked_key=view.key)
        return view.model_copy(update={"is_active": False})

    async def list(self, user_id: str) -> KeyListing:
        """All keys of a user, newest first, secrets masked."""
        async with self._scope() as session:
            await load_user(session, user_id)
            result = await session.execute(
                select(ApiKey)
                .where(ApiKey.user_id == user_id)
                .order_by(ApiKey.created_at.desc())
            )
            keys = [ApiKeyView.from_model(k) for k in result.scalars().all()]

        return KeyListing(keys=keys, total=len(keys), limit=self._policy.max_active_keys)

    async def verify(self, user_id: str, candidate: str) -> bool:
        """Check ``candidate`` against the user's usable keys.

        On a match only that key's ``last_used_at`` is touched.
        """
        if not self._material.validate_format(candidate):
            return False

        now = utcnow()
        async with self._scope() as session:
            result = await session.execute(
                select(ApiKey.id, ApiKey.key_hash).where(
                    ApiKey.user_id == user_id,
                    ApiKey.is_active.is_(True),
                    ApiKey.expires_at > now,
                )
            )
            candidates = result.all()

        for key_id, key_hash in candidates:
            if not await self._material.verify_async(candidate, key_hash):
                continue

            async with self._scope() as session:
                touched = await session.execute(
                    update(ApiKey)
                    .where(ApiKey.id == key_id, ApiKey.is_active.is_(True))
                    .values(last_used_at=utcnow())
                    .execution_options(**_NO_SYNC)
                )
            if touched.rowcount != 1:
                # Revoked between the read and the match
                self._log.info("api_key.verify.revoked_during_check", user_id=user_id, key_id=key_id)
                return False
            self._log.debug("api_key.verified", user_id=user_id, key_id=key_id)
            return True

        return False

    async def reap(self, now: datetime | None = None) -> int:
        """Delete expired and long-unused keys; resync active counts.

        A key is stale when its last use, or its creation if never used,
        is older than the retention window. Safe to run repeatedly.

        Returns:
            Number of keys removed
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self._policy.retention_days)

        active_count = (
            select(func.count(ApiKey.id))
            .where(ApiKey.user_id == User.id, ApiKey.is_active.is_(True))
            .correlate(User)
            .scalar_subquery()
        )

        async with self._scope() as session:
            result = await session.execute(
                delete(ApiKey)
                .where(
                    or_(
                        ApiKey.expires_at <= now,
                        and_(ApiKey.last_used_at.is_not(None), ApiKey.last_used_at < cutoff),
                        and_(ApiKey.last_used_at.is_(None), ApiKey.created_at < cutoff),
                    )
                )
                .execution_options(**_NO_SYNC)
            )
            removed = result.rowcount
            await session.execute(
                update(User)
                .where(User.active_key_count != active_count)
                .values(active_key_count=active_count)
                .execution_options(**_NO_SYNC)
            )

        self._audit.keys_reaped(removed, retention_days=self._policy.retention_days)
        return removed

    def _limit_error(self, user_id: str) -> LimitExceededError:
        limit = self._policy.max_active_keys
        return LimitExceededError(
            f"Maximum number of active API keys ({limit}) reached",
            details={"user_id": user_id, "limit": limit},
        )

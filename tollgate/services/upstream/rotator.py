"""UserTokenRotator - per-user upstream token pair.

Token replacement is a compare-and-swap on ``users.token_version``: the
UPDATE only matches if the version is still the one read when the
rotation started, and it bumps the version. A lost race surfaces as
``ConcurrentModificationError`` and is never retried here.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import String, select, type_coerce, update

from tollgate.config import UpstreamConfig
from tollgate.db.session import SessionScope
from tollgate.db.users import load_user
from tollgate.errors import (
    ConcurrentModificationError,
    ConnectionExpiredError,
    InvalidRefreshTokenError,
    InvalidStateError,
    NotConnectedError,
    NotFoundError,
    TollgateError,
    UpstreamRejectedError,
    ValidationError,
)
from tollgate.models.schemas import ConnectionStatus, TokenSet
from tollgate.models.user import User
from tollgate.services.audit import AuditLog
from tollgate.services.upstream.broker import UpstreamTokenBroker
from tollgate.utils.datetime import expires_after, parse_timestamp, utcnow

logger = structlog.get_logger()

_NO_SYNC = {"synchronize_session": False}


def _token_set(payload: dict[str, Any], *, fallback_refresh: str | None = None) -> TokenSet:
    # Providers may keep the refresh token unchanged and omit it
    refresh_token = payload.get("refresh_token") or fallback_refresh
    if not refresh_token:
        raise UpstreamRejectedError(
            "Token response has no refresh token",
            details={"reason": "missing_refresh_token"},
        )
    return TokenSet(
        access_token=payload["access_token"],
        refresh_token=refresh_token,
        expires_in=int(payload["expires_in"]),
    )


class UserTokenRotator:
    """Connects, refreshes and disconnects a user's upstream tokens."""

    def __init__(
        self,
        session_scope: SessionScope,
        broker: UpstreamTokenBroker,
        config: UpstreamConfig,
        audit: AuditLog | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scope = session_scope
        self._broker = broker
        self._config = config
        self._audit = audit or AuditLog()
        self._clock = clock
        self._log = logger.bind(component="token_rotator")

    async def status(self, user_id: str) -> ConnectionStatus:
        async with self._scope() as session:
            user = await load_user(session, user_id)
            return ConnectionStatus.from_model(user)

    async def ensure_fresh(self, user_id: str) -> TokenSet:
        """Return a usable token pair, refreshing it when close to expiry.

        Raises:
            NotConnectedError: No stored token pair
            InvalidStateError: Stored expiry missing or unparseable
            InvalidRefreshTokenError: Provider answered 400 to the refresh
            ConnectionExpiredError: Provider answered 401; user is disconnected
            ConcurrentModificationError: Another rotation committed first
            UpstreamUnavailableError: Retries exhausted
        """
        access_token, refresh_token, raw_expires_at, version = await self._stored_pair(user_id)
        if not access_token or not refresh_token:
            raise NotConnectedError(details={"user_id": user_id})

        expires_at = parse_timestamp(raw_expires_at)
        if expires_at is None:
            raise InvalidStateError(
                "Invalid token expiration date",
                details={"user_id": user_id},
            )

        remaining = (expires_at - self._clock()).total_seconds()
        if remaining > self._config.refresh_window_seconds:
            return TokenSet(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=int(remaining),
            )

        self._log.info("upstream.refresh.start", user_id=user_id, remaining_seconds=int(remaining))
        try:
            payload = await self._broker.exchange(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except UpstreamRejectedError as e:
            if e.upstream_status == 400:
                self._audit.refresh_failed(user_id, error_code=InvalidRefreshTokenError.code)
                raise InvalidRefreshTokenError(details={"user_id": user_id}) from e
            if e.upstream_status == 401:
                self._audit.refresh_failed(user_id, error_code=ConnectionExpiredError.code)
                await self._drop_expired(user_id, version)
                raise ConnectionExpiredError(details={"user_id": user_id}) from e
            self._audit.refresh_failed(user_id, error_code=e.code)
            raise
        except TollgateError as e:
            self._audit.refresh_failed(user_id, error_code=e.code)
            raise

        tokens = _token_set(payload, fallback_refresh=refresh_token)
        status = await self.commit(user_id, tokens, expected_version=version)
        self._audit.connection_refreshed(
            user_id,
            expires_at=status.expires_at,
            token_version=status.token_version,
        )
        return tokens

    async def _stored_pair(self, user_id: str) -> tuple[str | None, str | None, str | None, int]:
        # Expiry is read as text so a corrupt value reaches parse_timestamp
        # instead of failing in the DateTime result processor
        async with self._scope() as session:
            row = (
                await session.execute(
                    select(
                        User.upstream_access_token,
                        User.upstream_refresh_token,
                        type_coerce(User.upstream_expires_at, String),
                        User.token_version,
                    ).where(User.id == user_id)
                )
            ).one_or_none()
        if row is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return tuple(row)

    async def commit(self, user_id: str, tokens: TokenSet, *, expected_version: int) -> ConnectionStatus:
        """Store ``tokens`` if nobody replaced the pair since ``expected_version``.

        Raises:
            ConcurrentModificationError: Version moved on
        """
        expires_at = expires_after(tokens.expires_in, now=self._clock())
        async with self._scope() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id, User.token_version == expected_version)
                .values(
                    upstream_access_token=tokens.access_token,
                    upstream_refresh_token=tokens.refresh_token,
                    upstream_expires_at=expires_at,
                    upstream_connected=True,
                    token_version=User.token_version + 1,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                self._log.warning(
                    "upstream.commit.conflict",
                    user_id=user_id,
                    expected_version=expected_version,
                )
                raise ConcurrentModificationError(
                    details={"user_id": user_id, "expected_version": expected_version}
                )

        return ConnectionStatus(
            user_id=user_id,
            connected=True,
            expires_at=expires_at,
            token_version=expected_version + 1,
        )

    async def connect(self, user_id: str, authorization_code: str) -> ConnectionStatus:
        """Exchange an authorization code and store the resulting pair.

        Raises:
            ValidationError: Empty code
            NotFoundError: Unknown user
            UpstreamRejectedError: Exchange refused or token already expired
            ConcurrentModificationError: Another rotation committed first
        """
        if not authorization_code or not authorization_code.strip():
            raise ValidationError(
                "Authorization code is required",
                details={"field": "code", "reason": "missing"},
            )

        async with self._scope() as session:
            version = (await load_user(session, user_id)).token_version

        payload = await self._broker.exchange(
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": self._config.redirect_uri,
            }
        )
        tokens = _token_set(payload)
        if tokens.expires_in <= 0:
            raise UpstreamRejectedError(
                "Upstream returned an already expired token",
                details={"reason": "expired_token", "expires_in": tokens.expires_in},
            )

        status = await self.commit(user_id, tokens, expected_version=version)
        self._audit.connection_established(
            user_id,
            expires_at=status.expires_at,
            token_version=status.token_version,
        )
        return status

    async def disconnect(
        self,
        user_id: str,
        *,
        expected_version: int | None = None,
        reason: str = "user_request",
    ) -> ConnectionStatus:
        """Clear the stored pair and mark the user disconnected.

        With ``expected_version`` the clear only applies if no other
        rotation happened in between.

        A user-requested disconnect also asks the provider to revoke the
        refresh token when a revocation endpoint is configured. That call
        is best effort: failures are logged and the local clear stands.

        Raises:
            NotFoundError: Unknown user
            ConcurrentModificationError: ``expected_version`` no longer current
        """
        revocable = None
        if reason == "user_request" and self._config.revoke_url:
            _, revocable, _, _ = await self._stored_pair(user_id)

        conditions = [User.id == user_id]
        if expected_version is not None:
            conditions.append(User.token_version == expected_version)

        async with self._scope() as session:
            result = await session.execute(
                update(User)
                .where(*conditions)
                .values(
                    upstream_access_token=None,
                    upstream_refresh_token=None,
                    upstream_expires_at=None,
                    upstream_connected=False,
                    token_version=User.token_version + 1,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                if expected_version is None:
                    raise NotFoundError("User not found", details={"user_id": user_id})
                raise ConcurrentModificationError(
                    details={"user_id": user_id, "expected_version": expected_version}
                )
            status = ConnectionStatus.from_model(await load_user(session, user_id))

        self._audit.connection_removed(user_id, reason=reason)
        if revocable:
            await self._revoke_upstream(user_id, revocable)
        return status

    async def _revoke_upstream(self, user_id: str, token: str) -> None:
        try:
            await self._broker.revoke(token)
        except TollgateError as e:
            self._log.warning("upstream.revoke.failed", user_id=user_id, error_code=e.code)

    async def _drop_expired(self, user_id: str, version: int) -> None:
        try:
            await self.disconnect(user_id, expected_version=version, reason="connection_expired")
        except ConcurrentModificationError:
            # A newer pair was stored meanwhile; leave it in place
            self._log.info("upstream.disconnect.skipped", user_id=user_id, reason="version_changed")

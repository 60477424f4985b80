"""Structured audit events.

Every event goes through one logger bound with ``audit=True`` so the log
pipeline can route them separately. Callers pass identifiers and masked
values only; the ``redact_secrets`` processor is a backstop, not the plan.
"""

from __future__ import annotations

from datetime import datetime

import structlog

logger = structlog.get_logger()


class AuditLog:
    """Emits credential lifecycle events."""

    def __init__(self) -> None:
        self._log = logger.bind(audit=True)

    def key_issued(
        self,
        user_id: str,
        key_id: str,
        *,
        name: str,
        masked_key: str,
        expires_at: datetime,
    ) -> None:
        self._log.info(
            "api_key.issued",
            user_id=user_id,
            key_id=key_id,
            name=name,
            masked_key=masked_key,
            expires_at=expires_at.isoformat(),
        )

    def key_revoked(self, user_id: str, key_id: str, *, name: str, masked_key: str) -> None:
        self._log.info(
            "api_key.revoked",
            user_id=user_id,
            key_id=key_id,
            name=name,
            masked_key=masked_key,
        )

    def keys_reaped(self, count: int, *, retention_days: int) -> None:
        self._log.info("api_key.reaped", count=count, retention_days=retention_days)

    def connection_established(self, user_id: str, *, expires_at: datetime, token_version: int) -> None:
        self._log.info(
            "upstream.connection.established",
            user_id=user_id,
            expires_at=expires_at.isoformat(),
            token_version=token_version,
        )

    def connection_refreshed(self, user_id: str, *, expires_at: datetime, token_version: int) -> None:
        self._log.info(
            "upstream.connection.refreshed",
            user_id=user_id,
            expires_at=expires_at.isoformat(),
            token_version=token_version,
        )

    def connection_removed(self, user_id: str, *, reason: str) -> None:
        self._log.info("upstream.connection.removed", user_id=user_id, reason=reason)

    def refresh_failed(self, user_id: str, *, error_code: str) -> None:
        self._log.warning("upstream.refresh.failed", user_id=user_id, error_code=error_code)

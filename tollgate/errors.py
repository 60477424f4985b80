"""Tollgate error types.

Error codes are stable identifiers for programmatic handling; the host
application maps each error to its ``status_code`` with ``to_dict`` as the
response body.
"""

from __future__ import annotations

from typing import Any


class TollgateError(Exception):
    """Base error for all Tollgate exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500
    # Whether retrying the whole operation later can succeed unchanged
    retryable: bool = False

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if request_id:
            error["request_id"] = request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ValidationError(TollgateError):
    """Invalid input (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class NotFoundError(TollgateError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


# ---- API keys ----


class LimitExceededError(TollgateError):
    """User already holds the maximum number of active keys (409)."""

    code = "key_limit_exceeded"
    message = "Maximum number of active API keys reached"
    status_code = 409


class AlreadyInactiveError(TollgateError):
    """Key was already revoked (409)."""

    code = "key_already_inactive"
    message = "API key is already inactive"
    status_code = 409


class KeyExpiredError(TollgateError):
    """Key is past its expiry and can only leave through reaping (409)."""

    code = "key_expired"
    message = "API key has expired"
    status_code = 409


# ---- Upstream connection ----


class ConcurrentModificationError(TollgateError):
    """Another writer committed first; re-read and retry the operation (409)."""

    code = "concurrent_modification"
    message = "Resource was modified concurrently"
    status_code = 409
    retryable = True


class NotConnectedError(TollgateError):
    """User has no stored upstream token pair (400)."""

    code = "not_connected"
    message = "User is not connected to the upstream provider"
    status_code = 400


class InvalidStateError(TollgateError):
    """Stored connection state is inconsistent (409)."""

    code = "invalid_state"
    message = "Stored upstream connection state is invalid"
    status_code = 409


class InvalidRefreshTokenError(TollgateError):
    """Upstream rejected the refresh request as malformed (400)."""

    code = "invalid_refresh_token"
    message = "Invalid refresh token"
    status_code = 400


class ConnectionExpiredError(TollgateError):
    """Refresh token revoked or expired; the user must reconnect (401)."""

    code = "connection_expired"
    message = "Upstream connection expired. Please reconnect your account."
    status_code = 401


class SigningError(TollgateError):
    """Client assertion could not be signed (500)."""

    code = "signing_error"
    message = "Failed to sign client assertion"
    status_code = 500


class UpstreamUnavailableError(TollgateError):
    """Upstream kept failing after all retry attempts (503)."""

    code = "upstream_unavailable"
    message = "Upstream provider unavailable"
    status_code = 503
    retryable = True


class UpstreamRejectedError(TollgateError):
    """Upstream answered with a non-retryable client error (502).

    ``upstream_status`` holds the provider's HTTP status.
    """

    code = "upstream_rejected"
    message = "Upstream provider rejected the request"
    status_code = 502

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message, details)
        self.upstream_status = upstream_status


class UpstreamRateLimitedError(UpstreamRejectedError):
    """Upstream rate limit hit (429)."""

    code = "upstream_rate_limited"
    message = "Upstream provider rate limit exceeded"
    status_code = 429

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        upstream_status: int | None = 429,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message, details, upstream_status=upstream_status)
        self.retry_after = retry_after

"""Service-level upstream identity.

``UpstreamTokenBroker`` owns the client-credentials token the service
uses on its own behalf. The token lives in a ``ServiceTokenCache`` that is
injected rather than global, so tests and multiple apps get their own.

Concurrent callers that find the cache empty each acquire a token; the
last successful response wins. Each store replaces the whole record, so a
reader never sees a token paired with another token's expiry.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from tollgate.config import UpstreamConfig
from tollgate.errors import UpstreamRejectedError, ValidationError
from tollgate.services.upstream.assertion import load_signing_key, sign_assertion
from tollgate.services.upstream.transport import UpstreamTransport

logger = structlog.get_logger()

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


@dataclass(frozen=True)
class _CachedToken:
    token: str
    expires_at: float


class ServiceTokenCache:
    """Single-owner holder of the service token."""

    def __init__(self, margin_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self._margin = margin_seconds
        self._clock = clock
        self._entry: _CachedToken | None = None
        self._lock = threading.Lock()

    def get(self) -> str | None:
        """Cached token if it is still valid beyond the safety margin."""
        with self._lock:
            entry = self._entry
        if entry is None or entry.expires_at - self._margin <= self._clock():
            return None
        return entry.token

    def store(self, token: str, expires_in: float) -> None:
        entry = _CachedToken(token=token, expires_at=self._clock() + expires_in)
        with self._lock:
            self._entry = entry

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None


def parse_token_response(response: httpx.Response) -> dict[str, Any]:
    """Decode a token endpoint response; it must carry a token and lifetime."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if (
        not isinstance(payload, dict)
        or not payload.get("access_token")
        or not isinstance(payload.get("expires_in"), (int, float))
    ):
        raise UpstreamRejectedError(
            "Malformed token response",
            details={"status": response.status_code},
            upstream_status=response.status_code,
        )
    return payload


class UpstreamTokenBroker:
    """Acquires, caches and uses the service's client-credentials token."""

    def __init__(
        self,
        transport: UpstreamTransport,
        config: UpstreamConfig,
        cache: ServiceTokenCache | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._cache = cache or ServiceTokenCache(config.service_token_margin_seconds)
        self._log = logger.bind(component="token_broker")

    @property
    def cache(self) -> ServiceTokenCache:
        return self._cache

    def sign_assertion(self) -> str:
        """Signed client assertion.

        Raises:
            SigningError: Missing or malformed private key
        """
        return sign_assertion(self._config, key=load_signing_key(self._config.private_key))

    async def get_service_token(self) -> str:
        cached = self._cache.get()
        if cached is not None:
            self._log.debug("upstream.service_token.cache_hit")
            return cached

        response = await self._transport.send(
            "POST",
            self._config.token_url,
            data={
                "grant_type": "client_credentials",
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": self.sign_assertion(),
                "scope": " ".join(self._config.scopes),
            },
        )
        payload = parse_token_response(response)
        self._cache.store(payload["access_token"], payload["expires_in"])
        self._log.info("upstream.service_token.acquired", expires_in=payload["expires_in"])
        return payload["access_token"]

    def _client_form(self, form: dict[str, str]) -> dict[str, str]:
        data = {"client_id": self._config.client_id, **form}
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret
        return data

    async def exchange(self, form: dict[str, str]) -> dict[str, Any]:
        """POST a user grant to the token endpoint with the client credentials."""
        response = await self._transport.send("POST", self._config.token_url, data=self._client_form(form))
        return parse_token_response(response)

    async def revoke(self, token: str) -> None:
        """Ask the provider to revoke a user token.

        Raises:
            ValidationError: No revocation endpoint configured
            UpstreamRejectedError: Provider refused the request
        """
        url = self._config.revoke_url
        if url is None:
            raise ValidationError(
                "Token revocation is not configured",
                details={"field": "revoke_endpoint", "reason": "missing"},
            )
        await self._transport.send("POST", url, data=self._client_form({"token": token}))
        self._log.info("upstream.token.revoked")

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Call the provider API as the service itself.

        A 401 drops the cached token before the error propagates; the
        call is not retried with a new identity.
        """
        token = await self.get_service_token()
        try:
            return await self._transport.send(
                method,
                f"{self._config.api_url.rstrip('/')}{path}",
                params=params,
                data=data,
                headers={"Authorization": f"Bearer {token}"},
            )
        except UpstreamRejectedError as e:
            if e.upstream_status == 401:
                self._cache.invalidate()
                self._log.warning("upstream.service_token.invalidated", path=path)
            raise

    def invalidate(self) -> None:
        self._cache.invalidate()

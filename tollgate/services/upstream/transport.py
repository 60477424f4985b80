"""Retrying HTTP transport for upstream provider calls.

Every failed exchange is classified once into a tagged outcome:

    ClientError(status)   4xx - never retried
    ServerError(status)   5xx - retried
    TransportError(kind)  timeout / connect / network - retried

``should_retry`` is a pure function of that outcome. Retries back off
exponentially (2, 4, 8 ... seconds, capped) and the total number of
attempts, first one included, is ``UpstreamConfig.retry_attempts``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

import httpx
import structlog

from tollgate.config import UpstreamConfig
from tollgate.errors import (
    UpstreamRateLimitedError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ClientError:
    status: int
    response: httpx.Response


@dataclass(frozen=True)
class ServerError:
    status: int
    response: httpx.Response


@dataclass(frozen=True)
class TransportError:
    kind: str
    exc: Exception


Outcome = Union[ClientError, ServerError, TransportError]


def classify(result: httpx.Response | Exception) -> Outcome | None:
    """Map a response or exception to an outcome; None means success."""
    if isinstance(result, httpx.TimeoutException):
        return TransportError("timeout", result)
    if isinstance(result, httpx.ConnectError):
        return TransportError("connect", result)
    if isinstance(result, httpx.TransportError):
        return TransportError("network", result)
    if isinstance(result, Exception):
        raise result
    if 400 <= result.status_code < 500:
        return ClientError(result.status_code, result)
    if result.status_code >= 500:
        return ServerError(result.status_code, result)
    return None


def should_retry(outcome: Outcome) -> bool:
    return isinstance(outcome, (ServerError, TransportError))


def backoff_delay(attempt: int, cap: float) -> float:
    """Delay after the ``attempt``-th failure (1-based)."""
    return min(float(2**attempt), cap)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _describe(outcome: Outcome) -> dict[str, Any]:
    if isinstance(outcome, TransportError):
        return {"kind": outcome.kind, "error": str(outcome.exc) or type(outcome.exc).__name__}
    return {"status": outcome.status}


def raise_for_client_error(outcome: ClientError) -> None:
    """Turn a 4xx outcome into the matching Tollgate error."""
    body = _error_body(outcome.response)
    details: dict[str, Any] = {"status": outcome.status}
    if "error" in body:
        details["error"] = body["error"]
    if "error_description" in body:
        details["error_description"] = body["error_description"]

    if outcome.status == 429:
        retry_after = outcome.response.headers.get("Retry-After")
        if retry_after is not None:
            details["retry_after"] = retry_after
        raise UpstreamRateLimitedError(
            details=details,
            upstream_status=outcome.status,
            retry_after=retry_after,
        )

    raise UpstreamRejectedError(details=details, upstream_status=outcome.status)


class UpstreamTransport:
    """Sends requests through a shared ``httpx.AsyncClient`` with retries.

    Usage:
        transport = UpstreamTransport(lambda: http_client_manager.client, settings.upstream)
        response = await transport.send("POST", settings.upstream.token_url, data={...})
    """

    def __init__(
        self,
        client: Callable[[], httpx.AsyncClient],
        config: UpstreamConfig,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep
        self._log = logger.bind(component="upstream_transport")

    async def send(
        self,
        method: str,
        url: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Returns:
            The first non-error response

        Raises:
            UpstreamRateLimitedError: 429 from the provider
            UpstreamRejectedError: Any other 4xx (``upstream_status`` is set)
            UpstreamUnavailableError: 5xx / transport failures on every attempt
        """
        attempts = max(1, self._config.retry_attempts)
        outcome: Outcome | None = None

        for attempt in range(1, attempts + 1):
            try:
                result: httpx.Response | Exception = await self._client().request(
                    method,
                    url,
                    data=data,
                    params=params,
                    headers=headers,
                    timeout=self._config.timeout_seconds,
                )
            except httpx.TransportError as e:
                result = e

            outcome = classify(result)
            if outcome is None:
                return result  # type: ignore[return-value]

            if isinstance(outcome, ClientError):
                self._log.warning(
                    "upstream.request.rejected",
                    method=method,
                    url=url,
                    status=outcome.status,
                )
                raise_for_client_error(outcome)

            if not should_retry(outcome) or attempt == attempts:
                break

            delay = backoff_delay(attempt, self._config.max_backoff_seconds)
            self._log.warning(
                "upstream.retry",
                method=method,
                url=url,
                attempt=attempt,
                max_attempts=attempts,
                delay=delay,
                **_describe(outcome),
            )
            await self._sleep(delay)

        self._log.error(
            "upstream.request.failed",
            method=method,
            url=url,
            attempts=attempts,
            **_describe(outcome),
        )
        raise UpstreamUnavailableError(details={"attempts": attempts, **_describe(outcome)})

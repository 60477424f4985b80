"""Process-wide httpx client for upstream provider calls.

The token endpoint and the data API share one connection pool. Services
hold ``get_http_client`` rather than the client itself, so they can be
built before the lifespan opens the pool.
"""

from __future__ import annotations

import httpx
import structlog

from tollgate import __version__
from tollgate.config import UpstreamConfig

logger = structlog.get_logger()

DEFAULT_LIMITS = httpx.Limits(
    max_connections=100,
    max_keepalive_connections=20,
    keepalive_expiry=30.0,
)

# Upper bound for the TCP/TLS handshake, whatever the overall timeout
_CONNECT_TIMEOUT_CAP = 5.0


class HTTPClientManager:
    """Opens and closes the shared ``httpx.AsyncClient``.

    Usage:
        await http_client_manager.startup(settings.upstream)
        ...
        await http_client_manager.shutdown()
    """

    def __init__(self, limits: httpx.Limits | None = None) -> None:
        self._limits = limits or DEFAULT_LIMITS
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTP client is not running; start it in the app lifespan")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self, config: UpstreamConfig) -> httpx.AsyncClient:
        """Open the pool; a second call returns the running client."""
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return self._client

        timeout = httpx.Timeout(
            config.timeout_seconds,
            connect=min(config.timeout_seconds, _CONNECT_TIMEOUT_CAP),
        )
        self._client = httpx.AsyncClient(
            limits=self._limits,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "User-Agent": f"tollgate/{__version__}",
            },
            follow_redirects=False,
        )
        self._log.info(
            "http_client.started",
            timeout_seconds=config.timeout_seconds,
            max_connections=self._limits.max_connections,
        )
        return self._client

    async def shutdown(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        await client.aclose()
        self._log.info("http_client.closed")


http_client_manager = HTTPClientManager()


def get_http_client() -> httpx.AsyncClient:
    """The running shared client.

    Raises:
        RuntimeError: Called outside the app lifespan
    """
    return http_client_manager.client

"""Upstream open-banking provider services."""

from tollgate.services.upstream.broker import ServiceTokenCache, UpstreamTokenBroker
from tollgate.services.upstream.data import UpstreamDataClient
from tollgate.services.upstream.rotator import UserTokenRotator
from tollgate.services.upstream.transport import UpstreamTransport

__all__ = [
    "ServiceTokenCache",
    "UpstreamDataClient",
    "UpstreamTokenBroker",
    "UpstreamTransport",
    "UserTokenRotator",
]

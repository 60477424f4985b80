"""Service graph assembly.

The host builds one ``Services`` per app and keeps it on ``app.state``;
tests build their own over a temp-file database and a mocked client.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from tollgate.config import Settings
from tollgate.db.session import SessionScope
from tollgate.services.audit import AuditLog
from tollgate.services.keys import KeyLedger, KeyMaterial
from tollgate.services.upstream import (
    ServiceTokenCache,
    UpstreamDataClient,
    UpstreamTokenBroker,
    UpstreamTransport,
    UserTokenRotator,
)
from tollgate.services.upstream.transport import Sleep


@dataclass
class Services:
    audit: AuditLog
    material: KeyMaterial
    ledger: KeyLedger
    transport: UpstreamTransport
    broker: UpstreamTokenBroker
    rotator: UserTokenRotator
    data: UpstreamDataClient


def build_services(
    settings: Settings,
    scope: SessionScope,
    client: Callable[[], httpx.AsyncClient],
    *,
    sleep: Sleep = asyncio.sleep,
) -> Services:
    """Wire the credential services together.

    Args:
        settings: Application settings
        scope: Transactional session scope
        client: Returns the shared httpx client at call time
        sleep: Backoff sleep, replaceable in tests
    """
    audit = AuditLog()
    material = KeyMaterial(settings.keys)
    ledger = KeyLedger(scope, material, settings.keys, audit)

    transport = UpstreamTransport(client, settings.upstream, sleep=sleep)
    broker = UpstreamTokenBroker(
        transport,
        settings.upstream,
        ServiceTokenCache(settings.upstream.service_token_margin_seconds),
    )
    rotator = UserTokenRotator(scope, broker, settings.upstream, audit)
    data = UpstreamDataClient(rotator, transport, settings.upstream)

    return Services(
        audit=audit,
        material=material,
        ledger=ledger,
        transport=transport,
        broker=broker,
        rotator=rotator,
        data=data,
    )

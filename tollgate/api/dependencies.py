"""FastAPI dependencies for Tollgate.

Routes (owned by the host application) pull the credential services from
``app.state.services`` through these getters:

    @router.post("/keys")
    async def issue_key(ledger: Annotated[KeyLedger, Depends(get_key_ledger)]):
        ...
"""

from __future__ import annotations

from fastapi import Request

from tollgate.services.container import Services
from tollgate.services.keys import KeyLedger
from tollgate.services.upstream import UpstreamDataClient, UpstreamTokenBroker, UserTokenRotator


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized. Is the app lifespan running?")
    return services


def get_key_ledger(request: Request) -> KeyLedger:
    return get_services(request).ledger


def get_token_rotator(request: Request) -> UserTokenRotator:
    return get_services(request).rotator


def get_token_broker(request: Request) -> UpstreamTokenBroker:
    return get_services(request).broker


def get_data_client(request: Request) -> UpstreamDataClient:
    return get_services(request).data

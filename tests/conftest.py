"""Shared fixtures.

Persistence runs on a temp-file SQLite database so concurrent sessions
get real, separate connections.
"""

from __future__ import annotations

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

import tollgate.models  # noqa: F401
from tollgate.config import KeyPolicyConfig, UpstreamConfig
from tollgate.db import create_user, make_session_factory, session_scope
from tollgate.services.keys import KeyLedger, KeyMaterial
from tollgate.services.upstream import (
    UpstreamDataClient,
    UpstreamTokenBroker,
    UpstreamTransport,
    UserTokenRotator,
)

from tests.fakes import API_URL, AUTH_URL, FakeSleep, RecordingAuditLog


@pytest.fixture(scope="session")
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    # ES512 signs with P-521
    return ec.generate_private_key(ec.SECP521R1())


@pytest.fixture(scope="session")
def ec_private_key_pem(ec_private_key) -> str:
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def key_policy() -> KeyPolicyConfig:
    # Minimum bcrypt cost keeps the suite fast
    return KeyPolicyConfig(hash_rounds=4)


@pytest.fixture
def upstream_config(ec_private_key_pem) -> UpstreamConfig:
    return UpstreamConfig(
        api_url=API_URL,
        auth_url=AUTH_URL,
        client_id="client-123",
        client_secret="client-secret",
        redirect_uri="https://app.test/callback",
        kid="kid-1",
        private_key=ec_private_key_pem,
        retry_attempts=3,
    )


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tollgate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def scope(db_engine):
    return session_scope(make_session_factory(db_engine))


@pytest.fixture
async def user_id(scope) -> str:
    async with scope() as session:
        await create_user(session, "user-1")
    return "user-1"


@pytest.fixture
def audit() -> RecordingAuditLog:
    return RecordingAuditLog()


@pytest.fixture
def material(key_policy) -> KeyMaterial:
    return KeyMaterial(key_policy)


@pytest.fixture
def ledger(scope, material, key_policy, audit) -> KeyLedger:
    return KeyLedger(scope, material, key_policy, audit)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def transport(http_client, upstream_config, fake_sleep) -> UpstreamTransport:
    return UpstreamTransport(lambda: http_client, upstream_config, sleep=fake_sleep)


@pytest.fixture
def broker(transport, upstream_config) -> UpstreamTokenBroker:
    return UpstreamTokenBroker(transport, upstream_config)


@pytest.fixture
def rotator(scope, broker, upstream_config, audit) -> UserTokenRotator:
    return UserTokenRotator(scope, broker, upstream_config, audit)


@pytest.fixture
def data_client(rotator, transport, upstream_config) -> UpstreamDataClient:
    return UpstreamDataClient(rotator, transport, upstream_config)

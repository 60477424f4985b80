"""Client assertion (private_key_jwt) signing."""

from __future__ import annotations

import time
import uuid

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from tollgate.config import UpstreamConfig
from tollgate.errors import SigningError


def load_signing_key(pem: str | None) -> ec.EllipticCurvePrivateKey:
    """Parse the configured EC private key.

    Literal ``\\n`` sequences (common in env vars) are turned into newlines.

    Raises:
        SigningError: Missing key, unparseable PEM, or a non-EC key
    """
    if not pem:
        raise SigningError("Signing key is not configured", details={"reason": "missing_key"})

    pem = pem.replace("\\n", "\n").strip()
    try:
        key = serialization.load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError("Invalid private key format", details={"reason": "malformed_key"}) from e

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SigningError("Private key is not an EC key", details={"reason": "wrong_key_type"})
    return key


def sign_assertion(
    config: UpstreamConfig,
    *,
    key: ec.EllipticCurvePrivateKey | None = None,
    now: float | None = None,
) -> str:
    """Build and sign a client assertion for the token endpoint.

    Claims: iss = sub = client_id, aud = token URL, iat, exp = iat + ttl,
    and a random jti. The header carries ``kid`` when configured.
    """
    key = key or load_signing_key(config.private_key)
    issued_at = int(now if now is not None else time.time())
    payload = {
        "iss": config.client_id,
        "sub": config.client_id,
        "aud": config.token_url,
        "iat": issued_at,
        "exp": issued_at + config.assertion_ttl_seconds,
        "jti": str(uuid.uuid4()),
    }
    headers = {"kid": config.kid} if config.kid else None
    try:
        return jwt.encode(payload, key, algorithm=config.signing_algorithm, headers=headers)
    except (jwt.PyJWTError, NotImplementedError, ValueError, TypeError) as e:
        raise SigningError(details={"reason": "sign_failed", "algorithm": config.signing_algorithm}) from e

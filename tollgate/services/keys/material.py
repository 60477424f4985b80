"""Key material: generation, bcrypt hashing, verification and masking.

Secrets look like ``vk_<43 url-safe chars>`` (32 random bytes, base64url
without padding). Only bcrypt hashes are stored.

Two in-memory structures exist purely for latency and may be disabled
through ``KeyPolicyConfig``:
- a small buffer of pre-generated secrets, topped up in the background
- an LRU of verification results keyed by a digest of (secret, hash)

bcrypt calls run in worker threads (``hash_async`` / ``verify_async``), so
both structures are guarded by ``threading.Lock``.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
import threading
from collections import OrderedDict, deque

import bcrypt
import structlog

from tollgate.config import KeyPolicyConfig
from tollgate.utils.masking import mask_tail

logger = structlog.get_logger()

_SECRET_BYTES = 32
# len(base64url(32 bytes)) without padding
_BODY_LENGTH = 43
_MASK_FILL = 35


class KeyMaterial:
    """Stateless key primitives plus two optional caches."""

    def __init__(self, policy: KeyPolicyConfig) -> None:
        self._prefix = policy.prefix
        self._rounds = policy.hash_rounds
        self._pattern = re.compile(
            rf"{re.escape(self._prefix)}_[A-Za-z0-9_-]{{{_BODY_LENGTH}}}"
        )

        self._buffer_size = policy.buffer_size
        self._buffer: deque[str] = deque()
        self._buffer_lock = threading.Lock()
        self._refill_scheduled = False

        self._cache_size = policy.verification_cache_size
        self._cache: OrderedDict[str, bool] = OrderedDict()
        self._cache_lock = threading.Lock()

        self._log = logger.bind(component="key_material")

    # ---- generation ----

    def _new_secret(self) -> str:
        return f"{self._prefix}_{secrets.token_urlsafe(_SECRET_BYTES)}"

    def generate(self) -> str:
        """Return a fresh secret, from the buffer when one is available."""
        secret = None
        with self._buffer_lock:
            if self._buffer:
                secret = self._buffer.popleft()
            low = len(self._buffer) < self._buffer_size // 2
        if low:
            self._schedule_refill()
        return secret or self._new_secret()

    def _schedule_refill(self) -> None:
        if self._buffer_size <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread; callers fall back to direct generation
            return
        with self._buffer_lock:
            if self._refill_scheduled:
                return
            self._refill_scheduled = True
        loop.call_soon(self._refill)

    def _refill(self) -> None:
        with self._buffer_lock:
            while len(self._buffer) < self._buffer_size:
                self._buffer.append(self._new_secret())
            self._refill_scheduled = False
        self._log.debug("key_material.buffer.refilled", size=self._buffer_size)

    @property
    def buffered(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    # ---- hashing ----

    def hash(self, secret: str) -> str:
        """bcrypt-hash ``secret``; the salt differs on every call."""
        return bcrypt.hashpw(secret.encode(), bcrypt.gensalt(rounds=self._rounds)).decode()

    def verify(self, secret: str, key_hash: str) -> bool:
        """True iff ``secret`` matches ``key_hash``.

        Malformed hashes verify as False instead of raising.
        """
        if not secret or not key_hash:
            return False

        cache_key = self._cache_key(secret, key_hash)
        if self._cache_size > 0:
            with self._cache_lock:
                cached = self._cache.get(cache_key)
                if cached is not None:
                    self._cache.move_to_end(cache_key)
                    return cached

        try:
            matched = bcrypt.checkpw(secret.encode(), key_hash.encode())
        except ValueError:
            matched = False

        if self._cache_size > 0:
            with self._cache_lock:
                self._cache[cache_key] = matched
                self._cache.move_to_end(cache_key)
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)

        return matched

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, secret: str, key_hash: str) -> bool:
        return await asyncio.to_thread(self.verify, secret, key_hash)

    @staticmethod
    def _cache_key(secret: str, key_hash: str) -> str:
        # Digest only; the cache never holds a usable secret
        return hashlib.sha256(f"{secret}:{key_hash}".encode()).hexdigest()

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @property
    def cached(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    # ---- format ----

    def validate_format(self, candidate: object) -> bool:
        return isinstance(candidate, str) and self._pattern.fullmatch(candidate) is not None

    def mask(self, secret: str) -> str:
        """Display form: prefix, first and last four body chars, filler between."""
        if not self.validate_format(secret):
            return mask_tail(secret)
        body = secret[len(self._prefix) + 1 :]
        return f"{self._prefix}_{body[:4]}{'*' * _MASK_FILL}{body[-4:]}"

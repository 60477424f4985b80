"""Input validation for API key requests."""

from __future__ import annotations

import re

from tollgate.config import KeyPolicyConfig
from tollgate.errors import ValidationError

_NAME_CHARS = re.compile(r"^[A-Za-z0-9 _-]+$")


def validate_key_name(name: str | None, policy: KeyPolicyConfig) -> str:
    """Validate a key display name.

    Rules:
    1. Must be a string
    2. Trimmed length within policy bounds (3-50 by default)
    3. Letters, digits, spaces, hyphens and underscores only

    Returns:
        The trimmed name

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(name, str):
        raise ValidationError(
            "Name is required",
            details={"field": "name", "reason": "missing"},
        )

    name = name.strip()
    if not policy.name_min_length <= len(name) <= policy.name_max_length:
        raise ValidationError(
            f"Name must be between {policy.name_min_length} and "
            f"{policy.name_max_length} characters",
            details={"field": "name", "reason": "length"},
        )

    if not _NAME_CHARS.match(name):
        raise ValidationError(
            "Name can only contain letters, numbers, spaces, hyphens, and underscores",
            details={"field": "name", "reason": "characters"},
        )

    return name


def resolve_ttl_days(ttl_days: int | None, policy: KeyPolicyConfig) -> int:
    """Return the key lifetime in days, applying the policy default."""
    if ttl_days is None:
        return policy.default_ttl_days

    # bool is an int subclass; True is not a lifetime
    if isinstance(ttl_days, bool) or not isinstance(ttl_days, int):
        raise ValidationError(
            "Expiration must be a whole number of days",
            details={"field": "expires_in", "reason": "type"},
        )

    if not 1 <= ttl_days <= policy.max_ttl_days:
        raise ValidationError(
            f"Expiration must be between 1 and {policy.max_ttl_days} days",
            details={"field": "expires_in", "reason": "range"},
        )

    return ttl_days

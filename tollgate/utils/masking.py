"""Masking helpers for values that may reach logs or responses."""

from __future__ import annotations

from typing import Any

# Field-name fragments whose string values are always masked
SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "assertion",
    "api_key",
    "key_hash",
    "authorization",
    "email",
)

_MASK_CHAR = "*"


def mask_tail(value: str | None, visible: int = 4) -> str:
    """Replace everything except the last ``visible`` characters."""
    if not value:
        return ""
    if len(value) <= visible:
        return _MASK_CHAR * len(value)
    return _MASK_CHAR * (len(value) - visible) + value[-visible:]


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, sep, domain = email.partition("@")
    if not sep:
        return mask_tail(email)
    if len(local) <= 2:
        return f"{_MASK_CHAR * len(local)}@{domain}"
    return f"{local[0]}{_MASK_CHAR * (len(local) - 2)}{local[-1]}@{domain}"


def _is_sensitive(field: str) -> bool:
    lowered = field.lower()
    return any(fragment in lowered for fragment in SENSITIVE_FIELDS)


def mask_sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive string fields masked.

    Dicts and lists are walked recursively. Strings that already contain
    the mask character are left alone so pre-masked values survive intact.
    """
    if isinstance(data, dict):
        masked: dict[Any, Any] = {}
        for field, value in data.items():
            if isinstance(value, (dict, list, tuple)):
                masked[field] = mask_sensitive(value)
            elif isinstance(value, str) and isinstance(field, str) and _is_sensitive(field):
                if _MASK_CHAR in value:
                    masked[field] = value
                elif "email" in field.lower():
                    masked[field] = mask_email(value)
                else:
                    masked[field] = mask_tail(value)
            else:
                masked[field] = value
        return masked
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive(item) for item in data)
    return data

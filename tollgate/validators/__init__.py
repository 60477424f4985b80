"""Validation utilities for Tollgate."""

from tollgate.validators.keys import resolve_ttl_days, validate_key_name
from tollgate.validators.upstream import validate_transaction_query

__all__ = ["resolve_ttl_days", "validate_key_name", "validate_transaction_query"]

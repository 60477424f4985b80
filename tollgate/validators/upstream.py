"""Validation for upstream data queries."""

from __future__ import annotations

from datetime import date

from tollgate.errors import ValidationError

MAX_TRANSACTION_LIMIT = 100


def _parse_date(value: str, field_name: str) -> date:
    # Strict YYYY-MM-DD; fromisoformat alone also accepts 20240101
    if len(value) != 10 or value[4] != "-" or value[7] != "-":
        raise ValidationError(
            f"{field_name} must be a date in YYYY-MM-DD format",
            details={"field": field_name, "reason": "format"},
        )
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(
            f"{field_name} is not a valid date",
            details={"field": field_name, "reason": "format"},
        ) from None


def validate_transaction_query(
    from_date: str | None = None,
    to_date: str | None = None,
    limit: int | None = None,
) -> dict[str, str | int]:
    """Validate transaction query parameters.

    Returns:
        Query params for the provider, with unset values omitted

    Raises:
        ValidationError: On malformed dates, from > to, or limit out of 1..100
    """
    params: dict[str, str | int] = {}

    start = _parse_date(from_date, "from") if from_date else None
    end = _parse_date(to_date, "to") if to_date else None
    if start and end and start > end:
        raise ValidationError(
            "from date must not be after to date",
            details={"field": "from", "reason": "range"},
        )
    if from_date:
        params["from"] = from_date
    if to_date:
        params["to"] = to_date

    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_TRANSACTION_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_TRANSACTION_LIMIT}",
                details={"field": "limit", "reason": "range"},
            )
        params["limit"] = limit

    return params

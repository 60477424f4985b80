"""Account and transaction reads on behalf of a user."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import structlog

from tollgate.config import UpstreamConfig
from tollgate.errors import UpstreamRejectedError
from tollgate.services.upstream.rotator import UserTokenRotator
from tollgate.services.upstream.transport import UpstreamTransport
from tollgate.validators.upstream import validate_transaction_query

logger = structlog.get_logger()


def sanitize_account(account: dict[str, Any]) -> dict[str, Any]:
    """Provider account record reduced to display fields.

    The account number is cut to its last four digits.
    """
    number_info = account.get("account_number") or {}
    provider = account.get("provider") or {}
    number = number_info.get("number")
    return {
        "id": account.get("account_id"),
        "account_type": account.get("account_type"),
        "display_name": account.get("display_name"),
        "currency": account.get("currency"),
        "account_number": f"****{number[-4:]}" if number else None,
        "sort_code": number_info.get("sort_code"),
        "provider": {
            "id": provider.get("provider_id"),
            "name": provider.get("display_name"),
        },
        "updated_at": account.get("update_timestamp"),
    }


def sanitize_transaction(transaction: dict[str, Any]) -> dict[str, Any]:
    classification = transaction.get("transaction_classification") or []
    return {
        "id": transaction.get("transaction_id"),
        "timestamp": transaction.get("timestamp"),
        "description": transaction.get("description"),
        "amount": transaction.get("amount"),
        "currency": transaction.get("currency"),
        "transaction_type": transaction.get("transaction_type"),
        "transaction_category": transaction.get("transaction_category"),
        "merchant_name": transaction.get("merchant_name"),
        "running_balance": transaction.get("running_balance"),
        "metadata": {
            "provider": (transaction.get("provider") or {}).get("display_name"),
            "category": classification[0] if classification else None,
        },
    }


class UpstreamDataClient:
    """Reads provider data with the user's own, freshly rotated token."""

    def __init__(
        self,
        rotator: UserTokenRotator,
        transport: UpstreamTransport,
        config: UpstreamConfig,
    ) -> None:
        self._rotator = rotator
        self._transport = transport
        self._config = config
        self._log = logger.bind(component="upstream_data")

    async def get_accounts(self, user_id: str) -> list[dict[str, Any]]:
        results = await self._get(user_id, "/data/v1/accounts")
        self._log.info("upstream.accounts.fetched", user_id=user_id, count=len(results))
        return [sanitize_account(a) for a in results]

    async def get_transactions(
        self,
        user_id: str,
        account_id: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Transactions for one account, or across all accounts.

        Raises:
            ValidationError: Bad dates or limit
        """
        params = validate_transaction_query(from_date, to_date, limit)
        path = (
            f"/data/v1/accounts/{quote(account_id, safe='')}/transactions"
            if account_id
            else "/data/v1/transactions"
        )
        results = await self._get(user_id, path, params=params)
        self._log.info(
            "upstream.transactions.fetched",
            user_id=user_id,
            account_id=account_id,
            count=len(results),
        )
        return [sanitize_transaction(t) for t in results]

    async def _get(
        self,
        user_id: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        tokens = await self._rotator.ensure_fresh(user_id)
        response = await self._transport.send(
            "GET",
            f"{self._config.api_url.rstrip('/')}{path}",
            params=params or None,
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise UpstreamRejectedError(
                "Malformed data response",
                details={"path": path},
                upstream_status=response.status_code,
            )
        return results

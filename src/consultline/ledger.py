"""
External collaborators consumed by the engine: the wallet ledger and the
rating endpoint, with their HTTP implementations.

The engine only ever reads a balance before admission and issues one debit per
session at finalize, keyed by the session id so retries never double-charge.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from consultline.errors import ConsultError, LedgerUnavailable
from consultline.models.session import Rating
from consultline.transport.http import HttpClient


class BalanceService(Protocol):
    """Wallet ledger interface."""

    async def get_balance(self, customer_id: str) -> Decimal:
        """Return the customer's current balance."""

    async def debit(self, customer_id: str, amount: Decimal, idempotency_key: str) -> Decimal:
        """Debit the customer once per idempotency key and return the new balance."""


class RatingService(Protocol):
    """Rating capture interface."""

    async def submit(self, rating: Rating) -> None:
        """Store a session rating."""


def _to_amount(data: Any, field: str = "balance") -> Decimal:
    value = data.get(field) if isinstance(data, dict) else data
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LedgerUnavailable(f"Ledger returned an unreadable {field}: {value!r}")


def _is_outage(error: ConsultError) -> bool:
    if error.code in ("transport_error", "invalid_response"):
        return True
    status = (error.details or {}).get("status", 0)
    return status >= 500 or status == 429


class HttpBalanceService:
    """Ledger over the wallet REST API."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def get_balance(self, customer_id: str) -> Decimal:
        try:
            data = await self._http.get(f"/v1/wallet/{customer_id}/balance")
        except ConsultError as e:
            if _is_outage(e):
                raise LedgerUnavailable(f"Balance lookup failed: {e}")
            raise
        return _to_amount(data)

    async def debit(self, customer_id: str, amount: Decimal, idempotency_key: str) -> Decimal:
        try:
            data = await self._http.post(
                f"/v1/wallet/{customer_id}/debit",
                {"amount": str(amount), "idempotencyKey": idempotency_key, "reason": "consultation"},
                headers={"Idempotency-Key": idempotency_key},
            )
        except ConsultError as e:
            if _is_outage(e):
                raise LedgerUnavailable(f"Debit {idempotency_key} failed: {e}")
            raise
        return _to_amount(data)


class HttpRatingService:
    def __init__(self, http: HttpClient):
        self._http = http

    async def submit(self, rating: Rating) -> None:
        await self._http.post(
            f"/v1/sessions/{rating.session_id}/rating",
            {"rating": rating.score, "review": rating.comment, "tags": rating.tags},
        )

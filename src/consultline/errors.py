"""
consultline error types.

Admission errors (InsufficientBalance, AdvisorUnavailable, AlreadyInSession,
QueueFull) fail before any channel cost is incurred. Connection errors
(ChannelUnavailable, RateLimited) are recoverable by the user. Integration
errors (LedgerUnavailable) are retried in the background and never block the
user-facing summary.
"""

from decimal import Decimal
from typing import Any, Optional


class ConsultError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class SessionError(ConsultError):
    def __init__(self, message: str, code: str = "session_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class InsufficientBalance(ConsultError):
    def __init__(self, shortfall: Decimal, minimum_required: Decimal):
        super().__init__(
            "insufficient_balance",
            f"Insufficient balance: {shortfall} short of the {minimum_required} minimum",
            {"shortfall": str(shortfall), "minimum_required": str(minimum_required)},
        )
        self.shortfall = shortfall
        self.minimum_required = minimum_required


class AdvisorUnavailable(ConsultError):
    def __init__(self, advisor_id: str):
        super().__init__("advisor_unavailable", f"Advisor {advisor_id} is unavailable", {"advisor_id": advisor_id})
        self.advisor_id = advisor_id


class AlreadyInSession(ConsultError):
    def __init__(self, customer_id: str, advisor_id: str):
        super().__init__(
            "already_in_session",
            f"Customer {customer_id} already has a session with advisor {advisor_id}",
            {"customer_id": customer_id, "advisor_id": advisor_id},
        )
        self.customer_id = customer_id
        self.advisor_id = advisor_id


class QueueFull(ConsultError):
    def __init__(self, advisor_id: str):
        super().__init__("queue_full", f"Queue for advisor {advisor_id} is full", {"advisor_id": advisor_id})
        self.advisor_id = advisor_id


class ChannelUnavailable(ConsultError):
    def __init__(self, message: str):
        super().__init__("channel_unavailable", message)


class AdvisorBusy(ConsultError):
    def __init__(self, advisor_id: str):
        super().__init__("advisor_busy", f"Advisor {advisor_id} took another session", {"advisor_id": advisor_id})
        self.advisor_id = advisor_id


class RateLimited(ConsultError):
    def __init__(self, retry_after: float):
        super().__init__("rate_limited", f"Rate limited, retry after {retry_after:g}s", {"retry_after": retry_after})
        self.retry_after = retry_after


class LedgerUnavailable(ConsultError):
    def __init__(self, message: str):
        super().__init__("ledger_unavailable", message)


class AlreadyRated(ConsultError):
    def __init__(self, session_id: str):
        super().__init__("already_rated", f"Session {session_id} was already rated", {"session_id": session_id})
        self.session_id = session_id

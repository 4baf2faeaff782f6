"""
Session models: the request, the session itself, its summary and rating.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Modality(str, Enum):
    CHAT = "chat"
    CALL = "call"


class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    QUEUED = "queued"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    SUMMARY = "summary"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {SessionState.SUMMARY, SessionState.CANCELLED, SessionState.FAILED}


class TerminationReason(str, Enum):
    USER_ENDED = "user_ended"
    PEER_ENDED = "peer_ended"
    INACTIVITY = "inactivity"
    BALANCE_EXHAUSTED = "balance_exhausted"
    APP_BACKGROUNDED = "app_backgrounded"
    CHANNEL_LOST = "channel_lost"
    USER_CANCELLED = "user_cancelled"
    HOLD_EXPIRED = "hold_expired"
    ADVISOR_UNAVAILABLE = "advisor_unavailable"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    ALREADY_IN_SESSION = "already_in_session"
    QUEUE_FULL = "queue_full"
    LEDGER_UNAVAILABLE = "ledger_unavailable"


class SessionRequest(BaseModel):
    """What the customer asked for. Immutable once created."""

    customer_id: str
    advisor_id: str
    modality: Modality = Modality.CHAT
    rate: Decimal = Field(ge=0)
    requested_at: datetime
    display_name: Optional[str] = None

    model_config = {"frozen": True}


class Session(BaseModel):
    """The central entity. Only the owning state machine mutates it."""

    id: str
    request: SessionRequest
    state: SessionState = SessionState.IDLE
    connected_at: Optional[datetime] = None
    accrued_seconds: int = 0
    paused_seconds: float = 0.0
    paused_since: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    termination_reason: Optional[TerminationReason] = None
    ended_at: Optional[datetime] = None

    @property
    def customer_id(self) -> str:
        return self.request.customer_id

    @property
    def advisor_id(self) -> str:
        return self.request.advisor_id


class SessionSummary(BaseModel):
    """Snapshot taken at Ending -> Summary. Never mutated."""

    session_id: str
    customer_id: str
    advisor_id: str
    modality: Modality
    duration_seconds: int
    total_cost: Decimal
    remaining_balance: Optional[Decimal] = None
    termination_reason: TerminationReason
    settlement_pending: bool = False
    connected_at: Optional[datetime] = None
    ended_at: datetime

    model_config = {"frozen": True}


class Rating(BaseModel):
    session_id: str
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

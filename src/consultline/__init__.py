"""
consultline: session lifecycle and billing engine for paid advisor chat and calls.

Socket.IO live rooms, per-second cost accrual, per-advisor wait queues and a
single-owner state machine per session.
"""

from consultline.client import ConsultEngine
from consultline.config import EngineSettings
from consultline.lifecycle import SessionCallbacks, SessionStateMachine
from consultline.errors import (
    ConsultError,
    SessionError,
    InsufficientBalance,
    AdvisorUnavailable,
    AlreadyInSession,
    QueueFull,
    ChannelUnavailable,
    AdvisorBusy,
    RateLimited,
    LedgerUnavailable,
    AlreadyRated,
)
from consultline.models.session import (
    Modality,
    SessionState,
    TerminationReason,
    SessionRequest,
    SessionSummary,
    Rating,
)
from consultline.models.events import C2SEvent, S2CEvent, Presence

__version__ = "0.1.0"
__all__ = [
    "ConsultEngine",
    "EngineSettings",
    "SessionCallbacks",
    "SessionStateMachine",
    "ConsultError",
    "SessionError",
    "InsufficientBalance",
    "AdvisorUnavailable",
    "AlreadyInSession",
    "QueueFull",
    "ChannelUnavailable",
    "AdvisorBusy",
    "RateLimited",
    "LedgerUnavailable",
    "AlreadyRated",
    "Modality",
    "SessionState",
    "TerminationReason",
    "SessionRequest",
    "SessionSummary",
    "Rating",
    "C2SEvent",
    "S2CEvent",
    "Presence",
]

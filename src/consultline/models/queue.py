"""
Queue models: tickets and the updates the coordinator pushes to ticket holders.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel

from consultline.models.session import SessionRequest


class QueueTicket(BaseModel):
    id: str
    request: SessionRequest
    position: int
    estimated_wait_seconds: float
    enrolled_at: datetime
    hold_expires_at: Optional[datetime] = None

    @property
    def advisor_id(self) -> str:
        return self.request.advisor_id

    @property
    def promoted(self) -> bool:
        return self.hold_expires_at is not None


class QueuePositionChanged(BaseModel):
    ticket_id: str
    position: int
    estimated_wait_seconds: float


class TicketPromoted(BaseModel):
    ticket_id: str
    hold_expires_at: datetime


class HoldExpired(BaseModel):
    ticket_id: str


class QueueClosed(BaseModel):
    """The advisor went away; the ticket is gone."""
    ticket_id: str
    advisor_id: str


QueueEvent = Union[QueuePositionChanged, TicketPromoted, HoldExpired, QueueClosed]

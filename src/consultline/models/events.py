"""
Channel event names and the typed events the channel adapter delivers.

Wire names follow the live-room protocol of the consultation backend.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel


class C2SEvent:
    """Client-to-server commands."""
    JOIN_ROOM = "live:join-room"
    LEAVE_ROOM = "live:leave-room"
    SEND_MESSAGE = "live:send-message"
    WATCH_PRESENCE = "live:watch-presence"


class S2CEvent:
    """Server-to-client events."""
    MESSAGE = "live:message"
    VIEWER_COUNT = "live:viewer-count"
    SESSION_END = "live:session-end"
    PRESENCE = "live:presence"


class Presence(str, Enum):
    FREE = "free"
    BUSY = "busy"
    OFFLINE = "offline"


class PeerMessage(BaseModel):
    session_id: str
    sender_id: str
    text: str
    message_id: Optional[str] = None
    sender_name: Optional[str] = None
    sent_at: Optional[datetime] = None


class PresenceChanged(BaseModel):
    advisor_id: str
    presence: Presence


class ParticipantCountChanged(BaseModel):
    session_id: str
    count: int


class ForcedEnd(BaseModel):
    session_id: str
    reason: str = "peer_ended"


class ChannelDegraded(BaseModel):
    session_id: str
    reason: str = ""


class ChannelRestored(BaseModel):
    session_id: str


class ChannelLost(BaseModel):
    """Reconnection gave up; the handle is dead."""
    session_id: str
    attempts: int


ChannelEvent = Union[
    PeerMessage,
    PresenceChanged,
    ParticipantCountChanged,
    ForcedEnd,
    ChannelDegraded,
    ChannelRestored,
    ChannelLost,
]

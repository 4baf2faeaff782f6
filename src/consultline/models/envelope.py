"""
Channel envelope: every command and event on the live-room socket is wrapped in one.
"""

from typing import Any, Optional
from pydantic import BaseModel


class ParticipantSource(BaseModel):
    role: str  # "customer" | "advisor" | "system"
    participant_id: Optional[str] = None
    display_name: Optional[str] = None


class MessageMetadata(BaseModel):
    event_id: str
    request_id: Optional[str] = None
    timestamp: str
    source: ParticipantSource


class ChannelPayload(BaseModel):
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    type: Optional[str] = None
    data: Optional[Any] = None


class MessageEnvelope(BaseModel):
    metadata: MessageMetadata
    type: str
    payload: ChannelPayload

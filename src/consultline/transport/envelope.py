"""
Envelope construction and parsing for the live-room socket.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from consultline.models.envelope import ChannelPayload, MessageEnvelope, MessageMetadata, ParticipantSource


def build_envelope(
    event_type: str,
    data: Any,
    participant_id: str,
    display_name: Optional[str] = None,
    session_id: Optional[str] = None,
    message_id: Optional[str] = None,
    request_id: Optional[str] = None,
    role: str = "customer",
) -> dict[str, Any]:
    """Build a C2S envelope as a dict ready for Socket.IO emit."""
    envelope = MessageEnvelope(
        metadata=MessageMetadata(
            event_id=str(uuid.uuid4()),
            request_id=request_id or str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=ParticipantSource(role=role, participant_id=participant_id, display_name=display_name),
        ),
        type=event_type,
        payload=ChannelPayload(
            session_id=session_id,
            message_id=message_id,
            type=event_type,
            data=data,
        ),
    )
    return envelope.model_dump()


def parse_envelope(raw: Any) -> Optional[MessageEnvelope]:
    """Parse an S2C envelope. Returns None if invalid."""
    if not isinstance(raw, dict):
        return None
    try:
        return MessageEnvelope.model_validate(raw)
    except ValidationError:
        return None

"""Notification model delivered to the notification sink."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class NotificationKind(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CONTINUATION_PROMPT = "continuation_prompt"
    TERMINATION = "termination"
    SUMMARY = "summary"


class Notification(BaseModel):
    kind: NotificationKind
    session_id: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = Field(default=None)

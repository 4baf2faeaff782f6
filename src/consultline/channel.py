"""
Real-time channel adapter: session-scoped live rooms over Socket.IO.

join/send/leave are commands with server acknowledgements; everything the
server pushes for a joined room is turned into a typed event and handed to the
room's subscribers in transport order. Advisor presence arrives on a lobby
subscription that is not tied to any room.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from consultline.errors import AdvisorBusy, ChannelUnavailable, RateLimited
from consultline.models.envelope import MessageEnvelope
from consultline.models.events import (
    C2SEvent,
    ChannelDegraded,
    ChannelEvent,
    ChannelLost,
    ChannelRestored,
    ForcedEnd,
    ParticipantCountChanged,
    PeerMessage,
    Presence,
    PresenceChanged,
    S2CEvent,
)
from consultline.transport.envelope import build_envelope, parse_envelope
from consultline.transport.socketio import ConnectionStatus, SocketIOManager

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60.0

ChannelListener = Callable[[ChannelEvent], None]
PresenceListener = Callable[[PresenceChanged], None]


class ChannelHandle:
    __slots__ = ("session_id", "participant_id", "display_name", "advisor_id", "closed")

    def __init__(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                 advisor_id: Optional[str] = None):
        self.session_id = session_id
        self.participant_id = participant_id
        self.display_name = display_name
        self.advisor_id = advisor_id
        self.closed = False

    def __repr__(self) -> str:
        return f"ChannelHandle(session_id={self.session_id!r}, closed={self.closed})"


class Channel(Protocol):
    """What the state machine needs from a real-time channel."""

    async def join(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                   advisor_id: Optional[str] = None) -> ChannelHandle:
        """Join a session room, or raise ChannelUnavailable / AdvisorBusy."""

    def subscribe(self, handle: ChannelHandle, listener: ChannelListener) -> Callable[[], None]:
        """Deliver the room's events to listener. Returns a cleanup function."""

    async def send(self, handle: ChannelHandle, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a payload and return the acknowledgement, or raise RateLimited / ChannelUnavailable."""

    async def leave(self, handle: ChannelHandle) -> None:
        """Leave the room. Idempotent."""


def _check_ack(ack: Any, advisor_id: Optional[str]) -> dict[str, Any]:
    if not isinstance(ack, dict):
        raise ChannelUnavailable(f"Unexpected acknowledgement: {ack!r}")
    status = ack.get("status", "ok")
    if status == "ok":
        return ack
    if status == "rate_limited":
        raise RateLimited(float(ack.get("retryAfter") or DEFAULT_RETRY_AFTER))
    if status == "busy":
        raise AdvisorBusy(advisor_id or ack.get("advisorId", "unknown"))
    raise ChannelUnavailable(ack.get("message") or f"Server refused with status {status!r}")


class ChannelAdapter:
    def __init__(self, sio: SocketIOManager, join_timeout: float = 10.0, send_timeout: float = 10.0):
        self._sio = sio
        self._join_timeout = join_timeout
        self._send_timeout = send_timeout
        self._handles: dict[str, ChannelHandle] = {}
        self._listeners: dict[str, list[ChannelListener]] = {}
        self._presence_listeners: list[PresenceListener] = []
        self._watched: dict[str, str] = {}
        self._rejoin_task: Optional[asyncio.Task] = None
        sio.add_event_handler(self._on_event)
        sio.add_status_handler(self._on_status)

    # ---- commands ----

    async def join(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                   advisor_id: Optional[str] = None) -> ChannelHandle:
        await self._sio.connect()
        handle = ChannelHandle(session_id, participant_id, display_name, advisor_id)
        await self._join_room(handle)
        self._handles[session_id] = handle
        logger.info("Joined room session=%s as %s", session_id, participant_id)
        return handle

    async def _join_room(self, handle: ChannelHandle) -> None:
        envelope = build_envelope(
            C2SEvent.JOIN_ROOM,
            {"advisorId": handle.advisor_id},
            participant_id=handle.participant_id,
            display_name=handle.display_name,
            session_id=handle.session_id,
        )
        ack = await self._sio.call(C2SEvent.JOIN_ROOM, envelope, timeout=self._join_timeout)
        _check_ack(ack, handle.advisor_id)

    def subscribe(self, handle: ChannelHandle, listener: ChannelListener) -> Callable[[], None]:
        listeners = self._listeners.setdefault(handle.session_id, [])
        listeners.append(listener)

        def remove() -> None:
            try:
                listeners.remove(listener)
            except ValueError:
                pass
        return remove

    async def send(self, handle: ChannelHandle, payload: dict[str, Any]) -> dict[str, Any]:
        if handle.closed:
            raise ChannelUnavailable(f"Room {handle.session_id} is closed")
        envelope = build_envelope(
            C2SEvent.SEND_MESSAGE,
            payload,
            participant_id=handle.participant_id,
            display_name=handle.display_name,
            session_id=handle.session_id,
        )
        ack = await self._sio.call(C2SEvent.SEND_MESSAGE, envelope, timeout=self._send_timeout)
        try:
            return _check_ack(ack, handle.advisor_id)
        except RateLimited as e:
            logger.warning("Send rate limited on session=%s, retry after %gs", handle.session_id, e.retry_after)
            raise

    async def leave(self, handle: ChannelHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self._handles.pop(handle.session_id, None)
        self._listeners.pop(handle.session_id, None)
        if not self._sio.connected:
            return
        envelope = build_envelope(
            C2SEvent.LEAVE_ROOM, None,
            participant_id=handle.participant_id,
            display_name=handle.display_name,
            session_id=handle.session_id,
        )
        try:
            await self._sio.emit(C2SEvent.LEAVE_ROOM, envelope)
        except ChannelUnavailable as e:
            logger.info("Leave for session=%s not delivered: %s", handle.session_id, e)

    def add_presence_listener(self, listener: PresenceListener) -> Callable[[], None]:
        self._presence_listeners.append(listener)

        def remove() -> None:
            try:
                self._presence_listeners.remove(listener)
            except ValueError:
                pass
        return remove

    async def watch_presence(self, advisor_id: str, participant_id: str) -> None:
        """Subscribe to an advisor's free/busy/offline changes."""
        await self._sio.connect()
        envelope = build_envelope(
            C2SEvent.WATCH_PRESENCE, {"advisorId": advisor_id}, participant_id=participant_id,
        )
        await self._sio.emit(C2SEvent.WATCH_PRESENCE, envelope)
        self._watched[advisor_id] = participant_id

    # ---- inbound ----

    def _on_event(self, event: str, raw: Any) -> None:
        envelope = parse_envelope(raw)
        if envelope is None:
            logger.warning("Dropping malformed %s event", event)
            return
        try:
            if event == S2CEvent.PRESENCE:
                self._dispatch_presence(envelope)
                return
            handle = self._handles.get(envelope.payload.session_id or "")
            if handle is None:
                return
            typed = self._to_event(event, envelope, handle)
        except (ValidationError, KeyError, ValueError) as e:
            logger.warning("Dropping unreadable %s event: %s", event, e)
            return
        if typed is not None:
            self._deliver(handle.session_id, typed)

    def _dispatch_presence(self, envelope: MessageEnvelope) -> None:
        data = envelope.payload.data or {}
        changed = PresenceChanged(advisor_id=data["advisorId"], presence=Presence(data["status"]))
        for listener in list(self._presence_listeners):
            listener(changed)

    @staticmethod
    def _to_event(event: str, envelope: MessageEnvelope, handle: ChannelHandle) -> Optional[ChannelEvent]:
        data = envelope.payload.data or {}
        session_id = handle.session_id
        if event == S2CEvent.MESSAGE:
            source = envelope.metadata.source
            if source.participant_id == handle.participant_id:
                return None  # our own echo
            return PeerMessage(
                session_id=session_id,
                sender_id=source.participant_id or source.role,
                sender_name=source.display_name,
                text=data["text"],
                message_id=envelope.payload.message_id,
                sent_at=envelope.metadata.timestamp,
            )
        if event == S2CEvent.VIEWER_COUNT:
            return ParticipantCountChanged(session_id=session_id, count=int(data["viewerCount"]))
        if event == S2CEvent.SESSION_END:
            return ForcedEnd(session_id=session_id, reason=data.get("reason") or "peer_ended")
        logger.debug("Ignoring %s on session=%s", event, session_id)
        return None

    def _deliver(self, session_id: str, event: ChannelEvent) -> None:
        for listener in list(self._listeners.get(session_id, [])):
            listener(event)

    def _on_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.DEGRADED:
            for handle in list(self._handles.values()):
                self._deliver(handle.session_id, ChannelDegraded(session_id=handle.session_id, reason="transport"))
        elif status == ConnectionStatus.RESTORED:
            self._rejoin_task = asyncio.get_running_loop().create_task(self._rejoin())
        else:
            for handle in list(self._handles.values()):
                self._lose(handle, attempts=self._sio.reconnect_attempts)

    async def _rejoin(self) -> None:
        for advisor_id, participant_id in list(self._watched.items()):
            envelope = build_envelope(C2SEvent.WATCH_PRESENCE, {"advisorId": advisor_id}, participant_id=participant_id)
            try:
                await self._sio.emit(C2SEvent.WATCH_PRESENCE, envelope)
            except ChannelUnavailable as e:
                logger.warning("Could not re-watch presence of %s: %s", advisor_id, e)
        for handle in list(self._handles.values()):
            try:
                await self._join_room(handle)
            except (ChannelUnavailable, AdvisorBusy, RateLimited) as e:
                logger.warning("Rejoin failed for session=%s: %s", handle.session_id, e)
                self._lose(handle, attempts=1)
                continue
            self._deliver(handle.session_id, ChannelRestored(session_id=handle.session_id))

    def _lose(self, handle: ChannelHandle, attempts: int) -> None:
        self._deliver(handle.session_id, ChannelLost(session_id=handle.session_id, attempts=attempts))
        handle.closed = True
        self._handles.pop(handle.session_id, None)
        self._listeners.pop(handle.session_id, None)

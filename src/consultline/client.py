"""
ConsultEngine: wires the channel, billing, queue and ledger together and
keeps one state machine per session.
"""

import dataclasses
import logging
import time
from typing import Callable, Optional

from consultline.billing import BillingEngine, SettlementQueue
from consultline.channel import Channel, ChannelAdapter
from consultline.config import EngineSettings
from consultline.errors import SessionError
from consultline.ledger import BalanceService, HttpBalanceService, HttpRatingService, RatingService
from consultline.lifecycle import SessionCallbacks, SessionStateMachine
from consultline.models.events import PresenceChanged
from consultline.models.session import SessionRequest, SessionState, SessionSummary
from consultline.notifications import LoggingNotificationSink, NotificationSink
from consultline.queue import QueueCoordinator
from consultline.registry import SessionRegistry
from consultline.transport.http import HttpClient
from consultline.transport.socketio import SocketIOManager

logger = logging.getLogger(__name__)


class ConsultEngine:
    """Session engine for paid advisor chat and call sessions (primary)."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        channel: Optional[Channel] = None,
        ledger: Optional[BalanceService] = None,
        rating_service: Optional[RatingService] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or EngineSettings()
        s = self.settings
        self._clock = clock

        self.http: Optional[HttpClient] = None
        if ledger is None or rating_service is None:
            self.http = HttpClient(base_url=s.api_base_url, token=s.access_token)
        self.ledger: BalanceService = ledger or HttpBalanceService(self.http)  # type: ignore[arg-type]
        self.rating_service: RatingService = rating_service or HttpRatingService(self.http)  # type: ignore[arg-type]

        self._sio: Optional[SocketIOManager] = None
        if channel is None:
            self._sio = SocketIOManager(
                url=s.socket_url,
                token=s.access_token,
                socketio_path=s.socketio_path,
                connect_timeout=s.connect_timeout,
                reconnect_attempts=s.reconnect_attempts,
                reconnect_delay=s.reconnect_delay,
            )
            channel = ChannelAdapter(self._sio, join_timeout=s.connect_timeout, send_timeout=s.send_timeout)
        self.channel: Channel = channel

        self.notifier: NotificationSink = notifier or LoggingNotificationSink()
        self.settlements = SettlementQueue(
            self.ledger,
            retry_delay=s.settlement_retry_delay,
            max_delay=s.settlement_max_delay,
            first_attempt_timeout=s.settlement_first_attempt_timeout,
        )
        self.billing = BillingEngine(self.settlements, minimum_session_minutes=s.minimum_session_minutes, clock=clock)
        self.queue = QueueCoordinator(
            hold_window=s.hold_window,
            default_session_seconds=s.default_session_seconds,
            eta_change_threshold=s.eta_change_threshold,
            max_queue_size=s.max_queue_size,
            clock=clock,
        )
        self.registry = SessionRegistry()
        self._sessions: dict[str, SessionStateMachine] = {}
        self._summaries_delivered: set[str] = set()

        add_listener = getattr(self.channel, "add_presence_listener", None)
        if add_listener is not None:
            add_listener(self.queue.on_presence_changed)

    # ---- sessions ----

    def create_session(
        self, request: SessionRequest, callbacks: Optional[SessionCallbacks] = None,
        session_id: Optional[str] = None,
    ) -> SessionStateMachine:
        """Build the state machine for a request without admitting it yet."""
        callbacks = callbacks or SessionCallbacks()
        on_summary = callbacks.on_summary_ready

        def summary_ready(summary: SessionSummary) -> None:
            self._summaries_delivered.add(summary.session_id)
            on_summary(summary)

        callbacks = dataclasses.replace(callbacks, on_summary_ready=summary_ready)
        machine = SessionStateMachine(
            request,
            channel=self.channel,
            billing=self.billing,
            queue=self.queue,
            ledger=self.ledger,
            registry=self.registry,
            notifier=self.notifier,
            rating_service=self.rating_service,
            callbacks=callbacks,
            settings=self.settings,
            session_id=session_id,
            clock=self._clock,
        )
        self._sessions[machine.session_id] = machine
        return machine

    async def request_session(
        self, request: SessionRequest, callbacks: Optional[SessionCallbacks] = None,
        session_id: Optional[str] = None,
    ) -> SessionStateMachine:
        """Admit a request. Admission errors propagate; the machine stays inspectable."""
        machine = self.create_session(request, callbacks, session_id=session_id)
        await machine.request_session()
        return machine

    def get(self, session_id: str) -> SessionStateMachine:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionError(f"Unknown session {session_id}", code="unknown_session") from None

    def sessions(self) -> list[SessionStateMachine]:
        return list(self._sessions.values())

    def is_disposable(self, session_id: str) -> bool:
        """A session is kept until its summary was delivered, its rating settled
        and its cost confirmed by the ledger."""
        machine = self.get(session_id)
        if machine.state in (SessionState.CANCELLED, SessionState.FAILED):
            return True
        if machine.state != SessionState.SUMMARY:
            return False
        return (
            session_id in self._summaries_delivered
            and machine.rating_settled
            and self.settlements.is_settled(session_id)
        )

    def disposable_sessions(self) -> list[str]:
        return [sid for sid in self._sessions if self.is_disposable(sid)]

    def dispose(self, session_id: str) -> None:
        if not self.is_disposable(session_id):
            raise SessionError(f"Session {session_id} is still in use", code="not_disposable")
        del self._sessions[session_id]
        self._summaries_delivered.discard(session_id)
        logger.debug("Disposed session=%s", session_id)

    # ---- presence ----

    async def watch_advisor(self, advisor_id: str, participant_id: str) -> None:
        """Track an advisor's presence so queues promote when they free up."""
        watch = getattr(self.channel, "watch_presence", None)
        if watch is None:
            raise SessionError("Channel does not support presence", code="presence_unsupported")
        await watch(advisor_id, participant_id)

    def on_presence_changed(self, event: PresenceChanged) -> None:
        self.queue.on_presence_changed(event)

    # ---- shutdown ----

    async def close(self) -> None:
        """End every live session as backgrounded and release connections."""
        live = [m for m in self._sessions.values() if not m.terminal and m.state != SessionState.IDLE]
        # queued requests are cancelled before active sessions end
        for machine in sorted(live, key=lambda m: m.state == SessionState.ACTIVE):
            if not machine.terminal:
                try:
                    await machine.app_backgrounded()
                except Exception:
                    logger.exception("Failed to close session=%s", machine.session_id)
        self.settlements.close()
        self.queue.close()
        if self._sio is not None:
            await self._sio.disconnect()
        if self.http is not None:
            await self.http.close()

    async def __aenter__(self) -> "ConsultEngine":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


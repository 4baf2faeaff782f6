"""
Session lifecycle state machine.

    Idle -> Requesting -> {Queued <-> Connecting} -> Active -> Ending -> Summary
    Requesting | Queued | Connecting -> Cancelled | Failed

One owner task per session consumes a single inbox. Commands from the UI,
billing ticks, chat timers, queue updates and channel events are all put on
that inbox; only the owner task changes the session's state, so when two
terminal triggers race the first one dequeued wins.

Inactivity and continuation timers apply to chat sessions only and are
scheduled independently: answering a continuation prompt resets the
inactivity clock but not the continuation clock.
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from consultline.billing import BillingEngine
from consultline.channel import Channel, ChannelHandle
from consultline.config import EngineSettings
from consultline.errors import (
    AdvisorBusy,
    AdvisorUnavailable,
    AlreadyInSession,
    AlreadyRated,
    ChannelUnavailable,
    ConsultError,
    InsufficientBalance,
    LedgerUnavailable,
    QueueFull,
    RateLimited,
    SessionError,
)
from consultline.ledger import BalanceService, RatingService
from consultline.models.billing import CostUpdate
from consultline.models.events import (
    ChannelDegraded,
    ChannelLost,
    ChannelRestored,
    ForcedEnd,
    ParticipantCountChanged,
    PeerMessage,
    Presence,
)
from consultline.models.notification import Notification, NotificationKind
from consultline.models.queue import (
    HoldExpired,
    QueueClosed,
    QueuePositionChanged,
    QueueTicket,
    TicketPromoted,
)
from consultline.models.session import (
    TERMINAL_STATES,
    Modality,
    Rating,
    Session,
    SessionRequest,
    SessionState,
    SessionSummary,
    TerminationReason,
)
from consultline.notifications import NotificationSink, deliver
from consultline.queue import QueueCoordinator
from consultline.registry import SessionRegistry

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.REQUESTING},
    SessionState.REQUESTING: {SessionState.CONNECTING, SessionState.QUEUED, SessionState.FAILED, SessionState.CANCELLED},
    SessionState.QUEUED: {SessionState.CONNECTING, SessionState.CANCELLED, SessionState.FAILED},
    SessionState.CONNECTING: {SessionState.ACTIVE, SessionState.QUEUED, SessionState.FAILED, SessionState.CANCELLED},
    SessionState.ACTIVE: {SessionState.ENDING},
    SessionState.ENDING: {SessionState.SUMMARY},
}

ADMISSION_FAILURES: dict[type, TerminationReason] = {
    InsufficientBalance: TerminationReason.INSUFFICIENT_BALANCE,
    AdvisorUnavailable: TerminationReason.ADVISOR_UNAVAILABLE,
    AlreadyInSession: TerminationReason.ALREADY_IN_SESSION,
    QueueFull: TerminationReason.QUEUE_FULL,
    LedgerUnavailable: TerminationReason.LEDGER_UNAVAILABLE,
}


def _noop(*_args: Any) -> None:
    pass


@dataclass
class SessionCallbacks:
    """What the UI layer subscribes to. Every callback is optional."""

    on_state_changed: Callable[[SessionState], None] = _noop
    on_cost_updated: Callable[[CostUpdate], None] = _noop
    on_queue_updated: Callable[[int, float], None] = _noop
    on_summary_ready: Callable[[SessionSummary], None] = _noop
    on_message: Callable[[PeerMessage], None] = _noop
    on_participant_count: Callable[[int], None] = _noop
    on_continuation_prompt: Callable[[], None] = _noop


# ---- inbox items produced by timers ----

@dataclass(frozen=True)
class BillingTick:
    pass


@dataclass(frozen=True)
class InactivityCheck:
    pass


@dataclass(frozen=True)
class ContinuationDue:
    pass


# ---- inbox items produced by commands ----

@dataclass
class _Command:
    reply: Optional[asyncio.Future] = field(default=None, compare=False)


@dataclass
class _Request(_Command):
    pass


@dataclass
class _Cancel(_Command):
    reason: TerminationReason = TerminationReason.USER_CANCELLED


@dataclass
class _End(_Command):
    reason: TerminationReason = TerminationReason.USER_ENDED


@dataclass
class _Send(_Command):
    text: str = ""


@dataclass
class _Continue(_Command):
    pass


@dataclass
class _Background(_Command):
    pass


InboxItem = Union[
    _Command, BillingTick, InactivityCheck, ContinuationDue,
    QueuePositionChanged, TicketPromoted, HoldExpired, QueueClosed,
    PeerMessage, ParticipantCountChanged, ForcedEnd, ChannelDegraded, ChannelRestored, ChannelLost,
]


class SessionStateMachine:
    def __init__(
        self,
        request: SessionRequest,
        *,
        channel: Channel,
        billing: BillingEngine,
        queue: QueueCoordinator,
        ledger: BalanceService,
        registry: SessionRegistry,
        notifier: NotificationSink,
        rating_service: Optional[RatingService] = None,
        callbacks: Optional[SessionCallbacks] = None,
        settings: Optional[EngineSettings] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._request = request
        self._session_id = session_id or str(uuid.uuid4())
        self._channel = channel
        self._billing = billing
        self._queue = queue
        self._ledger = ledger
        self._registry = registry
        self._notifier = notifier
        self._rating_service = rating_service
        self._callbacks = callbacks or SessionCallbacks()
        self._settings = settings or EngineSettings()
        self._clock = clock

        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._termination_reason: Optional[TerminationReason] = None
        self._summary: Optional[SessionSummary] = None
        self._ticket: Optional[QueueTicket] = None
        self._handle: Optional[ChannelHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._opening_balance = Decimal(0)
        self._last_cost = Decimal(0)
        self._low_balance_warned = False
        self._inactivity_warned = False
        self._rating: Optional[str] = None  # "submitted" | "skipped"

        self._inbox: asyncio.Queue[InboxItem] = asyncio.Queue()
        self._owner: Optional[asyncio.Task] = None
        self._terminal = asyncio.Event()
        self._ticker: Optional[asyncio.Task] = None
        self._inactivity_timer: Optional[asyncio.TimerHandle] = None
        self._continuation_timer: Optional[asyncio.TimerHandle] = None

    # ---- read side ----

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def request(self) -> SessionRequest:
        return self._request

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        """A copy of the session; None until the request is admitted."""
        return self._session.model_copy() if self._session else None

    @property
    def termination_reason(self) -> Optional[TerminationReason]:
        return self._termination_reason

    @property
    def summary(self) -> Optional[SessionSummary]:
        return self._summary

    @property
    def ticket(self) -> Optional[QueueTicket]:
        return self._ticket.model_copy() if self._ticket else None

    @property
    def rating_settled(self) -> bool:
        """Chat sessions stay open for rating until it is submitted or skipped."""
        return self._request.modality == Modality.CALL or self._rating is not None

    @property
    def terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    async def wait_terminal(self, timeout: Optional[float] = None) -> SessionState:
        await asyncio.wait_for(self._terminal.wait(), timeout=timeout)
        return self._state

    # ---- commands ----

    def post(self, item: InboxItem) -> None:
        """Hand an event to the owner task. Safe from any producer on the loop."""
        self._inbox.put_nowait(item)

    async def request_session(self) -> SessionState:
        """Admit the request. Returns Active (direct connect) or Queued.

        Raises admission errors (InsufficientBalance, AdvisorUnavailable,
        AlreadyInSession, QueueFull) and ChannelUnavailable for a failed direct
        connect.
        """
        if self._owner is None:
            self._owner = asyncio.get_running_loop().create_task(self._run())
        return await self._submit(_Request())

    async def cancel(self) -> SessionState:
        return await self._submit(_Cancel(reason=TerminationReason.USER_CANCELLED))

    async def end_session(self, reason: TerminationReason = TerminationReason.USER_ENDED) -> Optional[SessionSummary]:
        """End the session; returns the summary (the existing one if already ended)."""
        await self._submit(_End(reason=reason))
        return self._summary

    async def send_message(self, text: str) -> dict[str, Any]:
        return await self._submit(_Send(text=text))

    async def continue_session(self) -> None:
        await self._submit(_Continue())

    async def app_backgrounded(self) -> SessionState:
        """The app lost the foreground: drive the session to a terminal state."""
        return await self._submit(_Background())

    async def _submit(self, command: _Command) -> Any:
        command.reply = asyncio.get_running_loop().create_future()
        if self._owner is None or self._owner.done():
            self._answer_after_close(command)
        else:
            self.post(command)
        return await command.reply

    # ---- rating ----

    async def submit_rating(self, score: int, comment: Optional[str] = None, tags: Optional[list[str]] = None) -> Rating:
        if self._state != SessionState.SUMMARY:
            raise SessionError(f"Cannot rate a session in state {self._state.value}")
        if self._rating is not None:
            raise AlreadyRated(self._session_id)
        if not 1 <= score <= 5:
            raise SessionError("Rating score must be between 1 and 5", code="invalid_rating")
        rating = Rating(session_id=self._session_id, score=score, comment=comment, tags=tags or [])
        self._rating = "submitted"
        if self._rating_service is not None:
            try:
                await self._rating_service.submit(rating)
            except ConsultError:
                self._rating = None
                raise
        logger.info("session=%s rated %d", self._session_id, score)
        return rating

    def skip_rating(self) -> None:
        if self._state != SessionState.SUMMARY:
            raise SessionError(f"Cannot skip rating in state {self._state.value}")
        if self._rating is not None:
            raise AlreadyRated(self._session_id)
        self._rating = "skipped"

    # ---- owner task ----

    async def _run(self) -> None:
        while not self.terminal:
            item = await self._inbox.get()
            try:
                await self._handle_item(item)
            except Exception as e:
                logger.exception("session=%s failed handling %s", self._session_id, type(item).__name__)
                if isinstance(item, _Command) and item.reply is not None and not item.reply.done():
                    item.reply.set_exception(e)
        self._stop_timers()
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _Command):
                self._answer_after_close(item)

    def _answer_after_close(self, command: _Command) -> None:
        """Commands that arrive once the session is terminal."""
        reply = command.reply
        if reply is None or reply.done():
            return
        if self._state == SessionState.IDLE:
            reply.set_exception(SessionError(f"Session {self._session_id} was never requested"))
        elif isinstance(command, (_End, _Cancel, _Background)):
            reply.set_result(self._state)
        elif isinstance(command, _Continue):
            reply.set_result(None)
        else:
            reply.set_exception(SessionError(f"Session {self._session_id} is {self._state.value}"))

    async def _handle_item(self, item: InboxItem) -> None:
        if isinstance(item, _Request):
            await self._on_request(item)
        elif isinstance(item, _Cancel):
            await self._on_cancel(item)
        elif isinstance(item, _End):
            await self._on_end(item)
        elif isinstance(item, _Background):
            await self._on_background(item)
        elif isinstance(item, _Send):
            await self._on_send(item)
        elif isinstance(item, _Continue):
            self._on_continue(item)
        elif isinstance(item, BillingTick):
            await self._on_tick()
        elif isinstance(item, InactivityCheck):
            await self._on_inactivity_check()
        elif isinstance(item, ContinuationDue):
            self._on_continuation_due()
        elif isinstance(item, (QueuePositionChanged, TicketPromoted, HoldExpired, QueueClosed)):
            await self._on_queue_event(item)
        else:
            await self._on_channel_event(item)

    # ---- transitions ----

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    def _transition(self, to: SessionState, reason: Optional[TerminationReason] = None) -> None:
        if to not in ALLOWED_TRANSITIONS.get(self._state, set()):
            raise SessionError(f"Invalid transition {self._state.value} -> {to.value}", code="invalid_transition")
        previous, self._state = self._state, to
        if reason is not None and self._termination_reason is None:
            self._termination_reason = reason
        if self._session is not None:
            self._session.state = to
            if reason is not None and self._session.termination_reason is None:
                self._session.termination_reason = reason
        logger.info(
            "session=%s %s -> %s%s", self._session_id, previous.value, to.value,
            f" reason={reason.value}" if reason else "",
        )
        self._emit(self._callbacks.on_state_changed, to)
        if to in TERMINAL_STATES:
            self._terminal.set()

    def _emit(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("session=%s callback %s failed", self._session_id, getattr(callback, "__name__", callback))

    def _notify(self, kind: NotificationKind, title: str, message: str, **data: Any) -> None:
        deliver(self._notifier, Notification(
            kind=kind, session_id=self._session_id, title=title, message=message, data=data or None,
        ))

    def _fail(self, reason: TerminationReason, error: ConsultError) -> None:
        self._transition(SessionState.FAILED, reason)
        self._release_claim()
        self._notify(NotificationKind.TERMINATION, "Session could not start", str(error), code=error.code)

    def _cancelled(self, reason: TerminationReason) -> None:
        self._transition(SessionState.CANCELLED, reason)
        self._release_claim()
        self._notify(NotificationKind.TERMINATION, "Request cancelled", reason.value.replace("_", " "))

    def _release_claim(self) -> None:
        self._registry.release(self._request.customer_id, self._request.advisor_id, self._session_id)

    # ---- admission ----

    async def _on_request(self, command: _Request) -> None:
        if self._state != SessionState.IDLE:
            self._reply_error(command, SessionError(f"Session already requested ({self._state.value})"))
            return
        self._transition(SessionState.REQUESTING)
        request = self._request
        try:
            self._registry.claim(request.customer_id, request.advisor_id, self._session_id)
            if self._queue.presence(request.advisor_id) == Presence.OFFLINE:
                raise AdvisorUnavailable(request.advisor_id)
            balance = await self._ledger.get_balance(request.customer_id)
            self._billing.validate_minimum(balance, request.rate)
        except AlreadyInSession as e:
            # the other session's claim stays
            self._transition(SessionState.FAILED, TerminationReason.ALREADY_IN_SESSION)
            self._reply_error(command, e)
            return
        except ConsultError as e:
            self._fail(ADMISSION_FAILURES.get(type(e), TerminationReason.LEDGER_UNAVAILABLE), e)
            self._reply_error(command, e)
            return
        except Exception as e:
            logger.exception("session=%s balance lookup failed", self._session_id)
            error = LedgerUnavailable(f"Balance lookup failed: {e}")
            self._fail(TerminationReason.LEDGER_UNAVAILABLE, error)
            self._reply_error(command, error)
            return

        self._opening_balance = balance
        self._session = Session(id=self._session_id, request=request, state=self._state)

        if self._queue.try_claim(request.advisor_id):
            self._transition(SessionState.CONNECTING)
            error = await self._connect(ticket=None)
        else:
            error = self._enroll()
        if error is not None:
            self._reply_error(command, error)
        else:
            self._reply(command, self._state)

    def _enroll(self) -> Optional[ConsultError]:
        try:
            ticket = self._queue.enroll(self._request, self.post)
        except (QueueFull, AdvisorUnavailable) as e:
            self._fail(ADMISSION_FAILURES[type(e)], e)
            return e
        self._ticket = ticket
        self._transition(SessionState.QUEUED)
        self._emit(self._callbacks.on_queue_updated, ticket.position, ticket.estimated_wait_seconds)
        return None

    async def _connect(self, ticket: Optional[QueueTicket]) -> Optional[ConsultError]:
        request = self._request
        try:
            handle = await asyncio.wait_for(
                self._channel.join(self._session_id, request.customer_id, request.display_name, request.advisor_id),
                timeout=self._settings.connect_timeout,
            )
        except AdvisorBusy:
            logger.info("session=%s advisor %s became busy, re-queueing", self._session_id, request.advisor_id)
            if ticket is not None:
                self._queue.cancel(request.advisor_id, ticket.id, promote_next=False)
            self._queue.on_provider_busy(request.advisor_id)
            self._ticket = None
            return self._enroll()
        except (ConsultError, asyncio.TimeoutError) as e:
            if isinstance(e, ChannelUnavailable):
                error = e
            elif isinstance(e, ConsultError):
                error = ChannelUnavailable(str(e))
            else:
                error = ChannelUnavailable(f"Timed out joining session room after {self._settings.connect_timeout}s")
            if ticket is not None:
                self._queue.cancel(request.advisor_id, ticket.id)
            else:
                self._queue.release(request.advisor_id)
            self._ticket = None
            self._fail(TerminationReason.CHANNEL_UNAVAILABLE, error)
            return error

        if ticket is not None:
            try:
                self._queue.confirm(request.advisor_id, ticket.id)
            except SessionError:
                # hold lapsed while we were joining
                await self._channel.leave(handle)
                self._ticket = None
                self._cancelled(TerminationReason.HOLD_EXPIRED)
                return None
            self._ticket = None

        self._handle = handle
        self._unsubscribe = self._channel.subscribe(handle, self.post)
        session = self._session
        assert session is not None
        now = self._now()
        session.connected_at = now
        session.last_activity_at = now
        self._transition(SessionState.ACTIVE)
        self._start_timers()
        return None

    # ---- queue ----

    async def _on_queue_event(self, event: Union[QueuePositionChanged, TicketPromoted, HoldExpired, QueueClosed]) -> None:
        ticket = self._ticket
        if self._state != SessionState.QUEUED or ticket is None or event.ticket_id != ticket.id:
            return
        if isinstance(event, QueuePositionChanged):
            ticket.position = event.position
            ticket.estimated_wait_seconds = event.estimated_wait_seconds
            self._emit(self._callbacks.on_queue_updated, event.position, event.estimated_wait_seconds)
        elif isinstance(event, TicketPromoted):
            ticket.hold_expires_at = event.hold_expires_at
            self._transition(SessionState.CONNECTING)
            self._notify(NotificationKind.INFO, "Your turn", "The advisor is free, connecting now")
            await self._connect(ticket)
        elif isinstance(event, HoldExpired):
            self._ticket = None
            self._cancelled(TerminationReason.HOLD_EXPIRED)
        else:
            self._ticket = None
            self._cancelled(TerminationReason.ADVISOR_UNAVAILABLE)

    async def _on_cancel(self, command: _Cancel) -> None:
        if self._state == SessionState.ACTIVE:
            await self._end(TerminationReason.USER_ENDED)
        elif self._state in (SessionState.QUEUED, SessionState.REQUESTING, SessionState.CONNECTING):
            self._drop_ticket()
            self._cancelled(command.reason)
        elif self._state == SessionState.IDLE:
            self._reply_error(command, SessionError("Nothing to cancel: session was never requested"))
            return
        self._reply(command, self._state)

    def _drop_ticket(self) -> None:
        if self._ticket is not None:
            self._queue.cancel(self._request.advisor_id, self._ticket.id)
            self._ticket = None

    # ---- active ----

    async def _on_end(self, command: _End) -> None:
        if self._state == SessionState.ACTIVE:
            await self._end(command.reason)
        elif self._state in (SessionState.QUEUED, SessionState.REQUESTING, SessionState.CONNECTING):
            self._drop_ticket()
            self._cancelled(TerminationReason.USER_CANCELLED)
        elif self._state == SessionState.IDLE:
            self._reply_error(command, SessionError("Session was never requested"))
            return
        self._reply(command, self._state)

    async def _on_background(self, command: _Background) -> None:
        if self._state == SessionState.ACTIVE:
            await self._end(TerminationReason.APP_BACKGROUNDED)
        elif self._state in (SessionState.QUEUED, SessionState.REQUESTING, SessionState.CONNECTING):
            self._drop_ticket()
            self._cancelled(TerminationReason.APP_BACKGROUNDED)
        self._reply(command, self._state)

    async def _on_send(self, command: _Send) -> None:
        if self._state != SessionState.ACTIVE or self._handle is None:
            self._reply_error(command, SessionError(f"Cannot send while {self._state.value}"))
            return
        try:
            ack = await self._channel.send(self._handle, {"text": command.text})
        except RateLimited as e:
            # the customer tried to talk; that counts as activity
            self._touch()
            self._notify(NotificationKind.WARNING, "Slow down", f"Please wait {e.retry_after:g} seconds before sending more messages.")
            self._reply_error(command, e)
            return
        except ChannelUnavailable as e:
            self._reply_error(command, e)
            return
        self._touch()
        self._reply(command, ack)

    def _on_continue(self, command: _Continue) -> None:
        if self._state == SessionState.ACTIVE:
            self._touch()
        self._reply(command, None)

    def _touch(self) -> None:
        if self._session is None:
            return
        self._session.last_activity_at = self._now()
        self._inactivity_warned = False
        self._schedule_inactivity()

    async def _on_tick(self) -> None:
        if self._state != SessionState.ACTIVE:
            return
        session = self._session
        assert session is not None
        self._accrue()
        seconds_left = self._billing.project_exhaustion(session, self._opening_balance)
        if seconds_left <= self._settings.exhaustion_margin_seconds:
            self._notify(NotificationKind.TERMINATION, "Session Ended", "Your session has ended due to insufficient balance.")
            await self._end(TerminationReason.BALANCE_EXHAUSTED)
            return
        if seconds_left <= self._settings.low_balance_warning_seconds and not self._low_balance_warned:
            self._low_balance_warned = True
            minutes = int(seconds_left // 60)
            self._notify(
                NotificationKind.WARNING, "Low Balance Warning",
                f"You have approximately {minutes} minute{'s' if minutes != 1 else ''} of balance remaining. "
                "Please recharge to continue the session.",
                seconds_left=seconds_left,
            )

    def _accrue(self) -> None:
        session = self._session
        assert session is not None
        update = self._billing.tick(session)
        session.accrued_seconds = update.accrued_seconds
        if update.cost >= self._last_cost:
            self._last_cost = update.cost
            self._emit(self._callbacks.on_cost_updated, update)

    async def _on_inactivity_check(self) -> None:
        session = self._session
        if self._state != SessionState.ACTIVE or session is None or self._request.modality != Modality.CHAT:
            return
        last = session.last_activity_at or session.connected_at
        assert last is not None
        idle = self._clock() - last.timestamp()
        if idle >= self._settings.inactivity_timeout:
            self._notify(NotificationKind.TERMINATION, "Session Ended", "Your session has ended due to inactivity")
            await self._end(TerminationReason.INACTIVITY)
            return
        if idle >= self._settings.inactivity_warning and not self._inactivity_warned:
            self._inactivity_warned = True
            remaining = self._settings.inactivity_timeout - idle
            self._notify(
                NotificationKind.WARNING, "Inactivity Warning",
                f"Session will end in {math.ceil(remaining)} seconds due to inactivity",
            )
        self._schedule_inactivity()

    def _on_continuation_due(self) -> None:
        if self._state != SessionState.ACTIVE or self._request.modality != Modality.CHAT:
            return
        self._notify(
            NotificationKind.CONTINUATION_PROMPT, "Continue Session?",
            "You have been chatting for a while. Would you like to continue?",
        )
        self._emit(self._callbacks.on_continuation_prompt)

    async def _on_channel_event(self, event: InboxItem) -> None:
        if self._state != SessionState.ACTIVE or self._session is None:
            return
        session = self._session
        if isinstance(event, PeerMessage):
            self._touch()
            self._emit(self._callbacks.on_message, event)
        elif isinstance(event, ParticipantCountChanged):
            self._emit(self._callbacks.on_participant_count, event.count)
        elif isinstance(event, ForcedEnd):
            self._notify(NotificationKind.TERMINATION, "Session Ended", "The advisor ended this session")
            await self._end(TerminationReason.PEER_ENDED)
        elif isinstance(event, ChannelDegraded):
            if session.paused_since is None:
                session.paused_since = self._now()
            self._notify(NotificationKind.WARNING, "Connection problem", "Reconnecting, billing is paused")
        elif isinstance(event, ChannelRestored):
            self._resume_billing()
            self._notify(NotificationKind.INFO, "Reconnected", "Connection restored")
        elif isinstance(event, ChannelLost):
            self._handle = None
            await self._end(TerminationReason.CHANNEL_LOST)

    def _resume_billing(self) -> None:
        session = self._session
        if session is None or session.paused_since is None:
            return
        session.paused_seconds += max(0.0, self._clock() - session.paused_since.timestamp())
        session.paused_since = None

    # ---- ending ----

    async def _end(self, reason: TerminationReason) -> None:
        if self._state != SessionState.ACTIVE:
            return
        session = self._session
        assert session is not None
        self._accrue()
        self._resume_billing()
        session.ended_at = self._now()
        self._transition(SessionState.ENDING, reason)
        self._stop_timers()

        try:
            final = self._billing.freeze(session)
            try:
                await self._billing.finalize(session)
            except Exception:
                logger.exception("session=%s finalize failed, settling in background", self._session_id)
                self._billing.settlements.defer(session.customer_id, final)
            receipt = self._billing.settlements.receipt(session.id)
            if receipt is not None:
                remaining: Optional[Decimal] = receipt.new_balance
            else:
                remaining = self._opening_balance - final.amount
            self._summary = SessionSummary(
                session_id=session.id,
                customer_id=session.customer_id,
                advisor_id=session.advisor_id,
                modality=self._request.modality,
                duration_seconds=session.accrued_seconds,
                total_cost=final.amount,
                remaining_balance=remaining,
                termination_reason=reason,
                settlement_pending=receipt is None,
                connected_at=session.connected_at,
                ended_at=session.ended_at,
            )
            self._transition(SessionState.SUMMARY)
            self._emit(self._callbacks.on_summary_ready, self._summary)
            self._notify(
                NotificationKind.SUMMARY, "Session summary",
                f"{session.accrued_seconds}s, total {final.amount}",
                total_cost=str(final.amount), reason=reason.value,
            )
        finally:
            await self._close_room(session)

    async def _close_room(self, session: Session) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        try:
            if self._handle is not None:
                await self._channel.leave(self._handle)
        except Exception:
            logger.exception("session=%s failed to leave the session room", self._session_id)
        finally:
            self._handle = None
            self._release_claim()
            self._queue.release(session.advisor_id, float(session.accrued_seconds))

    # ---- timers ----

    def _start_timers(self) -> None:
        loop = asyncio.get_running_loop()
        self._ticker = loop.create_task(self._tick_loop())
        if self._request.modality == Modality.CHAT:
            self._schedule_inactivity()
            self._continuation_timer = loop.call_later(
                self._settings.continuation_interval, self._continuation_fired,
            )

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.tick_interval)
            self.post(BillingTick())

    def _schedule_inactivity(self) -> None:
        if self._request.modality != Modality.CHAT or self._state != SessionState.ACTIVE:
            return
        session = self._session
        assert session is not None
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
        last = (session.last_activity_at or session.connected_at or self._now()).timestamp()
        threshold = self._settings.inactivity_timeout if self._inactivity_warned else self._settings.inactivity_warning
        delay = max(0.0, last + threshold - self._clock())
        self._inactivity_timer = asyncio.get_running_loop().call_later(delay, self.post, InactivityCheck())

    def _continuation_fired(self) -> None:
        self.post(ContinuationDue())
        self._continuation_timer = asyncio.get_running_loop().call_later(
            self._settings.continuation_interval, self._continuation_fired,
        )

    def _stop_timers(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
            self._inactivity_timer = None
        if self._continuation_timer is not None:
            self._continuation_timer.cancel()
            self._continuation_timer = None

    # ---- replies ----

    @staticmethod
    def _reply(command: _Command, value: Any) -> None:
        if command.reply is not None and not command.reply.done():
            command.reply.set_result(value)

    @staticmethod
    def _reply_error(command: _Command, error: Exception) -> None:
        if command.reply is not None and not command.reply.done():
            command.reply.set_exception(error)

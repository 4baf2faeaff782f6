"""
Queue coordinator: per-advisor FIFO wait lists.

Positions are 1-based and contiguous; removing any ticket pushes new positions
to every ticket behind it. When the advisor frees up, the head ticket is
promoted and given a hold window to connect; if the window lapses the ticket
is dropped and the next one promoted. If the advisor goes offline every ticket
holder is told so and the queue is cleared.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from consultline.errors import AdvisorUnavailable, QueueFull, SessionError
from consultline.models.events import Presence, PresenceChanged
from consultline.models.queue import (
    HoldExpired,
    QueueClosed,
    QueueEvent,
    QueuePositionChanged,
    QueueTicket,
    TicketPromoted,
)
from consultline.models.session import SessionRequest

logger = logging.getLogger(__name__)

QueueListener = Callable[[QueueEvent], None]


class _AdvisorQueue:
    __slots__ = ("tickets", "listeners", "presence", "promoted", "hold_timer", "mean_seconds", "samples", "eta_basis")

    def __init__(self) -> None:
        self.tickets: list[QueueTicket] = []
        self.listeners: dict[str, QueueListener] = {}
        self.presence: Optional[Presence] = None
        self.promoted: Optional[str] = None
        self.hold_timer: Optional[asyncio.TimerHandle] = None
        self.mean_seconds: Optional[float] = None
        self.samples = 0
        self.eta_basis: Optional[float] = None


class QueueCoordinator:
    def __init__(
        self,
        hold_window: float = 30.0,
        default_session_seconds: float = 600.0,
        eta_change_threshold: float = 60.0,
        max_queue_size: int = 20,
        clock: Callable[[], float] = time.time,
    ):
        self._hold_window = hold_window
        self._default_session_seconds = default_session_seconds
        self._eta_change_threshold = eta_change_threshold
        self._max_queue_size = max_queue_size
        self._clock = clock
        self._queues: dict[str, _AdvisorQueue] = {}

    def _queue(self, advisor_id: str) -> _AdvisorQueue:
        if advisor_id not in self._queues:
            self._queues[advisor_id] = _AdvisorQueue()
        return self._queues[advisor_id]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    # ---- inspection ----

    def presence(self, advisor_id: str) -> Optional[Presence]:
        return self._queue(advisor_id).presence

    def tickets(self, advisor_id: str) -> list[QueueTicket]:
        return [t.model_copy() for t in self._queue(advisor_id).tickets]

    def average_session_seconds(self, advisor_id: str) -> float:
        mean = self._queue(advisor_id).mean_seconds
        return mean if mean is not None else self._default_session_seconds

    def estimated_wait(self, advisor_id: str, position: int) -> float:
        return position * self.average_session_seconds(advisor_id)

    # ---- admission ----

    def try_claim(self, advisor_id: str) -> bool:
        """Take the advisor for a direct connect if free and nobody is waiting.

        Unknown presence counts as free; the channel join is the final word.
        """
        q = self._queue(advisor_id)
        if q.tickets or q.promoted is not None:
            return False
        if q.presence in (Presence.BUSY, Presence.OFFLINE):
            return False
        q.presence = Presence.BUSY
        return True

    def enroll(self, request: SessionRequest, listener: QueueListener) -> QueueTicket:
        q = self._queue(request.advisor_id)
        if q.presence == Presence.OFFLINE:
            raise AdvisorUnavailable(request.advisor_id)
        if len(q.tickets) >= self._max_queue_size:
            raise QueueFull(request.advisor_id)
        position = len(q.tickets) + 1
        ticket = QueueTicket(
            id=str(uuid.uuid4()),
            request=request,
            position=position,
            estimated_wait_seconds=self.estimated_wait(request.advisor_id, position),
            enrolled_at=self._now(),
        )
        q.tickets.append(ticket)
        q.listeners[ticket.id] = listener
        if q.eta_basis is None:
            q.eta_basis = self.average_session_seconds(request.advisor_id)
        logger.info("Enrolled ticket=%s advisor=%s position=%d", ticket.id, request.advisor_id, position)
        if q.presence == Presence.FREE and q.promoted is None:
            self._promote_head(request.advisor_id)
        return ticket.model_copy()

    def cancel(self, advisor_id: str, ticket_id: str, promote_next: bool = True) -> None:
        """Remove a ticket. Safe to call for a ticket that is already gone."""
        q = self._queue(advisor_id)
        index = self._index(q, ticket_id)
        if index is None:
            return
        was_promoted = q.promoted == ticket_id
        self._remove(advisor_id, index)
        logger.info("Cancelled ticket=%s advisor=%s", ticket_id, advisor_id)
        if was_promoted and promote_next:
            self._promote_head(advisor_id)

    def confirm(self, advisor_id: str, ticket_id: str) -> None:
        """The promoted ticket connected: it leaves the queue and the advisor is busy."""
        q = self._queue(advisor_id)
        if q.promoted != ticket_id:
            raise SessionError(f"Ticket {ticket_id} is not holding advisor {advisor_id}")
        index = self._index(q, ticket_id)
        q.presence = Presence.BUSY
        if index is not None:
            self._remove(advisor_id, index)

    # ---- advisor availability ----

    def on_presence_changed(self, event: PresenceChanged) -> None:
        if event.presence == Presence.FREE:
            self.on_provider_freed(event.advisor_id)
        elif event.presence == Presence.BUSY:
            self.on_provider_busy(event.advisor_id)
        else:
            self.on_advisor_offline(event.advisor_id)

    def on_provider_freed(self, advisor_id: str) -> None:
        q = self._queue(advisor_id)
        if q.promoted is not None:
            return
        q.presence = Presence.FREE
        self._promote_head(advisor_id)

    def on_provider_busy(self, advisor_id: str) -> None:
        q = self._queue(advisor_id)
        if q.promoted is None:
            q.presence = Presence.BUSY

    def on_advisor_offline(self, advisor_id: str) -> None:
        q = self._queue(advisor_id)
        q.presence = Presence.OFFLINE
        self._stop_hold(q)
        tickets, listeners = q.tickets, q.listeners
        q.tickets, q.listeners = [], {}
        if tickets:
            logger.warning("Advisor %s went offline with %d queued ticket(s)", advisor_id, len(tickets))
        for ticket in tickets:
            listener = listeners.get(ticket.id)
            if listener is not None:
                listener(QueueClosed(ticket_id=ticket.id, advisor_id=advisor_id))

    def release(self, advisor_id: str, session_seconds: Optional[float] = None) -> None:
        """A session with this advisor is over; record its length and free the advisor."""
        if session_seconds is not None:
            self.record_session_duration(advisor_id, session_seconds)
        q = self._queue(advisor_id)
        if q.presence != Presence.OFFLINE:
            self.on_provider_freed(advisor_id)

    def record_session_duration(self, advisor_id: str, seconds: float) -> None:
        q = self._queue(advisor_id)
        q.samples += 1
        previous = q.mean_seconds if q.mean_seconds is not None else 0.0
        q.mean_seconds = previous + (seconds - previous) / q.samples
        basis = q.eta_basis if q.eta_basis is not None else self._default_session_seconds
        if abs(q.mean_seconds - basis) >= self._eta_change_threshold:
            q.eta_basis = q.mean_seconds
            logger.debug("Advisor %s average session now %.0fs", advisor_id, q.mean_seconds)
            self._push_positions(advisor_id, start=0)

    # ---- internals ----

    @staticmethod
    def _index(q: _AdvisorQueue, ticket_id: str) -> Optional[int]:
        for i, ticket in enumerate(q.tickets):
            if ticket.id == ticket_id:
                return i
        return None

    def _remove(self, advisor_id: str, index: int) -> None:
        q = self._queue(advisor_id)
        ticket = q.tickets.pop(index)
        q.listeners.pop(ticket.id, None)
        if q.promoted == ticket.id:
            self._stop_hold(q)
        self._push_positions(advisor_id, start=index)

    def _push_positions(self, advisor_id: str, start: int) -> None:
        q = self._queue(advisor_id)
        for i in range(start, len(q.tickets)):
            ticket = q.tickets[i]
            ticket.position = i + 1
            ticket.estimated_wait_seconds = self.estimated_wait(advisor_id, ticket.position)
            listener = q.listeners.get(ticket.id)
            if listener is not None:
                listener(QueuePositionChanged(
                    ticket_id=ticket.id,
                    position=ticket.position,
                    estimated_wait_seconds=ticket.estimated_wait_seconds,
                ))

    def _promote_head(self, advisor_id: str) -> None:
        q = self._queue(advisor_id)
        if q.promoted is not None or not q.tickets or q.presence == Presence.OFFLINE:
            return
        head = q.tickets[0]
        head.hold_expires_at = self._now() + timedelta(seconds=self._hold_window)
        q.promoted = head.id
        q.hold_timer = asyncio.get_running_loop().call_later(
            self._hold_window, self._expire_hold, advisor_id, head.id,
        )
        logger.info("Promoted ticket=%s advisor=%s hold=%.0fs", head.id, advisor_id, self._hold_window)
        listener = q.listeners.get(head.id)
        if listener is not None:
            listener(TicketPromoted(ticket_id=head.id, hold_expires_at=head.hold_expires_at))

    def _expire_hold(self, advisor_id: str, ticket_id: str) -> None:
        q = self._queue(advisor_id)
        if q.promoted != ticket_id:
            return
        listener = q.listeners.get(ticket_id)
        index = self._index(q, ticket_id)
        logger.warning("Hold expired for ticket=%s advisor=%s", ticket_id, advisor_id)
        if index is not None:
            self._remove(advisor_id, index)
        else:
            self._stop_hold(q)
        if listener is not None:
            listener(HoldExpired(ticket_id=ticket_id))
        q.presence = Presence.FREE
        self._promote_head(advisor_id)

    @staticmethod
    def _stop_hold(q: _AdvisorQueue) -> None:
        if q.hold_timer is not None:
            q.hold_timer.cancel()
        q.hold_timer = None
        q.promoted = None

    def close(self) -> None:
        for q in self._queues.values():
            self._stop_hold(q)

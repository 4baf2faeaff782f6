"""Shared test fixtures and in-memory collaborators."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import pytest
from socketio import exceptions as sio_exceptions

from consultline.channel import ChannelHandle
from consultline.client import ConsultEngine
from consultline.config import EngineSettings
from consultline.errors import ChannelUnavailable, ConsultError, LedgerUnavailable
from consultline.lifecycle import SessionCallbacks
from consultline.models.notification import Notification, NotificationKind
from consultline.models.session import Modality, Rating, SessionRequest, SessionState


class FakeClock:
    """Controllable wall clock; starts at a fixed epoch second."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeLedger:
    """In-memory wallet. Debits are idempotent per key, like the real ledger."""

    balances: dict[str, Decimal] = field(default_factory=dict)
    debit_calls: list[tuple[str, Decimal, str]] = field(default_factory=list)
    applied: dict[str, Decimal] = field(default_factory=dict)
    fail_debits: int = 0
    balance_unavailable: bool = False

    async def get_balance(self, customer_id: str) -> Decimal:
        if self.balance_unavailable:
            raise LedgerUnavailable("wallet service down")
        return self.balances.get(customer_id, Decimal(0))

    async def debit(self, customer_id: str, amount: Decimal, idempotency_key: str) -> Decimal:
        self.debit_calls.append((customer_id, amount, idempotency_key))
        if self.fail_debits > 0:
            self.fail_debits -= 1
            raise LedgerUnavailable("wallet service down")
        if idempotency_key not in self.applied:
            self.balances[customer_id] = self.balances.get(customer_id, Decimal(0)) - amount
            self.applied[idempotency_key] = self.balances[customer_id]
        return self.applied[idempotency_key]


@dataclass
class FakeRatingService:
    ratings: list[Rating] = field(default_factory=list)
    fail: bool = False

    async def submit(self, rating: Rating) -> None:
        if self.fail:
            raise ConsultError("http_error", "rating endpoint down", {"status": 503})
        self.ratings.append(rating)


@dataclass
class RecordingNotificationSink:
    notifications: list[Notification] = field(default_factory=list)

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.notifications if n.kind == kind]

    def titled(self, title: str) -> list[Notification]:
        return [n for n in self.notifications if n.title == title]


class FakeChannel:
    """Channel double: joins succeed unless an error is queued for them."""

    def __init__(self) -> None:
        self.join_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.joined: list[str] = []
        self.left: list[str] = []
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.listeners: dict[str, list[Callable[[Any], None]]] = {}
        self.join_gate: Optional[asyncio.Event] = None

    async def join(self, session_id: str, participant_id: str, display_name: Optional[str] = None,
                   advisor_id: Optional[str] = None) -> ChannelHandle:
        gate, self.join_gate = self.join_gate, None
        if gate is not None:
            # holds back this one join only
            await gate.wait()
        if self.join_errors:
            raise self.join_errors.pop(0)
        self.joined.append(session_id)
        return ChannelHandle(session_id, participant_id, display_name, advisor_id)

    def subscribe(self, handle: ChannelHandle, listener: Callable[[Any], None]) -> Callable[[], None]:
        listeners = self.listeners.setdefault(handle.session_id, [])
        listeners.append(listener)
        return lambda: listeners.remove(listener) if listener in listeners else None

    async def send(self, handle: ChannelHandle, payload: dict[str, Any]) -> dict[str, Any]:
        if handle.closed:
            raise ChannelUnavailable("closed")
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((handle.session_id, payload))
        return {"status": "ok"}

    async def leave(self, handle: ChannelHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self.left.append(handle.session_id)

    def push(self, session_id: str, event: Any) -> None:
        for listener in list(self.listeners.get(session_id, [])):
            listener(event)


class FakeSocketIOClient:
    """Stands in for socketio.AsyncClient; the test plays the server."""

    def __init__(self, **kwargs: Any) -> None:
        self.options = kwargs
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.connected = False
        self.connect_calls = 0
        self.connect_failures = 0
        self.emitted: list[tuple[str, Any]] = []
        self.calls: list[tuple[str, Any]] = []
        self.acks: dict[str, Any] = {}

    def event(self, handler: Callable[..., Any]) -> Callable[..., Any]:
        self.handlers[handler.__name__] = handler
        return handler

    def on(self, name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def register(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.handlers[name] = handler
            return handler
        return register

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise sio_exceptions.ConnectionError("refused")
        self.connected = True

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    async def call(self, event: str, data: Any = None, timeout: float = 60) -> Any:
        self.calls.append((event, data))
        ack = self.acks.get(event, {"status": "ok"})
        if isinstance(ack, Exception):
            raise ack
        return ack

    async def disconnect(self) -> None:
        self.connected = False

    async def server_emit(self, event: str, data: Any) -> None:
        await self.handlers["*"](event, data)

    async def drop(self) -> None:
        self.connected = False
        await self.handlers["disconnect"]("transport close")


async def settle(rounds: int = 50) -> None:
    """Let the owner task drain whatever was posted to it."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_request(
    customer_id: str = "cust-1",
    advisor_id: str = "adv-1",
    modality: Modality = Modality.CHAT,
    rate: str = "10",
    display_name: Optional[str] = None,
) -> SessionRequest:
    return SessionRequest(
        customer_id=customer_id,
        advisor_id=advisor_id,
        modality=modality,
        rate=Decimal(rate),
        requested_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        display_name=display_name,
    )


@dataclass
class CallbackRecorder:
    states: list[SessionState] = field(default_factory=list)
    costs: list[Any] = field(default_factory=list)
    queue_updates: list[tuple[int, float]] = field(default_factory=list)
    summaries: list[Any] = field(default_factory=list)
    messages: list[Any] = field(default_factory=list)
    counts: list[int] = field(default_factory=list)
    prompts: int = 0

    def _prompt(self) -> None:
        self.prompts += 1

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_state_changed=self.states.append,
            on_cost_updated=self.costs.append,
            on_queue_updated=lambda position, eta: self.queue_updates.append((position, eta)),
            on_summary_ready=self.summaries.append,
            on_message=self.messages.append,
            on_participant_count=self.counts.append,
            on_continuation_prompt=self._prompt,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(balances={"cust-1": Decimal("100"), "cust-2": Decimal("100"), "cust-3": Decimal("100")})


@pytest.fixture
def rating_service() -> FakeRatingService:
    return FakeRatingService()


@pytest.fixture
def notifier() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def settings() -> EngineSettings:
    # periodic ticks and chat timers are driven by hand in tests
    return EngineSettings(
        tick_interval=3600,
        hold_window=30,
        settlement_retry_delay=0.01,
        settlement_max_delay=0.05,
        connect_timeout=1.0,
    )


@pytest.fixture
async def engine(settings, channel, ledger, rating_service, notifier, clock):
    eng = ConsultEngine(
        settings,
        channel=channel,
        ledger=ledger,
        rating_service=rating_service,
        notifier=notifier,
        clock=clock,
    )
    yield eng
    await eng.close()

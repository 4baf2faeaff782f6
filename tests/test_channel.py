"""Tests for the Socket.IO channel adapter against a scripted client."""

import asyncio

import pytest

from consultline.channel import ChannelAdapter
from consultline.errors import AdvisorBusy, ChannelUnavailable, RateLimited
from consultline.models.events import (
    C2SEvent,
    ChannelDegraded,
    ChannelLost,
    ChannelRestored,
    ForcedEnd,
    ParticipantCountChanged,
    PeerMessage,
    Presence,
    S2CEvent,
)
from consultline.transport.envelope import build_envelope, parse_envelope
from consultline.transport.socketio import SocketIOManager

from conftest import FakeSocketIOClient


class Harness:
    def __init__(self, reconnect_attempts: int = 3) -> None:
        self.clients: list[FakeSocketIOClient] = []
        self.sio = SocketIOManager(
            "http://live.test",
            token="tok",
            reconnect_attempts=reconnect_attempts,
            reconnect_delay=0.001,
            client_factory=self._factory,
        )
        self.adapter = ChannelAdapter(self.sio, join_timeout=1, send_timeout=1)
        self.events: list = []
        self.refuse_connects = 0

    def _factory(self, **kwargs) -> FakeSocketIOClient:
        client = FakeSocketIOClient(**kwargs)
        client.connect_failures = self.refuse_connects
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeSocketIOClient:
        return self.clients[0]

    async def join(self, session_id: str = "s-1"):
        handle = await self.adapter.join(session_id, "cust-1", "Ann", advisor_id="adv-1")
        self.adapter.subscribe(handle, self.events.append)
        return handle

    async def until(self, kind, timeout: float = 1.0):
        for _ in range(int(timeout / 0.005)):
            found = [e for e in self.events if isinstance(e, kind)]
            if found:
                return found
            await asyncio.sleep(0.005)
        raise AssertionError(f"no {kind.__name__} delivered")


def server_event(event: str, data, session_id: str = "s-1", participant_id: str = "adv-1", role: str = "advisor"):
    return build_envelope(event, data, participant_id=participant_id, session_id=session_id, role=role)


@pytest.fixture
def harness() -> Harness:
    return Harness()


class TestCommands:
    @pytest.mark.asyncio
    async def test_join_connects_and_joins_room(self, harness):
        handle = await harness.join()

        assert harness.client.options == {"reconnection": False}
        assert harness.sio.connected
        event, envelope = harness.client.calls[0]
        assert event == C2SEvent.JOIN_ROOM
        assert envelope["payload"]["session_id"] == "s-1"
        assert envelope["payload"]["data"] == {"advisorId": "adv-1"}
        assert envelope["metadata"]["source"]["participant_id"] == "cust-1"
        assert handle.session_id == "s-1"

    @pytest.mark.asyncio
    async def test_join_fails_when_transport_refuses(self, harness):
        harness.refuse_connects = 1
        with pytest.raises(ChannelUnavailable):
            await harness.adapter.join("s-1", "cust-1")
        assert not harness.sio.connected

    @pytest.mark.asyncio
    async def test_join_busy_ack(self, harness):
        await harness.sio.connect()
        harness.client.acks[C2SEvent.JOIN_ROOM] = {"status": "busy"}
        with pytest.raises(AdvisorBusy):
            await harness.adapter.join("s-1", "cust-1", advisor_id="adv-1")

    @pytest.mark.asyncio
    async def test_join_refused_ack(self, harness):
        await harness.sio.connect()
        harness.client.acks[C2SEvent.JOIN_ROOM] = {"status": "error", "message": "room closed"}
        with pytest.raises(ChannelUnavailable, match="room closed"):
            await harness.adapter.join("s-1", "cust-1")

    @pytest.mark.asyncio
    async def test_send_returns_ack(self, harness):
        handle = await harness.join()
        harness.client.acks[C2SEvent.SEND_MESSAGE] = {"status": "ok", "messageId": "m-1"}

        ack = await harness.adapter.send(handle, {"text": "hello"})

        assert ack["messageId"] == "m-1"
        event, envelope = harness.client.calls[-1]
        assert event == C2SEvent.SEND_MESSAGE
        assert envelope["payload"]["data"] == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces_retry_after(self, harness):
        handle = await harness.join()
        harness.client.acks[C2SEvent.SEND_MESSAGE] = {"status": "rate_limited", "retryAfter": 15}
        with pytest.raises(RateLimited) as exc:
            await harness.adapter.send(handle, {"text": "spam"})
        assert exc.value.retry_after == 15

        harness.client.acks[C2SEvent.SEND_MESSAGE] = {"status": "rate_limited"}
        with pytest.raises(RateLimited) as exc:
            await harness.adapter.send(handle, {"text": "spam"})
        assert exc.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_send_while_disconnected_fails_explicitly(self, harness):
        handle = await harness.join()
        harness.client.connect_failures = 100
        await harness.client.drop()

        with pytest.raises(ChannelUnavailable):
            await harness.adapter.send(handle, {"text": "lost?"})
        await harness.sio.disconnect()

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, harness):
        handle = await harness.join()

        await harness.adapter.leave(handle)
        await harness.adapter.leave(handle)

        leaves = [e for e, _ in harness.client.emitted if e == C2SEvent.LEAVE_ROOM]
        assert len(leaves) == 1
        assert handle.closed
        with pytest.raises(ChannelUnavailable):
            await harness.adapter.send(handle, {"text": "after leave"})


class TestInbound:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self, harness):
        await harness.join()
        client = harness.client

        await client.server_emit(S2CEvent.MESSAGE, server_event(S2CEvent.MESSAGE, {"text": "hi"}))
        await client.server_emit(S2CEvent.VIEWER_COUNT, server_event(S2CEvent.VIEWER_COUNT, {"viewerCount": 2}))
        await client.server_emit(S2CEvent.SESSION_END, server_event(S2CEvent.SESSION_END, {"reason": "advisor_left"}))

        assert [type(e) for e in harness.events] == [PeerMessage, ParticipantCountChanged, ForcedEnd]
        message, count, end = harness.events
        assert message.text == "hi"
        assert message.sender_id == "adv-1"
        assert count.count == 2
        assert end.reason == "advisor_left"

    @pytest.mark.asyncio
    async def test_own_echo_ignored(self, harness):
        await harness.join()
        echo = server_event(S2CEvent.MESSAGE, {"text": "mine"}, participant_id="cust-1", role="customer")
        await harness.client.server_emit(S2CEvent.MESSAGE, echo)
        assert harness.events == []

    @pytest.mark.asyncio
    async def test_other_rooms_and_garbage_dropped(self, harness):
        await harness.join()
        await harness.client.server_emit(S2CEvent.MESSAGE, server_event(S2CEvent.MESSAGE, {"text": "x"}, session_id="s-9"))
        await harness.client.server_emit(S2CEvent.MESSAGE, {"not": "an envelope"})
        await harness.client.server_emit(S2CEvent.MESSAGE, server_event(S2CEvent.MESSAGE, {"no_text": True}))
        assert harness.events == []

    @pytest.mark.asyncio
    async def test_presence_goes_to_lobby_listeners(self, harness):
        seen = []
        harness.adapter.add_presence_listener(seen.append)
        await harness.adapter.watch_presence("adv-1", "cust-1")

        watch = harness.client.emitted[0]
        assert watch[0] == C2SEvent.WATCH_PRESENCE
        await harness.client.server_emit(
            S2CEvent.PRESENCE, server_event(S2CEvent.PRESENCE, {"advisorId": "adv-1", "status": "free"}, session_id=None),
        )

        assert len(seen) == 1
        assert seen[0].advisor_id == "adv-1"
        assert seen[0].presence == Presence.FREE


class TestReconnect:
    @pytest.mark.asyncio
    async def test_outage_is_bracketed(self, harness):
        await harness.join()
        await harness.adapter.watch_presence("adv-1", "cust-1")
        harness.client.connect_failures = 1

        await harness.client.drop()
        assert isinstance(harness.events[0], ChannelDegraded)

        await harness.until(ChannelRestored)
        joins = [e for e, _ in harness.client.calls if e == C2SEvent.JOIN_ROOM]
        watches = [e for e, _ in harness.client.emitted if e == C2SEvent.WATCH_PRESENCE]
        assert len(joins) == 2
        assert len(watches) == 2
        assert harness.sio.connected

    @pytest.mark.asyncio
    async def test_reconnect_gives_up(self):
        harness = Harness(reconnect_attempts=2)
        handle = await harness.join()
        harness.client.connect_failures = 10

        await harness.client.drop()
        lost = await harness.until(ChannelLost)

        assert lost[0].attempts == 2
        assert handle.closed
        assert not harness.sio.reconnecting

    @pytest.mark.asyncio
    async def test_manual_disconnect_does_not_reconnect(self, harness):
        await harness.join()
        await harness.sio.disconnect()
        assert harness.events == []
        assert not harness.sio.reconnecting


def test_envelope_roundtrip_keeps_source():
    raw = build_envelope(C2SEvent.SEND_MESSAGE, {"text": "hey"}, participant_id="cust-1", display_name="Ann",
                         session_id="s-1")
    parsed = parse_envelope(raw)
    assert parsed.metadata.source.display_name == "Ann"
    assert parsed.payload.type == C2SEvent.SEND_MESSAGE
    assert parse_envelope("nope") is None

"""
Unit tests for the realtime channel
"""

import asyncio
import json

import pytest
from aiohttp import test_utils, web

from dashsync.errors import ConnectionLostError
from dashsync.models.connection import ConnectionStatus
from dashsync.models.notification import NotificationKind
from dashsync.services.backoff import ExponentialBackoff
from dashsync.services.realtime_channel import AiohttpWebSocketTransport, RealtimeChannel, Transport


@pytest.fixture
def channel(fake_transport, clock):
    channel = RealtimeChannel(
        fake_transport,
        topic="dashboard",
        clock=clock,
        backoff=ExponentialBackoff(base=1.0, factor=2.0, cap=30.0, jitter=0.0),
        malformed_threshold=3,
    )
    yield channel


@pytest.fixture
def statuses(channel):
    seen = []
    channel.on_state_change(lambda state: seen.append(state.status))
    return seen


@pytest.fixture
def received(channel):
    events = []
    channel.on_event(events.append)
    return events


def created(entity="vehicle"):
    return {"event": "transaction-created", "data": {"type": entity}}


@pytest.mark.unit
class TestHandshake:
    """Test connecting and joining the topic"""

    async def test_connect_joins_topic(self, channel, fake_transport, statuses):
        await channel.connect()
        assert channel.state.is_connected
        assert fake_transport.joins == [{"event": "join", "topic": "dashboard"}]
        assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]

    async def test_failed_handshake_stays_connecting(self, channel, fake_transport):
        fake_transport.fail_connects = 1
        with pytest.raises(ConnectionLostError):
            await channel.connect()
        assert channel.state.status == ConnectionStatus.CONNECTING
        assert channel.state.retry_count == 1
        assert channel.state.last_error == "Connection refused"

        await channel.connect()
        assert channel.state.is_connected
        assert channel.state.retry_count == 0

    async def test_reconnects_with_growing_backoff(self, channel, fake_transport, clock, wait_for):
        fake_transport.fail_connects = 3
        channel.start()
        try:
            delays = []
            for expected_attempts in (1, 2, 3):
                await wait_for(lambda: fake_transport.connect_attempts == expected_attempts and clock.sleeper_count == 1)
                delays.append(channel.backoff.last_delay)
                await clock.advance(channel.backoff.last_delay)

            await wait_for(lambda: channel.state.is_connected)
            assert delays == [1.0, 2.0, 4.0]
            assert fake_transport.connect_attempts == 4
            assert channel.backoff.attempts == 3

            fake_transport.push(created())
            await wait_for(lambda: channel.backoff.attempts == 0)
        finally:
            await channel.close()

    async def test_rejoins_after_connection_drop(self, channel, fake_transport, statuses, clock, wait_for):
        channel.start()
        try:
            await wait_for(lambda: channel.state.is_connected)
            fake_transport.drop_connection()
            await wait_for(lambda: clock.sleeper_count == 1)
            assert len(fake_transport.joins) == 1
            await clock.advance(channel.backoff.last_delay)
            await wait_for(lambda: len(fake_transport.joins) == 2 and channel.state.is_connected)
            assert statuses == [
                ConnectionStatus.CONNECTING,
                ConnectionStatus.CONNECTED,
                ConnectionStatus.DISCONNECTED,
                ConnectionStatus.CONNECTING,
                ConnectionStatus.CONNECTED,
            ]
        finally:
            await channel.close()

    async def test_close_disconnects(self, channel, wait_for):
        task = channel.start()
        await wait_for(lambda: channel.state.is_connected)
        await channel.close()
        assert task.done()
        assert channel.closed
        assert channel.state.status == ConnectionStatus.DISCONNECTED


class FlappingTransport(Transport):
    """Accepts every handshake and loses the connection right after."""

    def __init__(self):
        self.connect_attempts = 0

    async def connect(self):
        self.connect_attempts += 1

    async def send(self, message):
        pass

    async def receive(self):
        raise ConnectionLostError("Connection reset by peer")

    async def close(self):
        pass


@pytest.mark.unit
class TestReconnectBackoff:
    """Test spacing of reconnects after a connection is lost"""

    async def test_flapping_connection_is_spaced_by_backoff(self, clock, wait_for):
        transport = FlappingTransport()
        channel = RealtimeChannel(transport, clock=clock,
                                  backoff=ExponentialBackoff(base=1.0, factor=2.0, cap=30.0, jitter=0.0))
        channel.start()
        try:
            delays = []
            for expected_attempts in (1, 2, 3, 4):
                await wait_for(lambda: transport.connect_attempts == expected_attempts and clock.sleeper_count == 1)
                # Nothing reconnects while the clock stands still
                await asyncio.sleep(0.01)
                assert transport.connect_attempts == expected_attempts
                delays.append(channel.backoff.last_delay)
                await clock.advance(channel.backoff.last_delay)
            assert delays == [1.0, 2.0, 4.0, 8.0]
        finally:
            await channel.close()

    @pytest.mark.parametrize("uptime,expected_delay", [(0.0, 4.0), (30.0, 1.0)])
    async def test_backoff_restarts_only_after_stable_uptime(self, channel, fake_transport, clock, wait_for,
                                                             uptime, expected_delay):
        fake_transport.fail_connects = 2
        channel.start()
        try:
            for expected_attempts in (1, 2):
                await wait_for(lambda: fake_transport.connect_attempts == expected_attempts and clock.sleeper_count == 1)
                await clock.advance(channel.backoff.last_delay)
            await wait_for(lambda: channel.state.is_connected)

            await clock.advance(uptime)
            fake_transport.drop_connection()
            await wait_for(lambda: channel.state.status == ConnectionStatus.DISCONNECTED and clock.sleeper_count == 1)
            assert channel.backoff.last_delay == expected_delay
        finally:
            await channel.close()

    async def test_backoff_restarts_after_valid_frame(self, channel, fake_transport, clock, received, wait_for):
        fake_transport.fail_connects = 2
        channel.start()
        try:
            for expected_attempts in (1, 2):
                await wait_for(lambda: fake_transport.connect_attempts == expected_attempts and clock.sleeper_count == 1)
                await clock.advance(channel.backoff.last_delay)
            await wait_for(lambda: channel.state.is_connected)

            fake_transport.push(created())
            await wait_for(lambda: len(received) == 1)
            fake_transport.drop_connection()
            await wait_for(lambda: channel.state.status == ConnectionStatus.DISCONNECTED and clock.sleeper_count == 1)
            assert channel.backoff.last_delay == 1.0
        finally:
            await channel.close()

@pytest.mark.unit
class TestDispatch:
    """Test message decoding and delivery"""

    async def test_delivers_in_registration_order(self, channel):
        calls = []
        channel.on_event(lambda event: calls.append(("first", event.kind)))
        channel.on_event(lambda event: calls.append(("second", event.kind)))
        await channel.on_message('{"event": "bill-generated", "data": {}}')
        assert calls == [("first", NotificationKind.BILL_GENERATED), ("second", NotificationKind.BILL_GENERATED)]

    async def test_failing_handler_does_not_block_others(self, channel, received):
        def broken(event):
            raise RuntimeError("ui crashed")

        channel.on_event(broken)
        late = []
        channel.on_event(late.append)
        await channel.on_message('{"event": "dashboard-refresh", "data": {}}')
        assert len(received) == 1
        assert len(late) == 1

    async def test_unknown_event_ignored(self, channel, received):
        assert await channel.on_message('{"event": "user-joined", "data": {}}') is None
        assert received == []

    async def test_unsubscribe_stops_delivery(self, channel):
        calls = []
        subscription = channel.on_event(calls.append)
        subscription.unsubscribe()
        await channel.on_message('{"event": "dashboard-refresh", "data": {}}')
        assert calls == []

    async def test_notifications_arrive_in_order(self, channel, fake_transport, received, wait_for):
        channel.start()
        try:
            await wait_for(lambda: channel.state.is_connected)
            fake_transport.push(created("vehicle"))
            fake_transport.push({"event": "transaction-deleted", "data": {"type": "scrap"}})
            fake_transport.push({"event": "bill-generated", "data": {}})
            await wait_for(lambda: len(received) == 3)
            assert [e.kind for e in received] == [
                NotificationKind.CREATED,
                NotificationKind.DELETED,
                NotificationKind.BILL_GENERATED,
            ]
        finally:
            await channel.close()

    async def test_messages_while_disconnected_are_lost(self, channel, fake_transport, received):
        assert fake_transport.push(created()) is False
        assert fake_transport.dropped == 1
        assert received == []


@pytest.mark.unit
class TestMalformedMessages:
    """Test dropping malformed frames and forced reconnects"""

    async def test_single_malformed_message_dropped(self, channel, received):
        await channel.connect()
        assert await channel.on_message("{not json") is None
        await channel.on_message('{"event": "dashboard-refresh", "data": {}}')
        assert len(received) == 1

    async def test_streak_resets_on_valid_message(self, channel):
        for _ in range(3):
            await channel.on_message("garbage")
        await channel.on_message('{"event": "dashboard-refresh", "data": {}}')
        for _ in range(3):
            await channel.on_message("garbage")

    async def test_too_many_malformed_force_reconnect(self, channel, fake_transport, received, clock, wait_for):
        channel.start()
        try:
            await wait_for(lambda: channel.state.is_connected)
            for _ in range(4):
                fake_transport.push("garbage")
            await wait_for(lambda: channel.state.status == ConnectionStatus.DISCONNECTED and clock.sleeper_count == 1)
            assert len(fake_transport.joins) == 1
            await clock.advance(channel.backoff.last_delay)
            await wait_for(lambda: len(fake_transport.joins) == 2 and channel.state.is_connected)

            fake_transport.push(created())
            await wait_for(lambda: len(received) == 1)
        finally:
            await channel.close()

    async def test_threshold_raises_connection_lost(self, channel):
        for _ in range(3):
            await channel.on_message("garbage")
        with pytest.raises(ConnectionLostError):
            await channel.on_message("garbage")


@pytest.mark.unit
class TestAiohttpTransport:
    """Test the WebSocket transport against a local server"""

    async def test_join_and_receive(self, clock, wait_for):
        joined = []

        async def websocket(request):
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            joined.append(json.loads(await ws.receive_str()))
            await ws.send_str(json.dumps({"event": "bill-generated", "data": {"id": "b1"}}))
            async for _ in ws:
                pass
            return ws

        app = web.Application()
        app.router.add_get("/ws", websocket)
        server = test_utils.TestServer(app)
        await server.start_server()

        transport = AiohttpWebSocketTransport(str(server.make_url("/ws")), heartbeat=None)
        channel = RealtimeChannel(transport, topic="dashboard", clock=clock,
                                  backoff=ExponentialBackoff(jitter=0.0))
        received = []
        channel.on_event(received.append)
        try:
            channel.start()
            await wait_for(lambda: len(received) == 1)
            assert joined == [{"event": "join", "topic": "dashboard"}]
            assert received[0].payload == {"id": "b1"}
        finally:
            await channel.close()
            await server.close()

    async def test_handshake_failure(self):
        transport = AiohttpWebSocketTransport("ws://127.0.0.1:1/ws")
        try:
            with pytest.raises(ConnectionLostError):
                await transport.connect()
        finally:
            await transport.close()

"""
Realtime Channel Service

Keeps a push connection to the dashboard server open, re-joins the dashboard topic
after every reconnect and hands decoded change notifications to subscribers.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from .backoff import ExponentialBackoff
from .logging_service import get_logger
from .pubsub import Handler, Subscription, Topic
from ..errors import ConnectionLostError, ProtocolError
from ..models.connection import ConnectionState, ConnectionStatus
from ..models.notification import NotificationEvent
from ..utils.clock import Clock, SystemClock

logger = get_logger(__name__)


class Transport(ABC):
    """A bidirectional text message connection."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises ConnectionLostError on failure."""
        pass

    @abstractmethod
    async def send(self, message: str) -> None:
        pass

    @abstractmethod
    async def receive(self) -> str:
        """Next text frame. Raises ConnectionLostError once the connection is gone."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class AiohttpWebSocketTransport(Transport):
    """WebSocket transport on an aiohttp client session."""

    def __init__(
        self,
        url: str,
        heartbeat: Optional[float] = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectionLostError(f"WebSocket handshake with {self.url} failed: {e}") from e

    async def send(self, message: str) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionLostError("WebSocket is not open")
        try:
            await self._ws.send_str(message)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectionLostError(f"WebSocket send failed: {e}") from e

    async def receive(self) -> str:
        if self._ws is None:
            raise ConnectionLostError("WebSocket is not open")
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionLostError(f"WebSocket error: {self._ws.exception()}")
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                raise ConnectionLostError("WebSocket closed by server")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None


class RealtimeChannel:
    """Reconnecting subscription to the dashboard topic.

    Notifications are delivered at most once per connection; anything pushed while
    the channel is down is lost, which the reconciler compensates for by refreshing
    on reconnect.
    """

    def __init__(
        self,
        transport: Transport,
        topic: str = "dashboard",
        clock: Optional[Clock] = None,
        backoff: Optional[ExponentialBackoff] = None,
        handshake_timeout: float = 20.0,
        malformed_threshold: int = 5,
        stable_after: float = 30.0,
    ):
        self.transport = transport
        self.topic = topic
        self.clock = clock or SystemClock()
        self.backoff = backoff or ExponentialBackoff(base=1.0, factor=2.0, cap=30.0, jitter=0.5)
        self.handshake_timeout = handshake_timeout
        self.malformed_threshold = malformed_threshold
        self.stable_after = stable_after

        self.events: Topic[NotificationEvent] = Topic("notifications")
        self.state_changes: Topic[ConnectionState] = Topic("connection-state")

        self._state = ConnectionState()
        self._malformed_streak = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def on_event(self, handler: Handler) -> Subscription:
        return self.events.subscribe(handler)

    def on_state_change(self, handler: Handler) -> Subscription:
        return self.state_changes.subscribe(handler)

    async def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        self._state = state
        if previous.status != state.status:
            logger.info(
                "Connection state changed",
                topic=self.topic,
                previous=previous.status.value,
                current=state.status.value,
            )
        await self.state_changes.publish(state)

    async def connect(self) -> None:
        """Make one handshake attempt and join the topic.

        Raises:
            ConnectionLostError: if the handshake or the join failed; the channel
                stays Connecting with the failure recorded
        """
        if self._state.status == ConnectionStatus.CONNECTED:
            return
        if self._state.status == ConnectionStatus.DISCONNECTED:
            await self._set_state(self._state.transition_to(ConnectionStatus.CONNECTING))

        try:
            await asyncio.wait_for(self.transport.connect(), timeout=self.handshake_timeout)
            # Server-side subscriptions die with the connection, so join every time
            await self.transport.send(json.dumps({"event": "join", "topic": self.topic}))
        except asyncio.CancelledError:
            raise
        except (ConnectionLostError, asyncio.TimeoutError, OSError) as e:
            error = str(e) or type(e).__name__
            await self._safe_close_transport()
            await self._set_state(self._state.with_failure(error))
            logger.warning(
                "Realtime handshake failed",
                topic=self.topic,
                retry_count=self._state.retry_count,
                error=error,
            )
            raise ConnectionLostError(error) from e

        self._malformed_streak = 0
        await self._set_state(self._state.transition_to(ConnectionStatus.CONNECTED))

    async def on_message(self, raw: str) -> Optional[NotificationEvent]:
        """Decode one frame and dispatch it.

        Raises:
            ConnectionLostError: when too many consecutive frames were malformed
        """
        try:
            event = NotificationEvent.decode(raw)
        except ProtocolError as e:
            self._malformed_streak += 1
            logger.warning(
                "Dropped malformed message",
                topic=self.topic,
                streak=self._malformed_streak,
                error=str(e),
            )
            if self._malformed_streak > self.malformed_threshold:
                raise ConnectionLostError(
                    f"{self._malformed_streak} consecutive malformed messages"
                ) from e
            return None

        self._malformed_streak = 0
        if event is None:
            logger.info("Ignoring unknown event", topic=self.topic, raw=raw[:200])
            return None

        await self.events.publish(event)
        return event

    async def run(self) -> None:
        """Connect, receive and reconnect with backoff until close().

        Every reconnect waits out the next backoff delay. The backoff only starts
        over once a connection proved healthy: it delivered a well-formed frame or
        stayed up for ``stable_after`` seconds.
        """
        while not self._closed:
            try:
                await self.connect()
            except ConnectionLostError:
                await self._wait_before_reconnect()
                continue

            connected_at = self.clock.now()
            healthy = False
            try:
                while not self._closed:
                    raw = await self.transport.receive()
                    await self.on_message(raw)
                    if not healthy and self._malformed_streak == 0:
                        healthy = True
                        self.backoff.reset()
            except ConnectionLostError as e:
                if self._closed:
                    break
                logger.warning("Realtime connection lost", topic=self.topic, error=str(e))
                await self._safe_close_transport()
                await self._set_state(self._state.transition_to(ConnectionStatus.DISCONNECTED))
                if self.clock.now() - connected_at >= self.stable_after:
                    self.backoff.reset()
                await self._wait_before_reconnect()

    async def _wait_before_reconnect(self) -> None:
        delay = self.backoff.next_delay()
        logger.info("Reconnecting after backoff", topic=self.topic, delay=round(delay, 3))
        await self.clock.sleep(delay)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def close(self) -> None:
        """Stop reconnecting and close the transport."""
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._safe_close_transport()
        if self._state.status == ConnectionStatus.CONNECTED:
            await self._set_state(self._state.transition_to(ConnectionStatus.DISCONNECTED))

    async def _safe_close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug("Transport close failed", error=str(e))

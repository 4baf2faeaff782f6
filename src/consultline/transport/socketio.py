"""
Socket.IO connection manager for the live-room channel.

Connect is bounded by a timeout. A transport-level disconnect that we did not
ask for triggers bounded reconnection with linear backoff; status handlers see
DEGRADED when the outage starts and RESTORED or LOST when it ends. While the
transport is down every emit fails with ChannelUnavailable instead of being
buffered.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

import socketio
from socketio import exceptions as sio_exceptions

from consultline.errors import ChannelUnavailable

logger = logging.getLogger(__name__)

DEFAULT_SOCKETIO_PATH = "/socket.io/"
INTERNAL_EVENTS = ("connect", "disconnect", "connect_error")


class ConnectionStatus(str, Enum):
    DEGRADED = "degraded"
    RESTORED = "restored"
    LOST = "lost"


class SocketIOManager:
    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        socketio_path: str = DEFAULT_SOCKETIO_PATH,
        transports: Optional[list[str]] = None,
        connect_timeout: float = 10.0,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self._url = url
        self._token = token
        self._socketio_path = socketio_path
        self._transports = transports or ["websocket"]
        self._connect_timeout = connect_timeout
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._client_factory = client_factory or socketio.AsyncClient
        self._sio: Optional[Any] = None
        self._connected = False
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._event_handlers: list[Callable[[str, Any], None]] = []
        self._status_handlers: list[Callable[[ConnectionStatus], None]] = []

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None and self._sio.connected

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_event_handler(self, handler: Callable[[str, Any], None]) -> Callable[[], None]:
        """Add a server-event handler. Returns a cleanup function."""
        self._event_handlers.append(handler)

        def remove() -> None:
            try:
                self._event_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def add_status_handler(self, handler: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        """Add a connection-status handler. Returns a cleanup function."""
        self._status_handlers.append(handler)

        def remove() -> None:
            try:
                self._status_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    async def connect(self) -> None:
        """Connect to the live-room server within the connect timeout."""
        if self.connected:
            return
        self._closing = False
        if self._sio is None:
            self._sio = self._client_factory(reconnection=False)
            self._register(self._sio)
        await self._open()

    def _register(self, sio: Any) -> None:
        @sio.event
        async def connect() -> None:
            self._connected = True

        @sio.on("*")
        async def on_any(event: str, data: Any = None) -> None:
            if event in INTERNAL_EVENTS:
                return
            for handler in list(self._event_handlers):
                handler(event, data)

        @sio.event
        async def disconnect(_reason: str = "") -> None:
            self._on_disconnect(_reason)

    async def _open(self) -> None:
        auth = {"token": self._token} if self._token else None
        try:
            await asyncio.wait_for(
                self._sio.connect(  # type: ignore[union-attr]
                    self._url,
                    auth=auth,
                    transports=self._transports,
                    socketio_path=self._socketio_path,
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ChannelUnavailable(f"Timed out connecting to {self._url} after {self._connect_timeout}s")
        except sio_exceptions.ConnectionError as e:
            raise ChannelUnavailable(f"Could not connect to {self._url}: {e}")
        self._connected = True

    def _on_disconnect(self, reason: str) -> None:
        self._connected = False
        if self._closing or self.reconnecting:
            return
        logger.warning("Live-room transport dropped (%s), reconnecting", reason or "unknown")
        self._notify(ConnectionStatus.DEGRADED)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt in range(1, self._reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_delay * attempt)
            if self._closing:
                return
            try:
                await self._open()
            except ChannelUnavailable as e:
                logger.warning("Reconnect attempt %d/%d failed: %s", attempt, self._reconnect_attempts, e)
                continue
            logger.info("Live-room transport restored after %d attempt(s)", attempt)
            self._notify(ConnectionStatus.RESTORED)
            return
        logger.error("Live-room transport lost after %d reconnect attempts", self._reconnect_attempts)
        self._notify(ConnectionStatus.LOST)

    def _notify(self, status: ConnectionStatus) -> None:
        for handler in list(self._status_handlers):
            handler(status)

    def _require_connected(self, event_type: str) -> Any:
        if not self.connected:
            raise ChannelUnavailable(f"Cannot send {event_type}: live-room transport is not connected")
        return self._sio

    async def emit(self, event_type: str, envelope: dict[str, Any]) -> None:
        """Emit without waiting for an acknowledgement."""
        sio = self._require_connected(event_type)
        try:
            await sio.emit(event_type, envelope)
        except sio_exceptions.SocketIOError as e:
            raise ChannelUnavailable(f"Emit failed for {event_type}: {e}")

    async def call(self, event_type: str, envelope: dict[str, Any], timeout: float = 10.0) -> Any:
        """Emit and wait for the server acknowledgement."""
        sio = self._require_connected(event_type)
        try:
            return await sio.call(event_type, envelope, timeout=timeout)
        except sio_exceptions.TimeoutError:
            raise ChannelUnavailable(f"Timeout waiting for {event_type} acknowledgement")
        except sio_exceptions.SocketIOError as e:
            raise ChannelUnavailable(f"{event_type} failed: {e}")

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        if self._sio:
            await self._sio.disconnect()
            self._sio = None

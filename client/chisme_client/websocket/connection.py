"""
One duplex connection per active server.

  DISCONNECTED --start()--> CONNECTING --identity frame--> CONNECTED
  CONNECTED --close / error--> DISCONNECTED --backoff--> CONNECTING

Nothing is queued while disconnected: send() fails immediately and the
caller re-issues after reconnect. An AuthError (HTTP 401/403 on upgrade,
close code 1008) ends the retry loop for good.
"""

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import urlencode

import aiohttp

from chisme_client.config import settings
from chisme_client.core import events
from chisme_client.core.errors import AuthError, NotConnectedError
from chisme_client.websocket.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

# WebSocket close code the server uses for a rejected token
POLICY_VIOLATION = 1008


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(Protocol):
    close_code: int | None

    async def send_json(self, data: dict[str, Any]) -> None: ...

    async def receive_json(self) -> dict[str, Any] | None:
        """Next frame, or None once the socket is closed."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


class AiohttpTransport:
    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    @classmethod
    async def connect(cls, url: str) -> "AiohttpTransport":
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url)
        except aiohttp.WSServerHandshakeError as exc:
            await session.close()
            if exc.status in (401, 403):
                raise AuthError(f"Handshake rejected ({exc.status})") from exc
            raise NotConnectedError(f"Handshake failed ({exc.status})") from exc
        except (aiohttp.ClientError, OSError) as exc:
            await session.close()
            raise NotConnectedError(str(exc) or "Connection failed") from exc
        return cls(session, ws)

    @property
    def close_code(self) -> int | None:
        return self._ws.close_code

    async def send_json(self, data: dict[str, Any]) -> None:
        try:
            await self._ws.send_json(data)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise NotConnectedError(str(exc) or "Not connected") from exc

    async def receive_json(self) -> dict[str, Any] | None:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Skipping non-JSON frame")
                    continue
                if not isinstance(frame, dict):
                    logger.warning("Skipping non-object frame")
                    continue
                return frame
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None

    async def close(self) -> None:
        await self._ws.close()
        await self._session.close()


class ConnectionManager:
    def __init__(
        self,
        url: str,
        token: str,
        server_id: str,
        on_event: Callable[[dict[str, Any]], None],
        connector: Connector | None = None,
        backoff: ExponentialBackoff | None = None,
        heartbeat_interval: float | None = None,
        handshake_timeout: float | None = None,
    ) -> None:
        self.url = url
        self.server_id = server_id
        self._token = token
        self._on_event = on_event
        self._connector = connector or AiohttpTransport.connect
        self.backoff = backoff or ExponentialBackoff()
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL
        self.handshake_timeout = handshake_timeout or settings.HANDSHAKE_TIMEOUT

        self.state = ConnectionState.DISCONNECTED
        self.retries = 0
        self.next_retry_at: float | None = None  # event-loop time
        self.connected_once = False
        self.user_id: str | None = None
        self.auth_error: AuthError | None = None

        self._transport: Transport | None = None
        self._task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._closing = False
        self._state_listeners: list[Callable[[ConnectionState, ConnectionState], None]] = []
        self._connect_listeners: list[Callable[[bool], None]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_state_listener(self, listener: Callable[[ConnectionState, ConnectionState], None]) -> None:
        """listener(old_state, new_state), called on every transition."""
        self._state_listeners.append(listener)

    def add_connect_listener(self, listener: Callable[[bool], None]) -> None:
        """listener(is_reconnect), called each time the handshake completes."""
        self._connect_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        old, self.state = self.state, state
        logger.info("Server %s connection: %s -> %s", self.server_id, old.value, state.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, state)
            except Exception as exc:
                logger.error("state listener failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self.auth_error = None
        self._task = asyncio.create_task(self._run(), name=f"ws-{self.server_id}")

    async def stop(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown()
        self.next_retry_at = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def send(self, event: dict[str, Any]) -> None:
        if self.state is not ConnectionState.CONNECTED or self._transport is None:
            raise NotConnectedError()
        await self._transport.send_json(event)

    def _url(self) -> str:
        query = urlencode({"token": self._token, "server_id": self.server_id})
        return f"{self.url}?{query}"

    # ------------------------------------------------------------------
    # Connect / read loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._session()
            except AuthError as exc:
                logger.error("Server %s rejected our credentials: %s", self.server_id, exc)
                self.auth_error = exc
                break
            except (NotConnectedError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Server %s connection failed: %s", self.server_id, exc or type(exc).__name__)
            except Exception as exc:
                logger.error("Server %s session crashed: %s", self.server_id, exc, exc_info=True)
            finally:
                await self._teardown()

            if self._closing:
                break
            self._set_state(ConnectionState.DISCONNECTED)
            delay = self.backoff.next_delay()
            self.retries += 1
            self.next_retry_at = loop.time() + delay
            logger.info("Reconnecting to server %s in %.1fs (attempt %d)", self.server_id, delay, self.retries)
            await asyncio.sleep(delay)

        self.next_retry_at = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _session(self) -> None:
        transport = await asyncio.wait_for(self._connector(self._url()), self.handshake_timeout)
        self._transport = transport

        identity, early = await asyncio.wait_for(self._await_identity(transport), self.handshake_timeout)

        if not identity.get("user_id"):
            raise NotConnectedError("Malformed identity")
        self.user_id = str(identity["user_id"])
        is_reconnect = self.connected_once
        self.connected_once = True
        self.retries = 0
        self.next_retry_at = None
        self.backoff.reset()
        self._dispatch(identity)
        self._set_state(ConnectionState.CONNECTED)
        self._connected.set()

        for frame in early:
            self._dispatch(frame)

        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name=f"ws-heartbeat-{self.server_id}")
        for listener in list(self._connect_listeners):
            try:
                listener(is_reconnect)
            except Exception as exc:
                logger.error("connect listener failed: %s", exc, exc_info=True)

        while True:
            frame = await transport.receive_json()
            if frame is None:
                break
            if frame.get("type") == events.PONG:
                continue
            self._dispatch(frame)

        self._raise_for_close(transport)
        logger.info("Server %s closed the connection (code %s)", self.server_id, transport.close_code)

    async def _await_identity(self, transport: Transport) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        early: list[dict[str, Any]] = []
        while True:
            frame = await transport.receive_json()
            if frame is None:
                self._raise_for_close(transport)
                raise NotConnectedError("Closed during handshake")
            if frame.get("type") == events.IDENTITY:
                return frame, early
            # the server may push presence before identity; replay after
            early.append(frame)

    def _raise_for_close(self, transport: Transport) -> None:
        if transport.close_code == POLICY_VIOLATION:
            raise AuthError("Token rejected by server")

    def _dispatch(self, frame: dict[str, Any]) -> None:
        try:
            self._on_event(frame)
        except Exception as exc:
            logger.error("Failed to apply %r event: %s", frame.get("type"), exc, exc_info=True)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send({"type": events.PING})
            except NotConnectedError:
                return

    async def _teardown(self) -> None:
        self._connected.clear()
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except (aiohttp.ClientError, OSError) as exc:
                logger.warning("Error closing transport: %s", exc)

"""The session's single websocket: handshake, inbound dispatch, outbound queue and reconnects."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List

import aiohttp

from .config import ClientConfig
from .hub import SubscriptionHub
from .rest import TokenProvider, resolve_token

logger = logging.getLogger(__name__)

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_RECONNECTING = "reconnecting"
STATE_OFFLINE = "offline"

FRAME_VERSION = 1

StateListener = Callable[[str], None]
ReconnectListener = Callable[[], Awaitable[None]]


class TransportError(Exception):
    pass


class ReconnectExhausted(TransportError):
    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"gave up reconnecting after {attempts} attempts")


def make_frame(event: str, body: Any, frame_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": FRAME_VERSION, "t": event, "body": body}
    if frame_id is not None:
        frame["id"] = frame_id
    return frame


class TransportChannel:
    """Process-wide socket connection feeding a ``SubscriptionHub``.

    After the first successful handshake, a dropped connection is retried
    with exponential backoff. Each re-handshake awaits every ``on_reconnect``
    listener before inbound frames are dispatched again, so a resync always
    lands before the events that follow it. Running out of attempts leaves
    the channel ``offline``; ``connect()`` starts over from there.
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        hub: SubscriptionHub,
        config: ClientConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.hub = hub
        self.config = config or ClientConfig()
        self.last_error: TransportError | None = None
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None
        self._state = STATE_DISCONNECTED
        self._state_listeners: List[StateListener] = []
        self._reconnect_listeners: List[ReconnectListener] = []
        self._outbound: asyncio.Queue[Dict[str, Any]] | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._settled = asyncio.Event()
        self._closing = False
        self._attempt = 0
        self._ever_connected = False
        self._frame_ids = itertools.count(1)

    @property
    def state(self) -> str:
        return self._state

    def on_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_reconnect(self, listener: ReconnectListener) -> None:
        self._reconnect_listeners.append(listener)

    async def connect(self) -> bool:
        """Start the connection loop and wait until it is connected or offline."""

        if self._task is None or self._task.done():
            self._closing = False
            self._attempt = 0
            self._settled.clear()
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            self._task = asyncio.create_task(self._run())
        await self._settled.wait()
        return self._state == STATE_CONNECTED

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._set_state(STATE_DISCONNECTED)

    def emit(self, event: str, body: Dict[str, Any]) -> bool:
        if self._state != STATE_CONNECTED or self._outbound is None:
            logger.debug("dropping outbound %s while %s", event, self._state)
            return False
        self._outbound.put_nowait(make_frame(event, body, f"c{next(self._frame_ids)}"))
        return True

    def _set_state(self, state: str) -> None:
        if state == self._state:
            return
        self._state = state
        if state in (STATE_CONNECTED, STATE_OFFLINE, STATE_DISCONNECTED):
            self._settled.set()
        else:
            self._settled.clear()
        for listener in list(self._state_listeners):
            listener(state)

    async def _run(self) -> None:
        while not self._closing:
            self._set_state(STATE_RECONNECTING if self._ever_connected else STATE_CONNECTING)
            try:
                await self._connect_once()
            except (aiohttp.ClientError, asyncio.TimeoutError, TransportError) as exc:
                logger.warning("socket connection to %s failed: %s", self.url, exc)
            if self._closing:
                break
            if self._attempt >= self.config.reconnect_attempts:
                self.last_error = ReconnectExhausted(self._attempt)
                logger.error("%s; socket is offline", self.last_error)
                self._set_state(STATE_OFFLINE)
                return
            delay = self.config.backoff_delay(self._attempt)
            self._attempt += 1
            logger.warning(
                "reconnecting in %.2fs (attempt %d/%d)", delay, self._attempt, self.config.reconnect_attempts
            )
            await asyncio.sleep(delay)

    async def _connect_once(self) -> None:
        assert self._session is not None
        token = await resolve_token(self._token_provider)
        async with self._session.ws_connect(self.url, heartbeat=self.config.ping_interval_s) as ws:
            self._ws = ws
            try:
                await ws.send_json(make_frame("session.start", {"auth_token": token}, "start"))
                await asyncio.wait_for(self._await_ready(ws), timeout=self.config.request_timeout_s)
                reconnected = self._ever_connected
                self._ever_connected = True
                self._attempt = 0
                self._outbound = asyncio.Queue()
                self._set_state(STATE_CONNECTED)
                logger.info("socket session ready%s", " after reconnect" if reconnected else "")
                if reconnected:
                    for listener in list(self._reconnect_listeners):
                        await listener()
                writer = asyncio.create_task(self._writer(ws, self._outbound))
                try:
                    await self._reader(ws)
                finally:
                    writer.cancel()
                    await asyncio.gather(writer, return_exceptions=True)
            finally:
                self._outbound = None
                self._ws = None
        if not self._closing:
            logger.info("socket closed by server")

    async def _await_ready(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            msg = await ws.receive()
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                raise TransportError("socket closed during handshake")
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"socket error during handshake: {ws.exception()}")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            frame = self._decode(msg.data)
            if frame is None:
                continue
            frame_type = frame.get("t")
            if frame_type == "session.ready":
                return
            if frame_type == "ping":
                await ws.send_json(make_frame("pong", {}, frame.get("id")))
            elif frame_type == "error":
                body = frame.get("body") or {}
                message = body.get("message") if isinstance(body, dict) else None
                raise TransportError(f"handshake rejected: {message or 'unknown error'}")

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("socket error: %s", ws.exception())
                break

    async def _writer(self, ws: aiohttp.ClientWebSocketResponse, outbound: asyncio.Queue) -> None:
        try:
            while True:
                frame = await outbound.get()
                await ws.send_json(frame)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            logger.warning("socket write failed: %s", exc)

    def _handle_frame(self, raw: str) -> None:
        frame = self._decode(raw)
        if frame is None:
            return
        frame_type = frame.get("t")
        if frame_type == "ping":
            if self._outbound is not None:
                self._outbound.put_nowait(make_frame("pong", {}, frame.get("id")))
            return
        if frame_type == "error":
            logger.warning("server error frame: %s", frame.get("body"))
            return
        if not isinstance(frame_type, str) or not frame_type:
            logger.warning("discarded frame without a type")
            return
        body = frame.get("body")
        try:
            self.hub.dispatch(frame_type, body if body is not None else {})
        except Exception:
            logger.exception("handler for %s frame failed", frame_type)

    @staticmethod
    def _decode(raw: str) -> Dict[str, Any] | None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("discarded undecodable frame")
            return None
        if not isinstance(frame, dict):
            logger.warning("discarded non-object frame")
            return None
        return frame

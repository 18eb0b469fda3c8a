"""Persistent command/telemetry channel to the cloud engine.

Messages are JSON envelopes ``{"event": <name>, "data": {...}}`` over a
websocket authenticated with ``Authorization: Bearer`` and
``X-Device-Fingerprint`` headers.

State machine::

    CONNECTING -> CONNECTED <-> RECONNECTING -> DISCONNECTED
    any non-terminal state -> ERROR (token rejected at handshake)

The first connect either succeeds or raises; automatic reconnection only
starts once a connection has been established.  Reconnects read the
current access token from ``token_provider``, so a token refresh never
forces a reconnect of its own.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
import websockets.exceptions

from utils.errors import AuthenticationError, ConnectivityError
from utils.logger import get_logger
from utils.utcnow import utcnow_iso

logger = get_logger("cloud.channel")


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


Connector = Callable[[str, dict[str, str]], Awaitable[Any]]
EventHandler = Callable[[dict[str, Any]], Any]
StateHandler = Callable[[ChannelState], Any]


def _default_connector(url: str, headers: dict[str, str]) -> Awaitable[Any]:
    return websockets.connect(
        url,
        additional_headers=headers,
        ping_interval=None,  # application-level heartbeat below
        close_timeout=5,
    )


def _rejected_status(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


class AuthRejected(Exception):
    pass


class CloudChannel:
    def __init__(
        self,
        ws_url: str,
        device_fingerprint: str,
        heartbeat_interval: float = 25.0,
        reconnect_delay: float = 5.0,
        connect_timeout: float = 10.0,
        connector: Optional[Connector] = None,
    ) -> None:
        self._ws_url = ws_url
        self._device_fingerprint = device_fingerprint
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout
        self._connector = connector or _default_connector

        self._handlers: dict[str, EventHandler] = {}
        self._state_handler: Optional[StateHandler] = None
        self._token_provider: Optional[Callable[[], Optional[str]]] = None

        self._ws: Any = None
        self._state = ChannelState.DISCONNECTED
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._handler_tasks: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self.reconnections = 0

    # -- registration -------------------------------------------------------

    def on(self, event: str, handler: Optional[EventHandler]) -> None:
        if handler is None:
            self._handlers.pop(event, None)
        else:
            self._handlers[event] = handler

    def on_state_change(self, handler: Optional[StateHandler]) -> None:
        self._state_handler = handler

    # -- public API ---------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    async def connect(
        self,
        access_token: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        """Open the channel. Raises on failure; no retry before first success."""
        if not access_token:
            raise AuthenticationError("Access token required", AuthenticationError.TOKEN_MISSING)
        if self._ws is not None or (self._run_task and not self._run_task.done()):
            logger.info("Closing existing channel before reconnecting")
            await self.disconnect()

        self._token_provider = token_provider or (lambda: access_token)
        self._stop_event.clear()
        await self._set_state(ChannelState.CONNECTING)

        try:
            ws = await asyncio.wait_for(self._open(access_token), timeout=self._connect_timeout)
        except AuthRejected as exc:
            await self._set_state(ChannelState.ERROR)
            raise AuthenticationError(
                "Cloud rejected the access token", AuthenticationError.INVALID_CREDENTIALS
            ) from exc
        except asyncio.TimeoutError as exc:
            await self._set_state(ChannelState.DISCONNECTED)
            raise ConnectivityError("Cloud channel connection timeout") from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            await self._set_state(ChannelState.DISCONNECTED)
            raise ConnectivityError(f"Cloud channel connection failed: {exc}") from exc

        await self._on_open(ws)
        self._run_task = asyncio.create_task(self._run_loop(ws), name="cloud-channel")

    async def disconnect(self) -> None:
        """Close the channel and stop heartbeat and reconnection."""
        self._stop_event.set()
        self._stop_heartbeat()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Channel close error", error=str(exc))
        if (
            self._run_task
            and not self._run_task.done()
            and self._run_task is not asyncio.current_task()
        ):
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._run_task = None
        if self._state != ChannelState.ERROR:
            await self._set_state(ChannelState.DISCONNECTED)

    async def send(self, event: str, data: dict[str, Any]) -> bool:
        """Emit one event. Returns False if the channel is not open."""
        ws = self._ws
        if ws is None or self._state != ChannelState.CONNECTED:
            logger.warning("Cannot emit on closed channel", cloud_event=event)
            return False
        try:
            await ws.send(json.dumps({"event": event, "data": data}, default=str))
            return True
        except Exception as exc:
            logger.warning("Channel send failed", cloud_event=event, error=str(exc))
            return False

    # -- connection loop ----------------------------------------------------

    async def _open(self, token: str) -> Any:
        headers = {
            "Authorization": f"Bearer {token}",
            "X-Device-Fingerprint": self._device_fingerprint,
        }
        try:
            return await self._connector(self._ws_url, headers)
        except Exception as exc:
            if _rejected_status(exc) in (401, 403):
                raise AuthRejected(str(exc)) from exc
            raise

    async def _on_open(self, ws: Any) -> None:
        self._ws = ws
        await self._set_state(ChannelState.CONNECTED)
        self._start_heartbeat(ws)
        logger.info("Cloud channel connected")

    async def _run_loop(self, ws: Any) -> None:
        while not self._stop_event.is_set():
            try:
                await self._listen(ws)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Cloud channel dropped", error=repr(exc))
            finally:
                self._stop_heartbeat()
                self._ws = None

            if self._stop_event.is_set():
                break
            await self._set_state(ChannelState.DISCONNECTED)
            logger.warning("Cloud channel disconnected")

            ws = await self._reconnect()
            if ws is None:
                break
            await self._on_open(ws)
            logger.info("Cloud channel reconnected", attempt=self.reconnections)

    async def _reconnect(self) -> Optional[Any]:
        """Retry forever until connected, stopped, or the token is rejected."""
        attempt = 0
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._reconnect_delay)
                return None
            except asyncio.TimeoutError:
                pass
            attempt += 1
            self.reconnections += 1
            await self._set_state(ChannelState.RECONNECTING)
            logger.info("Cloud channel reconnection attempt", attempt=attempt)
            token = self._token_provider() if self._token_provider else None
            if not token:
                logger.error("No access token for reconnection")
                await self._set_state(ChannelState.ERROR)
                return None
            try:
                return await asyncio.wait_for(self._open(token), timeout=self._connect_timeout)
            except AuthRejected:
                logger.error("Cloud rejected token during reconnection")
                await self._set_state(ChannelState.ERROR)
                return None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Cloud channel reconnection failed", error=repr(exc))
        return None

    async def _listen(self, ws: Any) -> None:
        async for raw in ws:
            if self._stop_event.is_set():
                break
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Cloud channel parse error")
                continue
            if not isinstance(message, dict):
                continue
            self._dispatch(str(message.get("event") or ""), message.get("data") or {})

    def _dispatch(self, event: str, data: Any) -> None:
        if event == "heartbeat_ack":
            logger.debug("Heartbeat acknowledged")
            return
        if event == "connected":
            logger.info("Cloud welcome message", server=data if isinstance(data, dict) else None)
        handler = self._handlers.get(event)
        if handler is None:
            if event != "connected":
                logger.debug("Unhandled cloud event", cloud_event=event)
            return
        # Handlers run as tasks so a slow directive never stalls the reader.
        task = asyncio.create_task(self._run_handler(event, handler, data))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, event: str, handler: EventHandler, data: Any) -> None:
        try:
            result = handler(data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Cloud event handler failed", cloud_event=event)

    # -- heartbeat ----------------------------------------------------------

    def _start_heartbeat(self, ws: Any) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(ws), name="cloud-channel-heartbeat"
        )
        logger.debug("Heartbeat started")

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            logger.debug("Heartbeat stopped")
        self._heartbeat_task = None

    async def _heartbeat_loop(self, ws: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                await ws.send(json.dumps({"event": "heartbeat", "data": {"timestamp": utcnow_iso()}}))
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.debug("Heartbeat send failed", error=str(exc))

    async def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._state_handler is None:
            return
        try:
            result = self._state_handler(state)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Channel state handler failed", state=state.value)

"""Broker realtime feed over the gateway's SignalR user hub.

Speaks the SignalR JSON hub protocol directly over ``websockets``:

    handshake   {"protocol": "json", "version": 1} + 0x1e
    invocation  {"type": 1, "target": ..., "arguments": [...]}
    ping        {"type": 6}
    close       {"type": 7, "error": ..., "allowReconnect": ...}

Every frame may hold several records separated by the 0x1e record
separator.  After the handshake the feed invokes the hub subscriptions for
accounts, orders, positions and trades.

Reconnection uses a fixed delay and never gives up until ``stop()``.  The
token is bound to the connection URL; when the hub rejects it the feed
reports ``on_auth_rejected`` and the owner rebuilds the feed with a fresh
token.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import websockets

from models.broker_events import BrokerEvent, BrokerEventKind, parse_broker_event
from utils.logger import get_logger

logger = get_logger("broker.realtime")

RECORD_SEPARATOR = "\x1e"
HANDSHAKE = {"protocol": "json", "version": 1}

MSG_INVOCATION = 1
MSG_PING = 6
MSG_CLOSE = 7


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class HubClosedError(Exception):
    """Server sent a close record."""

    def __init__(self, error: Optional[str], allow_reconnect: bool = True):
        super().__init__(error or "hub closed")
        self.allow_reconnect = allow_reconnect


EventHandler = Callable[[BrokerEvent], Any]
StateHandler = Callable[[ConnectionState], Any]
Connector = Callable[[str], Awaitable[Any]]


def build_hub_url(hub_url: str, token: str) -> str:
    """Turn the https hub URL into a wss URL carrying ``access_token``."""
    parts = urlsplit(hub_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    query = f"access_token={quote(token, safe='')}"
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((scheme, parts.netloc, parts.path, query, parts.fragment))


def encode_record(message: dict) -> str:
    return json.dumps(message, separators=(",", ":")) + RECORD_SEPARATOR


def decode_records(raw: Any) -> list[dict]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    records = []
    for chunk in str(raw).split(RECORD_SEPARATOR):
        if not chunk.strip():
            continue
        parsed = json.loads(chunk)
        if isinstance(parsed, dict):
            records.append(parsed)
    return records


def _default_connector(url: str) -> Awaitable[Any]:
    return websockets.connect(url, ping_interval=None, close_timeout=5)


def _rejected_status(exc: BaseException) -> Optional[int]:
    """HTTP status of a refused websocket upgrade, if that is what ``exc`` is."""
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class BrokerRealtimeFeed:
    """Push subscription for fills, account, position and order updates.

    One instance is bound to one token.  Handlers are registered per event
    kind; an event whose kind has no handler is dropped.
    """

    def __init__(
        self,
        hub_url: str,
        reconnect_delay: float = 5.0,
        keep_alive_interval: float = 10.0,
        handshake_timeout: float = 10.0,
        connector: Optional[Connector] = None,
    ) -> None:
        self._hub_url = hub_url
        self._reconnect_delay = reconnect_delay
        self._keep_alive_interval = keep_alive_interval
        self._handshake_timeout = handshake_timeout
        self._connector = connector or _default_connector

        self._handlers: dict[BrokerEventKind, EventHandler] = {}
        self._state_handler: Optional[StateHandler] = None
        self._auth_rejected_handler: Optional[Callable[[], Any]] = None

        self._token: Optional[str] = None
        self._account_ids: list[int] = []
        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._run_task: Optional[asyncio.Task] = None
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._first_attempt = asyncio.Event()
        self.reconnections = 0

    # -- registration -------------------------------------------------------

    def on(self, kind: BrokerEventKind, handler: Optional[EventHandler]) -> None:
        if handler is None:
            self._handlers.pop(kind, None)
        else:
            self._handlers[kind] = handler

    def on_state_change(self, handler: Optional[StateHandler]) -> None:
        self._state_handler = handler

    def on_auth_rejected(self, handler: Optional[Callable[[], Any]]) -> None:
        self._auth_rejected_handler = handler

    # -- public API ---------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    async def connect(self, token: str, account_ids: Iterable[int] = ()) -> bool:
        """Start the feed and wait for the first handshake attempt.

        Returns True if the transport handshake completed.  On False the feed
        keeps retrying in the background.
        """
        if not token:
            raise ValueError("Auth token required to connect to the user hub")
        if self._run_task is not None and not self._run_task.done():
            return self.is_connected
        self._token = token
        self._account_ids = [int(a) for a in account_ids]
        self._stop_event.clear()
        self._first_attempt.clear()
        self._run_task = asyncio.create_task(self._run_loop(), name="broker-user-hub")
        await self._first_attempt.wait()
        return self.is_connected

    async def stop(self) -> None:
        """Close the connection and cancel background tasks."""
        self._stop_event.set()
        self._cancel_keep_alive()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as exc:
                logger.debug("User hub close error", error=str(exc))
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
        self._ws = None
        await self._set_state(ConnectionState.CLOSED)
        logger.info("User hub connection stopped")

    # -- internal connection loop -------------------------------------------

    async def _run_loop(self) -> None:
        attempt = 0
        try:
            while not self._stop_event.is_set():
                await self._set_state(
                    ConnectionState.CONNECTING if attempt == 0 else ConnectionState.RECONNECTING
                )
                try:
                    await self._connect_and_listen()
                    if self._stop_event.is_set():
                        break
                    logger.warning("User hub closed by server")
                except asyncio.CancelledError:
                    raise
                except HubClosedError as exc:
                    logger.warning("User hub sent close", error=str(exc))
                    if not exc.allow_reconnect:
                        await self._notify_auth_rejected()
                except Exception as exc:
                    status = _rejected_status(exc)
                    if status in (401, 403):
                        logger.error("User hub rejected token", status=status)
                        await self._notify_auth_rejected()
                    else:
                        logger.warning("User hub connection error", error=repr(exc))
                finally:
                    self._first_attempt.set()

                if self._stop_event.is_set():
                    break
                attempt += 1
                self.reconnections += 1
                await self._set_state(ConnectionState.DISCONNECTED)
                logger.info(
                    "User hub reconnecting",
                    delay_seconds=self._reconnect_delay,
                    attempt=attempt,
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._reconnect_delay)
                    break
                except asyncio.TimeoutError:
                    pass
        finally:
            self._first_attempt.set()

    async def _connect_and_listen(self) -> None:
        url = build_hub_url(self._hub_url, self._token or "")
        ws = await self._connector(url)
        self._ws = ws
        try:
            await ws.send(encode_record(HANDSHAKE))
            reply = await asyncio.wait_for(ws.recv(), timeout=self._handshake_timeout)
            for record in decode_records(reply):
                if record.get("error"):
                    raise HubClosedError(record["error"], allow_reconnect=True)

            await self._set_state(ConnectionState.CONNECTED)
            self._first_attempt.set()
            logger.info("User hub connected")

            await self._subscribe(ws)
            self._keep_alive_task = asyncio.create_task(
                self._keep_alive_loop(ws), name="broker-user-hub-ping"
            )

            async for raw in ws:
                if self._stop_event.is_set():
                    break
                try:
                    records = decode_records(raw)
                except ValueError as exc:
                    logger.debug("User hub parse error", error=repr(exc))
                    continue
                for record in records:
                    await self._handle_record(record)
        finally:
            self._cancel_keep_alive()
            self._ws = None
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("User hub close error", error=str(exc))

    async def _subscribe(self, ws: Any) -> None:
        """Hub-level subscriptions; readiness beyond the transport handshake."""
        invocations = [("SubscribeAccounts", [])]
        for account_id in self._account_ids:
            invocations.extend(
                [
                    ("SubscribeOrders", [account_id]),
                    ("SubscribePositions", [account_id]),
                    ("SubscribeTrades", [account_id]),
                ]
            )
        for target, arguments in invocations:
            await ws.send(
                encode_record({"type": MSG_INVOCATION, "target": target, "arguments": arguments})
            )
        logger.debug("User hub subscriptions sent", count=len(invocations))

    async def _keep_alive_loop(self, ws: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self._keep_alive_interval)
                await ws.send(encode_record({"type": MSG_PING}))
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.debug("User hub keep-alive stopped", error=str(exc))

    def _cancel_keep_alive(self) -> None:
        if self._keep_alive_task and not self._keep_alive_task.done():
            self._keep_alive_task.cancel()
        self._keep_alive_task = None

    # -- message handling ---------------------------------------------------

    async def _handle_record(self, record: dict) -> None:
        msg_type = record.get("type")
        if msg_type == MSG_CLOSE:
            raise HubClosedError(record.get("error"), bool(record.get("allowReconnect", True)))
        if msg_type != MSG_INVOCATION:
            return  # pings, completions, stream items

        target = str(record.get("target") or "")
        for argument in record.get("arguments") or []:
            try:
                event = parse_broker_event(target, argument)
            except ValueError as exc:
                logger.warning("Skipping malformed broker event", target=target, error=str(exc))
                continue
            if event is None:
                continue
            await self._dispatch(event)

    async def _dispatch(self, event: BrokerEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            return
        try:
            await _maybe_await(handler(event))
        except Exception:
            logger.exception("Broker event handler failed", kind=event.kind.value)

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._state_handler is not None:
            try:
                await _maybe_await(self._state_handler(state))
            except Exception:
                logger.exception("Broker state handler failed", state=state.value)

    async def _notify_auth_rejected(self) -> None:
        if self._auth_rejected_handler is None:
            return
        try:
            await _maybe_await(self._auth_rejected_handler())
        except Exception:
            logger.exception("Broker auth-rejected handler failed")

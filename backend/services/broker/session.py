"""Broker session strategy.

``BrokerSession`` bundles everything the rest of the agent needs from the
broker: authentication, the active account list, the realtime feed and an
HTTP client for order placement.  The concrete variant is chosen once at
startup from ``BROKER_MODE``; nothing downstream inspects credentials to
guess which one is in use.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional

import httpx

from models.broker_events import BrokerEvent, BrokerEventKind
from models.credentials import BrokerCredentials
from services.broker.auth import BrokerAuthSession
from services.broker.realtime import BrokerRealtimeFeed, ConnectionState, Connector
from utils.logger import get_logger

logger = get_logger("broker.session")

EventSink = Callable[[BrokerEvent], Any]
StateSink = Callable[[ConnectionState], Any]


class BrokerSession(ABC):
    """Broker-facing half of the agent."""

    mode: str = ""
    requires_credentials: bool = True

    def __init__(self) -> None:
        self._event_sink: Optional[EventSink] = None
        self._state_sink: Optional[StateSink] = None

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._event_sink = sink

    def set_state_sink(self, sink: Optional[StateSink]) -> None:
        self._state_sink = sink

    @property
    @abstractmethod
    def http_client(self) -> httpx.AsyncClient:
        """Client (with base URL) used for order placement."""

    @property
    @abstractmethod
    def feed_state(self) -> ConnectionState: ...

    @abstractmethod
    async def authenticate(self, credentials: Optional[BrokerCredentials]) -> None: ...

    @abstractmethod
    async def get_token(self) -> str: ...

    @abstractmethod
    async def list_active_accounts(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def start_feed(self, account_ids: Iterable[int]) -> bool: ...

    @abstractmethod
    async def stop_feed(self) -> None: ...

    async def close(self) -> None:
        await self.stop_feed()
        if not self.http_client.is_closed:
            await self.http_client.aclose()


class RealBrokerSession(BrokerSession):
    """Live gateway: REST for auth/accounts/orders, user hub for pushes."""

    mode = "live"

    def __init__(
        self,
        api_url: str,
        hub_url: str,
        token_lifetime_seconds: float,
        reconnect_delay: float = 5.0,
        keep_alive_interval: float = 10.0,
        http_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        super().__init__()
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            timeout=http_timeout,
            headers={"Accept": "application/json"},
        )
        self._auth = BrokerAuthSession(self._client, token_lifetime_seconds)
        self._hub_url = hub_url
        self._reconnect_delay = reconnect_delay
        self._keep_alive_interval = keep_alive_interval
        self._handshake_timeout = http_timeout
        self._connector = connector
        self._feed: Optional[BrokerRealtimeFeed] = None
        self._account_ids: list[int] = []
        self._rebuild_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RealBrokerSession":
        return cls(
            api_url=settings.BROKER_API_URL,
            hub_url=settings.BROKER_USER_HUB_URL,
            token_lifetime_seconds=settings.BROKER_TOKEN_LIFETIME_SECONDS,
            reconnect_delay=settings.BROKER_RECONNECT_DELAY_SECONDS,
            keep_alive_interval=settings.BROKER_KEEP_ALIVE_SECONDS,
            http_timeout=settings.HTTP_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def auth(self) -> BrokerAuthSession:
        return self._auth

    @property
    def feed_state(self) -> ConnectionState:
        return self._feed.state if self._feed else ConnectionState.DISCONNECTED

    async def authenticate(self, credentials: Optional[BrokerCredentials]) -> None:
        if credentials is None:
            raise ValueError("Broker credentials are required in live mode")
        self._auth.initialize(credentials)
        await self._auth.get_token()

    async def get_token(self) -> str:
        return await self._auth.get_token()

    async def list_active_accounts(self) -> list[dict[str, Any]]:
        token = await self._auth.get_token()
        return await self._auth.list_active_accounts(token)

    def _build_feed(self) -> BrokerRealtimeFeed:
        feed = BrokerRealtimeFeed(
            self._hub_url,
            reconnect_delay=self._reconnect_delay,
            keep_alive_interval=self._keep_alive_interval,
            handshake_timeout=self._handshake_timeout,
            connector=self._connector,
        )
        for kind in BrokerEventKind:
            feed.on(kind, self._forward_event)
        feed.on_state_change(self._forward_state)
        feed.on_auth_rejected(self._schedule_rebuild)
        return feed

    async def _forward_event(self, event: BrokerEvent) -> None:
        if self._event_sink is not None:
            result = self._event_sink(event)
            if asyncio.iscoroutine(result):
                await result

    async def _forward_state(self, state: ConnectionState) -> None:
        if self._state_sink is not None:
            result = self._state_sink(state)
            if asyncio.iscoroutine(result):
                await result

    async def start_feed(self, account_ids: Iterable[int]) -> bool:
        self._account_ids = [int(a) for a in account_ids]
        if self._feed is not None:
            await self._feed.stop()
        token = await self._auth.get_token()
        self._feed = self._build_feed()
        connected = await self._feed.connect(token, self._account_ids)
        if connected:
            logger.info("Connected to broker user hub")
        else:
            logger.warning("Failed to connect to user hub, will auto-retry")
        return connected

    def _schedule_rebuild(self) -> None:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            return
        self._rebuild_task = asyncio.create_task(
            self._rebuild_feed(), name="broker-feed-rebuild"
        )

    async def _rebuild_feed(self) -> None:
        """Replace the feed after the hub rejected its token."""
        logger.info("Rebuilding user hub connection with a fresh token")
        self._auth.clear_token()
        try:
            await self.start_feed(self._account_ids)
        except Exception:
            logger.exception("User hub rebuild failed")

    async def stop_feed(self) -> None:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
        self._rebuild_task = None
        if self._feed is not None:
            await self._feed.stop()
            self._feed = None

"""Cloud identity and connectivity.

``CloudSession`` owns the bot's cloud tokens, the HTTP client, the
persistent channel and the two timers that keep the session useful:

* telemetry: an immediate snapshot, then one every interval
* token refresh: a new access token before the old one lapses

Both timers are tasks owned here and cancelled by ``shutdown()``.  A token
refresh never touches the open channel; reconnects read the current token
through a provider instead.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from models.credentials import CloudTokens, TokenRefresh
from services.cloud.channel import ChannelState, CloudChannel, Connector
from services.cloud.client import CloudApiClient
from utils.errors import AgentError, AuthenticationError, RateLimitExceeded
from utils.logger import get_logger
from utils.rate_limiter import RateLimiterRegistry, cloud_rate_limits
from utils.security import get_device_fingerprint
from utils.utcnow import utcnow_iso

logger = get_logger("cloud.session")

TelemetrySource = Callable[[], list[dict[str, Any]]]
TokensRefreshedHandler = Callable[[TokenRefresh], Optional[Awaitable[None]]]


class CloudSession:
    def __init__(
        self,
        api: CloudApiClient,
        ws_url: str,
        heartbeat_interval: float = 25.0,
        reconnect_delay: float = 5.0,
        connect_timeout: float = 10.0,
        telemetry_interval: float = 30.0,
        refresh_interval: float = 600.0,
        connector: Optional[Connector] = None,
    ):
        self.api = api
        self._ws_url = ws_url
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout
        self._telemetry_interval = telemetry_interval
        self._refresh_interval = refresh_interval
        self._connector = connector

        self._bot_id: Optional[str] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._device_fingerprint: Optional[str] = None

        self._channel: Optional[CloudChannel] = None
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self._state_handler: Optional[Callable[[ChannelState], Any]] = None
        self._tokens_refreshed: Optional[TokensRefreshedHandler] = None

        self._telemetry_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "CloudSession":
        api = kwargs.pop("api", None) or CloudApiClient(
            base_url=settings.CLOUD_API_URL,
            rate_limits=RateLimiterRegistry(cloud_rate_limits(settings)),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            cert_fingerprint=settings.CLOUD_CERT_FINGERPRINT,
        )
        return cls(
            api,
            ws_url=settings.CLOUD_WS_URL,
            heartbeat_interval=settings.CLOUD_HEARTBEAT_INTERVAL_SECONDS,
            reconnect_delay=settings.CLOUD_RECONNECT_DELAY_SECONDS,
            connect_timeout=settings.CLOUD_CONNECT_TIMEOUT_SECONDS,
            telemetry_interval=settings.CLOUD_TELEMETRY_INTERVAL_SECONDS,
            refresh_interval=settings.CLOUD_TOKEN_REFRESH_INTERVAL_SECONDS,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        """Register an inbound event handler (``command``, ``trade_directive``)."""
        self._handlers[event] = handler
        if self._channel is not None:
            self._channel.on(event, handler)

    def on_state_change(self, handler: Optional[Callable[[ChannelState], Any]]) -> None:
        self._state_handler = handler
        if self._channel is not None:
            self._channel.on_state_change(handler)

    def on_tokens_refreshed(self, handler: Optional[TokensRefreshedHandler]) -> None:
        self._tokens_refreshed = handler

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def set_tokens(self, tokens: CloudTokens) -> None:
        self._bot_id = tokens.bot_id
        self._access_token = tokens.access_token
        self._refresh_token = tokens.refresh_token
        self._device_fingerprint = tokens.device_fingerprint
        logger.info("Cloud tokens set", bot_id=tokens.bot_id)

    def get_bot_id(self) -> Optional[str]:
        return self._bot_id

    @property
    def is_activated(self) -> bool:
        return bool(self._bot_id and self._access_token)

    @property
    def device_fingerprint(self) -> Optional[str]:
        return self._device_fingerprint

    async def activate(
        self, activation_token: str, device_fingerprint: Optional[str] = None
    ) -> CloudTokens:
        fingerprint = device_fingerprint or get_device_fingerprint()
        data = await self.api.activate(activation_token, fingerprint)
        tokens = CloudTokens(
            bot_id=data["botId"],
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            device_fingerprint=fingerprint,
        )
        self.set_tokens(tokens)
        return tokens

    async def refresh_access_token(self, refresh_token: Optional[str] = None) -> TokenRefresh:
        """Refresh the access token; the refresh token changes only if the server rotated it."""
        token = refresh_token or self._refresh_token
        if not token:
            raise AuthenticationError("No refresh token available", AuthenticationError.TOKEN_MISSING)

        refreshed = await self.api.refresh(token)
        self._access_token = refreshed.access_token
        if refreshed.refresh_token:
            self._refresh_token = refreshed.refresh_token

        if self._tokens_refreshed is not None:
            # The new tokens are live in memory even if saving them fails.
            try:
                result = self._tokens_refreshed(refreshed)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Failed to persist refreshed tokens")
        return refreshed

    async def clear_tokens(self) -> None:
        await self.shutdown()
        self._bot_id = None
        self._access_token = None
        self._refresh_token = None
        self._device_fingerprint = None
        logger.info("Cloud tokens cleared")

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ChannelState:
        if self._channel is None:
            return ChannelState.DISCONNECTED
        return self._channel.state

    def get_connection_status(self) -> dict[str, Any]:
        return {
            "state": self.connection_state.value,
            "connected": self.connection_state == ChannelState.CONNECTED,
            "activated": self.is_activated,
            "botId": self._bot_id,
            "reconnections": self._channel.reconnections if self._channel else 0,
        }

    async def connect(self) -> None:
        """Open the channel with the current access token. Raises on failure."""
        if not self._access_token:
            raise AuthenticationError("Cloud session not activated", AuthenticationError.TOKEN_MISSING)

        if self._channel is not None:
            await self._channel.disconnect()
        channel = CloudChannel(
            self._ws_url,
            device_fingerprint=self._device_fingerprint or "",
            heartbeat_interval=self._heartbeat_interval,
            reconnect_delay=self._reconnect_delay,
            connect_timeout=self._connect_timeout,
            connector=self._connector,
        )
        for event, handler in self._handlers.items():
            channel.on(event, handler)
        channel.on_state_change(self._state_handler)
        self._channel = channel

        logger.info("Connecting to cloud", bot_id=self._bot_id)
        await channel.connect(self._access_token, token_provider=lambda: self._access_token)

    async def disconnect(self) -> None:
        if self._channel is not None:
            await self._channel.disconnect()

    async def acknowledge_directive(
        self, directive_id: str, latency_ms: int, status: Optional[str] = None
    ) -> bool:
        data: dict[str, Any] = {"directiveId": directive_id, "topstepLatencyMs": latency_ms}
        if status:
            data["status"] = status
        return await self._emit("directive_ack", data)

    async def acknowledge_command(self, command_id: str) -> bool:
        return await self._emit("command_ack", {"commandId": command_id, "timestamp": utcnow_iso()})

    async def _emit(self, event: str, data: dict[str, Any]) -> bool:
        if self._channel is None:
            logger.warning("Cannot emit: cloud channel not created", cloud_event=event)
            return False
        return await self._channel.send(event, data)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def send_telemetry(self, accounts: list[dict[str, Any]]) -> bool:
        return await self.api.send_telemetry(accounts, self._access_token, self._device_fingerprint)

    def start_telemetry(self, source: TelemetrySource) -> None:
        self.stop_telemetry()
        self._telemetry_task = asyncio.create_task(
            self._telemetry_loop(source), name="cloud-telemetry"
        )
        logger.info("Telemetry reporting started", interval=self._telemetry_interval)

    def stop_telemetry(self) -> None:
        if self._telemetry_task and not self._telemetry_task.done():
            self._telemetry_task.cancel()
            logger.info("Telemetry reporting stopped")
        self._telemetry_task = None

    async def _telemetry_loop(self, source: TelemetrySource) -> None:
        while True:
            await self._report_once(source)
            await asyncio.sleep(self._telemetry_interval)

    async def _report_once(self, source: TelemetrySource) -> None:
        accounts = source()
        if not accounts:
            logger.debug("No accounts to report, skipping telemetry")
            return
        try:
            await self.send_telemetry(accounts)
        except RateLimitExceeded as exc:
            logger.warning("Telemetry rate limited", retry_in=exc.seconds_until_reset)
        except AgentError as exc:
            logger.error("Failed to send telemetry", error=str(exc))

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    def start_token_refresh(self) -> None:
        self.stop_token_refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="cloud-token-refresh")

    def stop_token_refresh(self) -> None:
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.refresh_access_token()
            except RateLimitExceeded as exc:
                logger.warning("Token refresh rate limited", retry_in=exc.seconds_until_reset)
            except AuthenticationError as exc:
                # A rejected refresh token will not recover on its own.
                logger.error("Token refresh rejected, re-activation required", error=str(exc))
                return
            except AgentError as exc:
                logger.error("Token refresh failed", error=str(exc))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop every timer and close the channel."""
        self.stop_telemetry()
        self.stop_token_refresh()
        await self.disconnect()

    async def close(self) -> None:
        await self.shutdown()
        await self.api.close()

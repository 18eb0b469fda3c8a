"""
Agent Orchestrator

Wires the broker session, account registry, execution pipeline and cloud
session together and derives the single application state shown to the
operator.

Every trade directive passes through ``AccountRegistry.can_trade`` before
the execution pipeline is touched.  Directive ids are remembered for a
while so a redelivered directive is acknowledged again but never executed
twice, and submissions for one account run one at a time.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from models.broker_events import (
    AccountUpdateEvent,
    BrokerEvent,
    FillEvent,
    OrderUpdateEvent,
    PositionUpdateEvent,
)
from models.credentials import BrokerCredentials, TokenRefresh
from models.directive import CloudCommand, TradeDirective
from services.account_registry import AccountRegistry
from services.broker import BrokerSession, ConnectionState, create_broker_session
from services.cloud import ChannelState, CloudSession
from services.credential_store import CredentialStore
from services.notifications import LoggingNotifier, Notifier, UiEvent
from services.order_execution import OrderExecutionPipeline, OrderResult
from utils.errors import AgentError
from utils.logger import get_logger

logger = get_logger("orchestrator")

KILL_SWITCH_REASON = "Kill switch enabled"
UNKNOWN_ACCOUNT_REASON = "Unknown account"


class AppState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    WARNING = "warning"
    DEACTIVATED = "deactivated"


def derive_app_state(
    broker_state: ConnectionState,
    cloud_state: ChannelState,
    cloud_activated: bool = True,
) -> AppState:
    """Combine both connection states into what the operator sees.

    ``CONNECTED`` needs both sides up.  A live broker with the cloud down is
    a ``WARNING``: orders could still be placed but no directives arrive.
    """
    if not cloud_activated or cloud_state == ChannelState.ERROR:
        return AppState.DEACTIVATED
    if broker_state == ConnectionState.CONNECTED:
        if cloud_state == ChannelState.CONNECTED:
            return AppState.CONNECTED
        return AppState.WARNING
    if broker_state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
        return AppState.CONNECTING
    return AppState.DISCONNECTED


def _enabled_flag(payload: dict[str, Any], command: str) -> bool:
    """Only a real boolean true turns trading on; anything else means off."""
    value = payload.get("enabled")
    if not isinstance(value, bool):
        logger.warning("Non-boolean enabled flag treated as false", command=command, value=repr(value))
    return value is True


class DirectiveDeduplicator:
    """Bounded, time-limited memory of directive ids already handled."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def _prune(self, now: float) -> None:
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self._ttl and len(self._seen) <= self._max_entries:
                break
            self._seen.pop(oldest_id)

    def check_and_remember(self, directive_id: str) -> bool:
        """Return True if ``directive_id`` was already seen; otherwise remember it."""
        now = self._clock()
        self._prune(now)
        if directive_id in self._seen:
            return True
        self._seen[directive_id] = now
        self._prune(now)
        return False

    def __len__(self) -> int:
        return len(self._seen)


class Orchestrator:
    """Owns every long-lived component of one agent instance."""

    def __init__(
        self,
        broker: BrokerSession,
        cloud: CloudSession,
        store: CredentialStore,
        registry: Optional[AccountRegistry] = None,
        pipeline: Optional[OrderExecutionPipeline] = None,
        notifier: Optional[Notifier] = None,
        enable_trading_on_startup: bool = True,
        dedup_ttl_seconds: float = 600.0,
        dedup_max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.cloud = cloud
        self.store = store
        self.registry = registry or AccountRegistry()
        self.pipeline = pipeline or OrderExecutionPipeline.for_session(broker)
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._enable_trading_on_startup = enable_trading_on_startup
        self._clock = clock
        self._dedup = DirectiveDeduplicator(dedup_ttl_seconds, dedup_max_entries, clock)
        self._account_locks: dict[int, asyncio.Lock] = {}
        self._app_state = AppState.DEACTIVATED

        self.broker.set_event_sink(self._on_broker_event)
        self.broker.set_state_sink(self._on_broker_state)
        self.cloud.on("trade_directive", self.handle_directive)
        self.cloud.on("command", self.handle_command)
        self.cloud.on_state_change(self._on_cloud_state)
        self.cloud.on_tokens_refreshed(self._persist_refreshed_tokens)

    @classmethod
    def from_settings(
        cls,
        settings,
        store: CredentialStore,
        notifier: Optional[Notifier] = None,
        broker: Optional[BrokerSession] = None,
        cloud: Optional[CloudSession] = None,
    ) -> "Orchestrator":
        return cls(
            broker=broker or create_broker_session(settings),
            cloud=cloud or CloudSession.from_settings(settings),
            store=store,
            notifier=notifier,
            enable_trading_on_startup=settings.ENABLE_TRADING_ON_STARTUP,
            dedup_ttl_seconds=settings.DIRECTIVE_DEDUP_TTL_SECONDS,
            dedup_max_entries=settings.DIRECTIVE_DEDUP_MAX_ENTRIES,
        )

    def set_notifier(self, notifier: Notifier) -> None:
        self._notifier = notifier

    # ==================== STATE ====================

    @property
    def broker_state(self) -> ConnectionState:
        return self.broker.feed_state

    @property
    def cloud_state(self) -> ChannelState:
        return self.cloud.connection_state

    @property
    def app_state(self) -> AppState:
        return derive_app_state(self.broker_state, self.cloud_state, self.cloud.is_activated)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.app_state.value,
            "broker": {"mode": self.broker.mode, "state": self.broker_state.value},
            "cloud": self.cloud.get_connection_status(),
            "trading": self.registry.get_trading_status(),
            "accountCount": len(self.registry),
            "cumulativePnl": self.registry.cumulative_pnl(),
        }

    async def _notify(self, event: UiEvent, payload: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(event, payload)
        except Exception:
            logger.exception("UI notification failed", event=event.value)

    async def _publish_app_state(self) -> None:
        state = self.app_state
        if state == self._app_state:
            return
        self._app_state = state
        logger.info("Application state changed", state=state.value)
        await self._notify(UiEvent.APP_STATE, {"state": state.value})

    async def _on_broker_state(self, state: ConnectionState) -> None:
        logger.info("Broker connection state", state=state.value)
        await self._notify(UiEvent.BROKER_CONNECTION, {"state": state.value})
        await self._publish_app_state()

    async def _on_cloud_state(self, state: ChannelState) -> None:
        logger.info("Cloud connection state", state=state.value)
        await self._notify(UiEvent.CLOUD_CONNECTION, {"state": state.value})
        await self._publish_app_state()

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        """Bring up whatever the stored credentials allow. Failures are logged."""
        credentials = await self.store.get_broker_credentials()
        if credentials is not None or not self.broker.requires_credentials:
            try:
                await self.start_broker(credentials)
            except (AgentError, ValueError) as exc:
                logger.error("Broker startup failed", error=str(exc))
        else:
            logger.info("No broker credentials stored, waiting for setup")

        tokens = await self.store.get_cloud_tokens()
        if tokens is None:
            logger.info("Bot not activated, waiting for activation")
        else:
            self.cloud.set_tokens(tokens)
            try:
                await self.start_cloud()
            except AgentError as exc:
                logger.error("Cloud startup failed", error=str(exc))
        await self._publish_app_state()

    async def start_broker(self, credentials: Optional[BrokerCredentials] = None) -> None:
        """Authenticate, load accounts and open the realtime feed."""
        await self.broker.stop_feed()
        await self.broker.authenticate(credentials)

        raw_accounts = await self.broker.list_active_accounts()
        if not raw_accounts:
            logger.warning("Broker reported no active accounts")
        accounts = self.registry.initialize_accounts(raw_accounts)
        await self._notify(
            UiEvent.ACCOUNTS_LOADED,
            {"accounts": [account.to_wire() for account in accounts]},
        )

        if self._enable_trading_on_startup and accounts:
            self.set_master_kill_switch(True)
            await self._notify_trading_status()

        await self.broker.start_feed([account.id for account in accounts])

    async def stop_broker(self) -> None:
        await self.broker.stop_feed()

    async def save_broker_credentials(self, credentials: BrokerCredentials) -> None:
        await self.store.store_broker_credentials(credentials)
        await self.start_broker(credentials)

    async def remove_broker_credentials(self) -> None:
        await self.stop_broker()
        await self.store.delete_broker_credentials()
        self.registry.reset()
        await self._notify(UiEvent.ACCOUNTS_LOADED, {"accounts": []})
        await self._notify_trading_status()

    async def activate_cloud(self, activation_token: str) -> str:
        """Activate, persist the tokens and connect. Returns the bot id."""
        tokens = await self.cloud.activate(activation_token)
        await self.store.store_cloud_tokens(tokens)
        await self.start_cloud()
        return tokens.bot_id

    async def start_cloud(self) -> None:
        await self.cloud.connect()
        self.cloud.start_telemetry(self.telemetry_snapshot)
        self.cloud.start_token_refresh()
        await self._publish_app_state()

    async def deactivate_cloud(self) -> None:
        await self.cloud.clear_tokens()
        await self.store.delete_cloud_tokens()
        logger.info("Bot deactivated")
        await self._publish_app_state()

    async def _persist_refreshed_tokens(self, refreshed: TokenRefresh) -> None:
        await self.store.update_cloud_tokens(
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token,
        )

    async def stop(self) -> None:
        """Cooperative shutdown: timers, channel, feed, then clients."""
        logger.info("Shutting down agent")
        await self.cloud.close()
        await self.broker.close()
        self.registry.reset()

    # ==================== TRADING PERMISSION ====================

    def set_master_kill_switch(self, enabled: bool) -> None:
        self.registry.set_master_kill_switch(enabled)

    def set_account_trading(self, account_id: int, enabled: bool) -> bool:
        return self.registry.set_account_trading(account_id, enabled)

    async def _notify_trading_status(self) -> None:
        await self._notify(UiEvent.TRADING_STATUS, self.registry.get_trading_status())

    # ==================== TELEMETRY ====================

    def telemetry_snapshot(self) -> list[dict[str, Any]]:
        return [account.telemetry_entry() for account in self.registry.get_all_accounts()]

    async def send_telemetry_now(self) -> bool:
        accounts = self.telemetry_snapshot()
        if not accounts:
            logger.debug("No accounts to report, skipping telemetry")
            return False
        try:
            return await self.cloud.send_telemetry(accounts)
        except AgentError as exc:
            logger.error("Failed to send telemetry", error=str(exc))
            return False

    # ==================== BROKER EVENTS ====================

    async def _on_broker_event(self, event: BrokerEvent) -> None:
        if event.account_id is None:
            logger.warning("Broker event without account id", kind=event.kind.value)
            return

        if isinstance(event, FillEvent):
            if self.registry.add_fill(event.account_id, event.fill):
                await self._notify(
                    UiEvent.FILL_RECEIVED,
                    {"accountId": event.account_id, "fill": event.fill.to_wire()},
                )
        elif isinstance(event, AccountUpdateEvent):
            updates = {k: v for k, v in event.fields.items() if k != "accountId"}
            pnl = event.realized_pnl
            if pnl is not None:
                updates["pnl"] = pnl
            if self.registry.update_account(event.account_id, updates):
                account = self.registry.get_account(event.account_id)
                await self._notify(
                    UiEvent.PNL_UPDATE,
                    {
                        "accountId": event.account_id,
                        "pnl": account.pnl if account else None,
                        "cumulativePnl": self.registry.cumulative_pnl(),
                    },
                )
        elif isinstance(event, PositionUpdateEvent):
            if event.positions is not None:
                self.registry.set_positions(event.account_id, event.positions)
        elif isinstance(event, OrderUpdateEvent):
            logger.debug("Order update", account_id=event.account_id, order_id=event.order.get("id"))

    # ==================== DIRECTIVES ====================

    def _account_lock(self, account_id: int) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        return lock

    async def handle_directive(self, data: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Authorize, execute and acknowledge one trade directive."""
        received_at = self._clock()
        try:
            directive = TradeDirective.model_validate(data)
        except ValidationError as exc:
            logger.error("Invalid trade directive", errors=exc.error_count())
            return None

        log = logger.with_context(directive_id=directive.directive_id)
        if self._dedup.check_and_remember(directive.directive_id):
            log.warning("Duplicate directive ignored")
            await self.cloud.acknowledge_directive(directive.directive_id, 0, status="duplicate")
            return {"directiveId": directive.directive_id, "status": "duplicate"}

        log.info(
            "Trade directive received",
            account_id=directive.account_id,
            action=directive.action,
            symbol=directive.symbol,
            contracts=directive.contracts,
        )
        await self._notify(
            UiEvent.DIRECTIVE_RECEIVED, directive.model_dump(mode="json", by_alias=True)
        )

        if not self.registry.can_trade(directive.account_id):
            return await self._reject_directive(directive, received_at)

        async with self._account_lock(directive.account_id):
            # Permission may have flipped while waiting for the lock.
            if not self.registry.can_trade(directive.account_id):
                return await self._reject_directive(directive, received_at)
            result = await self.pipeline.submit_order(
                directive.account_id, directive.action, directive.symbol, directive.contracts
            )

        return await self._report_result(directive, result, received_at)

    async def _reject_directive(self, directive: TradeDirective, received_at: float) -> dict[str, Any]:
        reason = (
            KILL_SWITCH_REASON
            if self.registry.get_account(directive.account_id) is not None
            else UNKNOWN_ACCOUNT_REASON
        )
        latency_ms = self._elapsed_ms(received_at)
        logger.with_context(directive_id=directive.directive_id).warning(
            "Directive rejected", account_id=directive.account_id, reason=reason
        )
        outcome = {
            "directiveId": directive.directive_id,
            "accountId": directive.account_id,
            "status": "rejected",
            "reason": reason,
            "latencyMs": latency_ms,
        }
        await self._notify(UiEvent.DIRECTIVE_REJECTED, outcome)
        await self.cloud.acknowledge_directive(directive.directive_id, latency_ms, status="rejected")
        return outcome

    async def _report_result(
        self, directive: TradeDirective, result: OrderResult, received_at: float
    ) -> dict[str, Any]:
        latency_ms = self._elapsed_ms(received_at)
        outcome = {"directiveId": directive.directive_id, **result.to_dict(), "latencyMs": latency_ms}
        await self._notify(
            UiEvent.ORDER_SUBMITTED if result.success else UiEvent.ORDER_FAILED, outcome
        )
        await self.cloud.acknowledge_directive(directive.directive_id, latency_ms, status=result.status.value)
        return outcome

    def _elapsed_ms(self, started_at: float) -> int:
        return int(round((self._clock() - started_at) * 1000))

    # ==================== COMMANDS ====================

    async def handle_command(self, data: dict[str, Any]) -> None:
        try:
            command = CloudCommand.model_validate(data)
        except ValidationError as exc:
            logger.error("Invalid cloud command", errors=exc.error_count())
            return

        name = command.command
        payload = command.payload
        logger.info("Received command from cloud", command=name, command_id=command.command_id)

        if name == "kill_switch":
            self.set_master_kill_switch(_enabled_flag(payload, name))
            await self._notify_trading_status()
        elif name == "set_account_trading":
            try:
                account_id = int(payload.get("accountId"))
            except (TypeError, ValueError):
                logger.warning("set_account_trading without a valid accountId")
            else:
                if self.set_account_trading(account_id, _enabled_flag(payload, name)):
                    await self._notify_trading_status()
        elif name == "send_telemetry":
            await self.send_telemetry_now()
        elif name == "deactivate":
            if command.command_id:
                await self.cloud.acknowledge_command(command.command_id)
            await self.deactivate_cloud()
            return
        else:
            logger.warning("Unknown cloud command", command=name)

        if command.command_id:
            await self.cloud.acknowledge_command(command.command_id)

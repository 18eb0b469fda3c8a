"""Push notifications toward the local UI.

The UI never receives credentials or tokens; payloads carry account state,
connection states and directive outcomes only.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from utils.logger import get_logger

logger = get_logger("notifications")


class UiEvent(str, Enum):
    ACCOUNTS_LOADED = "accounts_loaded"
    FILL_RECEIVED = "fill_received"
    PNL_UPDATE = "pnl_update"
    BROKER_CONNECTION = "broker_connection"
    CLOUD_CONNECTION = "cloud_connection"
    APP_STATE = "app_state"
    DIRECTIVE_RECEIVED = "directive_received"
    DIRECTIVE_REJECTED = "directive_rejected"
    ORDER_SUBMITTED = "order_submitted"
    ORDER_FAILED = "order_failed"
    TRADING_STATUS = "trading_status"


class Notifier(Protocol):
    async def notify(self, event: UiEvent, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier used when no UI is attached."""

    async def notify(self, event: UiEvent, payload: dict[str, Any]) -> None:
        logger.debug("UI notification", event=event.value)

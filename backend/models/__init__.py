from .account import Account, Fill, Position, MAX_RECENT_FILLS
from .broker_events import (
    BrokerEvent,
    BrokerEventKind,
    FillEvent,
    AccountUpdateEvent,
    PositionUpdateEvent,
    OrderUpdateEvent,
    parse_broker_event,
)
from .credentials import BrokerCredentials, CloudTokens, TokenRefresh
from .directive import DirectiveAction, TradeDirective, CloudCommand

__all__ = [
    "Account",
    "Fill",
    "Position",
    "MAX_RECENT_FILLS",
    "BrokerEvent",
    "BrokerEventKind",
    "FillEvent",
    "AccountUpdateEvent",
    "PositionUpdateEvent",
    "OrderUpdateEvent",
    "parse_broker_event",
    "BrokerCredentials",
    "CloudTokens",
    "TokenRefresh",
    "DirectiveAction",
    "TradeDirective",
    "CloudCommand",
]

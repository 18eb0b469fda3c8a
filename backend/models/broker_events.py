"""Typed push events from the broker realtime feed."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from models.account import Fill, Position


class BrokerEventKind(str, Enum):
    FILL = "Fill"
    ACCOUNT_UPDATE = "AccountUpdate"
    POSITION_UPDATE = "PositionUpdate"
    ORDER_UPDATE = "OrderUpdate"


# Hub method names as sent by the gateway, mapped to event kinds.
HUB_METHODS: dict[str, BrokerEventKind] = {
    "Fill": BrokerEventKind.FILL,
    "GatewayUserTrade": BrokerEventKind.FILL,
    "AccountUpdate": BrokerEventKind.ACCOUNT_UPDATE,
    "GatewayUserAccount": BrokerEventKind.ACCOUNT_UPDATE,
    "PositionUpdate": BrokerEventKind.POSITION_UPDATE,
    "GatewayUserPosition": BrokerEventKind.POSITION_UPDATE,
    "OrderUpdate": BrokerEventKind.ORDER_UPDATE,
    "GatewayUserOrder": BrokerEventKind.ORDER_UPDATE,
}


def _coerce_account_id(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class FillEvent:
    kind: ClassVar[BrokerEventKind] = BrokerEventKind.FILL
    account_id: Optional[int]
    fill: Fill


@dataclass(frozen=True)
class AccountUpdateEvent:
    kind: ClassVar[BrokerEventKind] = BrokerEventKind.ACCOUNT_UPDATE
    account_id: Optional[int]
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def realized_pnl(self) -> Optional[float]:
        value = self.fields.get("realizedPnl", self.fields.get("realized_pnl"))
        return float(value) if value is not None else None


@dataclass(frozen=True)
class PositionUpdateEvent:
    kind: ClassVar[BrokerEventKind] = BrokerEventKind.POSITION_UPDATE
    account_id: Optional[int]
    positions: Optional[list[Position]] = None  # None keeps the current list


@dataclass(frozen=True)
class OrderUpdateEvent:
    kind: ClassVar[BrokerEventKind] = BrokerEventKind.ORDER_UPDATE
    account_id: Optional[int]
    order: dict[str, Any] = field(default_factory=dict)


BrokerEvent = Union[FillEvent, AccountUpdateEvent, PositionUpdateEvent, OrderUpdateEvent]


def parse_broker_event(method: str, payload: Any) -> Optional[BrokerEvent]:
    """Build a typed event from a hub invocation, or None if not one of ours."""
    kind = HUB_METHODS.get(method)
    if kind is None or not isinstance(payload, dict):
        return None

    # Gateway events wrap the record as {"action": n, "data": {...}}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    if kind is BrokerEventKind.FILL:
        return FillEvent(
            account_id=_coerce_account_id(data.get("accountId")),
            fill=Fill.model_validate(data),
        )
    if kind is BrokerEventKind.ACCOUNT_UPDATE:
        return AccountUpdateEvent(
            account_id=_coerce_account_id(data.get("accountId", data.get("id"))),
            fields=dict(data),
        )
    if kind is BrokerEventKind.POSITION_UPDATE:
        raw_positions = data.get("positions")
        positions = None
        if isinstance(raw_positions, list):
            positions = [Position.model_validate(p) for p in raw_positions if isinstance(p, dict)]
        return PositionUpdateEvent(
            account_id=_coerce_account_id(data.get("accountId")),
            positions=positions,
        )
    return OrderUpdateEvent(
        account_id=_coerce_account_id(data.get("accountId")),
        order=dict(data),
    )

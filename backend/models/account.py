from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from utils.utcnow import utcnow

MAX_RECENT_FILLS = 50


class BrokerModel(BaseModel):
    """Broker payloads are camelCase; attributes are snake_case.

    Unknown broker fields are preserved (``extra="allow"``) so that a later
    dump still carries everything the broker sent.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Fill(BrokerModel):
    """Executed trade reported by the broker."""

    id: Optional[Union[int, str]] = None
    account_id: Optional[int] = None
    contract_id: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[Any] = None
    size: Optional[float] = None
    price: Optional[float] = None
    profit_and_loss: Optional[float] = None
    fees: Optional[float] = None
    order_id: Optional[int] = None
    creation_timestamp: Optional[datetime] = None


class Position(BrokerModel):
    """Open position snapshot."""

    id: Optional[Union[int, str]] = None
    account_id: Optional[int] = None
    contract_id: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    size: Optional[float] = None
    average_price: Optional[float] = None
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    creation_timestamp: Optional[datetime] = None


class Account(BrokerModel):
    """One broker trading account as held in the registry.

    Financial and risk fields are whatever the broker last reported; the
    registry never derives them.  ``trading_enabled`` is the per-account
    override and is owned locally.
    """

    id: int
    name: str = ""
    account_type: Optional[str] = None
    can_trade: Optional[bool] = None  # Broker-side flag, not our permission
    is_visible: Optional[bool] = None

    # Financial snapshot
    balance: Optional[float] = None
    starting_balance: Optional[float] = None
    current_balance: Optional[float] = None
    equity: Optional[float] = None
    buying_power: Optional[float] = None
    cash_balance: Optional[float] = None
    day_trade_balance: Optional[float] = None

    # PNL snapshot
    pnl: Optional[float] = 0.0
    daily_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None

    # Risk snapshot
    max_drawdown: Optional[float] = None
    current_drawdown: Optional[float] = None
    drawdown_remaining: Optional[float] = None
    daily_loss_limit: Optional[float] = None
    daily_loss_used: Optional[float] = None
    daily_loss_remaining: Optional[float] = None
    daily_profit_target: Optional[float] = None
    daily_profit_progress: Optional[float] = None

    trading_enabled: bool = True
    open_positions: list[Position] = Field(default_factory=list)
    recent_fills: list[Fill] = Field(default_factory=list)
    last_update: datetime = Field(default_factory=utcnow)

    @classmethod
    def wire_key(cls, key: str) -> str:
        """Map a snake_case attribute name to its camelCase wire key."""
        field = cls.model_fields.get(key)
        if field is not None and field.alias:
            return field.alias
        return key

    def merged(self, updates: dict[str, Any]) -> "Account":
        """Return a new Account with ``updates`` merged over this one."""
        data = self.model_dump(by_alias=True)
        for key, value in updates.items():
            data[self.wire_key(key)] = value
        data["id"] = self.id
        data["lastUpdate"] = utcnow()
        return Account.model_validate(data)

    def telemetry_entry(self) -> dict[str, Any]:
        """Compact per-account snapshot sent to the cloud engine."""
        return {
            "accountId": str(self.id),
            "accountName": self.name or str(self.id),
            "balance": self.balance or self.cash_balance or 0,
            "dailyPnl": self.pnl or self.daily_pnl or 0,
            "openPositions": len(self.open_positions),
            "isTradingEnabled": self.trading_enabled,
        }

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class DirectiveAction(str, Enum):
    ENTRY_LONG = "ENTRY_LONG"
    ENTRY_SHORT = "ENTRY_SHORT"
    EXIT = "EXIT"
    EXIT_LONG = "EXIT_LONG"
    EXIT_SHORT = "EXIT_SHORT"


class _CloudMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TradeDirective(_CloudMessage):
    """Inbound instruction from the cloud engine. Never persisted.

    ``action`` stays a plain string so an unmapped action reaches the
    execution pipeline and is rejected there with its own error.
    """

    directive_id: str
    account_id: int
    symbol: str
    action: str
    price: Optional[float] = None
    contracts: int = Field(default=1, ge=1)
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator("directive_id", mode="before")
    @classmethod
    def _directive_id_text(cls, value: object) -> object:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("symbol", "action", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class CloudCommand(_CloudMessage):
    """Operator command pushed over the cloud channel."""

    command_id: Optional[str] = None
    command: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("command_id", mode="before")
    @classmethod
    def _command_id_text(cls, value: object) -> object:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_default(cls, value: object) -> object:
        return value or {}

"""
Order Execution - turns an authorized directive into a broker order.

This component does not check trading permission; the orchestrator gates
every call through the account registry first.  It maps the directive's
action and symbol through fixed tables, submits a market order (or a
position close for EXIT) and reports the outcome as an ``OrderResult``.
It never raises past ``submit_order`` and never retries: resubmitting a
market order risks a duplicate fill.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from models.directive import DirectiveAction
from utils.logger import get_logger
from utils.utcnow import utcnow_iso

logger = get_logger("execution")

PLACE_ORDER_PATH = "/api/Order/place"
CLOSE_POSITION_PATH = "/api/Position/closeContract"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"  # Broker determines direction from the open position


class OrderStatus(str, Enum):
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    FAILED = "failed"


# Gateway wire codes
ORDER_TYPE_MARKET = 2
SIDE_CODES = {OrderSide.BUY: 0, OrderSide.SELL: 1}

ACTION_TO_SIDE: dict[str, OrderSide] = {
    DirectiveAction.ENTRY_LONG: OrderSide.BUY,
    DirectiveAction.ENTRY_SHORT: OrderSide.SELL,
    DirectiveAction.EXIT: OrderSide.CLOSE,
    DirectiveAction.EXIT_LONG: OrderSide.SELL,
    DirectiveAction.EXIT_SHORT: OrderSide.BUY,
}

# Front-month contract identifiers on the gateway
SYMBOL_TO_CONTRACT: dict[str, str] = {
    "ES": "CON.F.US.EP.Z25",
    "NQ": "CON.F.US.ENQ.Z25",
    "MES": "CON.F.US.MES.Z25",
    "MNQ": "CON.F.US.MNQ.Z25",
    "YM": "CON.F.US.YM.Z25",
    "MYM": "CON.F.US.MYM.Z25",
    "RTY": "CON.F.US.RTY.Z25",
    "M2K": "CON.F.US.M2K.Z25",
    "CL": "CON.F.US.CLE.Z25",
    "GC": "CON.F.US.GCE.Z25",
}


def map_action_to_side(action: str) -> Optional[OrderSide]:
    return ACTION_TO_SIDE.get(str(action or "").upper())


def map_symbol_to_contract(symbol: str) -> Optional[str]:
    return SYMBOL_TO_CONTRACT.get(str(symbol or "").upper())


@dataclass
class OrderRequest:
    account_id: int
    contract_id: str
    side: OrderSide
    quantity: int

    def to_payload(self) -> dict[str, Any]:
        if self.side == OrderSide.CLOSE:
            return {"accountId": self.account_id, "contractId": self.contract_id}
        return {
            "accountId": self.account_id,
            "contractId": self.contract_id,
            "type": ORDER_TYPE_MARKET,
            "side": SIDE_CODES[self.side],
            "size": self.quantity,
        }


@dataclass
class OrderResult:
    """Outcome of one submission, with the directive context echoed back."""

    success: bool
    account_id: int
    symbol: str
    action: str
    quantity: int
    side: Optional[OrderSide] = None
    contract_id: Optional[str] = None
    order_id: Optional[Any] = None
    status: OrderStatus = OrderStatus.FAILED
    error: Optional[str] = None
    error_details: Optional[Any] = None
    status_code: Optional[int] = None
    submitted_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "orderId": self.order_id,
            "status": self.status.value,
            "accountId": self.account_id,
            "symbol": self.symbol,
            "action": self.action,
            "side": self.side.value if self.side else None,
            "contractId": self.contract_id,
            "quantity": self.quantity,
            "error": self.error,
            "errorDetails": self.error_details,
            "statusCode": self.status_code,
            "submittedAt": self.submitted_at,
        }


TokenProvider = Callable[[], Awaitable[str]]


class OrderExecutionPipeline:
    """Mechanical translator plus submitter for broker orders."""

    def __init__(self, client: httpx.AsyncClient, token_provider: TokenProvider):
        self._client = client
        self._get_token = token_provider

    @classmethod
    def for_session(cls, session) -> "OrderExecutionPipeline":
        return cls(session.http_client, session.get_token)

    def build_request(
        self, account_id: int, action: str, symbol: str, lots: int
    ) -> tuple[Optional[OrderRequest], Optional[str]]:
        """Map a directive onto an order request, or return an error message."""
        side = map_action_to_side(action)
        if side is None:
            return None, f"Invalid action: {action}"
        contract_id = map_symbol_to_contract(symbol)
        if contract_id is None:
            return None, f"Unknown symbol: {symbol}"
        return OrderRequest(account_id, contract_id, side, int(lots)), None

    async def submit_order(self, account_id: int, action: str, symbol: str, lots: int) -> OrderResult:
        result = OrderResult(
            success=False,
            account_id=account_id,
            symbol=symbol,
            action=action,
            quantity=lots,
        )

        request, error = self.build_request(account_id, action, symbol, lots)
        if request is None:
            result.status = OrderStatus.REJECTED
            result.error = error
            logger.error(
                "Order rejected before submission",
                error=error,
                account_id=account_id,
                action=action,
                symbol=symbol,
                lots=lots,
            )
            return result

        result.side = request.side
        result.contract_id = request.contract_id

        try:
            token = await self._get_token()
        except Exception as exc:
            result.error = f"Broker authentication failed: {exc}"
            logger.error("Order submission failed", error=result.error, account_id=account_id)
            return result

        path = CLOSE_POSITION_PATH if request.side == OrderSide.CLOSE else PLACE_ORDER_PATH
        logger.info(
            "Submitting order",
            side=request.side.value,
            quantity=request.quantity,
            symbol=symbol,
            contract_id=request.contract_id,
            account_id=account_id,
        )

        try:
            response = await self._client.post(
                path,
                json=request.to_payload(),
                headers={"Authorization": f"Bearer {token}"},
            )
            result.status_code = response.status_code
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            result.error = f"Broker returned HTTP {exc.response.status_code}"
            result.error_details = _response_details(exc.response)
            self._log_failure(result)
            return result
        except httpx.TimeoutException:
            result.error = "Order request timed out"
            self._log_failure(result)
            return result
        except httpx.TransportError as exc:
            result.error = f"Cannot reach broker: {exc}"
            self._log_failure(result)
            return result
        except ValueError:
            result.error = "Malformed broker response"
            self._log_failure(result)
            return result

        if not isinstance(data, dict) or data.get("success") is False:
            message = data.get("errorMessage") if isinstance(data, dict) else None
            result.error = message or "Order rejected by broker"
            result.error_details = data
            self._log_failure(result)
            return result

        result.success = True
        result.status = OrderStatus.SUBMITTED
        result.order_id = data.get("orderId")
        logger.info(
            "Order submitted",
            order_id=result.order_id,
            account_id=account_id,
            symbol=symbol,
            side=request.side.value,
            quantity=request.quantity,
        )
        return result

    @staticmethod
    def _log_failure(result: OrderResult) -> None:
        logger.error(
            "Order submission failed",
            error=result.error,
            status_code=result.status_code,
            account_id=result.account_id,
            action=result.action,
            symbol=result.symbol,
            lots=result.quantity,
        )


def _response_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]

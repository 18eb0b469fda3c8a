"""Offline broker for development.

Serves a fixed set of realistic accounts, pushes randomized account updates
and fills on timers, and answers the gateway's REST endpoints through an
``httpx.MockTransport`` so the order pipeline runs unchanged without
network access.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import random
from typing import Any, Iterable, Optional

import httpx

from models.account import Fill
from models.broker_events import AccountUpdateEvent, BrokerEvent, FillEvent
from models.credentials import BrokerCredentials
from services.broker.realtime import ConnectionState
from services.broker.session import BrokerSession
from utils.logger import get_logger
from utils.utcnow import utcnow, utcnow_iso

logger = get_logger("broker.simulator")

SIMULATED_BASE_URL = "https://simulated.broker.local"
SIMULATED_TOKEN = "simulated-broker-token"

# (id, name, type, starting balance, pnl, daily pnl, unrealized, realized,
#  max drawdown, current drawdown, daily loss limit, daily profit target)
_ACCOUNT_TABLE = (
    (123456, "Express Eval - NQ", "Evaluation", 50000.00, 1250.75, 875.50, 325.25, 550.25, -2500.00, -125.50, 2000.00, 3000.00),
    (234567, "Express Eval - ES", "Evaluation", 30000.00, 850.20, 425.80, 150.40, 275.60, -1800.00, -75.20, 1500.00, 1800.00),
    (345678, "Funded Trader - MNQ", "Funded", 100000.00, 2150.25, 950.75, 450.50, 1699.75, -4200.00, -250.25, 4000.00, 0.0),
    (456789, "Practice Account - YM", "Practice", 25000.00, 320.70, 180.30, 90.40, 230.30, -1200.00, -45.70, 1000.00, 1200.00),
    (567890, "Scaling Plan - RTY", "Scaling", 75000.00, 1420.85, 650.45, 270.40, 1150.45, -3100.00, -180.55, 3000.00, 2250.00),
)

_FILL_PRICES = {
    "NQH25": 18500.0,
    "ESH25": 5800.0,
    "MNQH25": 20100.0,
    "YMH25": 38900.0,
    "RTYH25": 2180.0,
}


def generate_accounts() -> list[dict[str, Any]]:
    """Account payloads shaped like the gateway's account search results."""
    accounts = []
    for (
        account_id,
        name,
        account_type,
        start,
        pnl,
        daily_pnl,
        unrealized,
        realized,
        max_dd,
        current_dd,
        loss_limit,
        profit_target,
    ) in _ACCOUNT_TABLE:
        current = round(start + pnl, 2)
        accounts.append(
            {
                "id": account_id,
                "name": name,
                "canTrade": account_type != "Practice",
                "isVisible": True,
                "accountType": account_type,
                "balance": start,
                "startingBalance": start,
                "currentBalance": current,
                "equity": current,
                "buyingPower": start * 4,
                "cashBalance": round(current - unrealized - realized, 2),
                "pnl": pnl,
                "dailyPnl": daily_pnl,
                "unrealizedPnl": unrealized,
                "realizedPnl": realized,
                "maxDrawdown": max_dd,
                "currentDrawdown": current_dd,
                "drawdownRemaining": round(-max_dd + current_dd, 2),
                "dailyLossLimit": loss_limit,
                "dailyLossUsed": -current_dd,
                "dailyLossRemaining": round(loss_limit + current_dd, 2),
                "dailyProfitTarget": profit_target,
                "dailyProfitProgress": daily_pnl,
                "status": "ACTIVE",
                "currency": "USD",
            }
        )
    return accounts


class SimulatedBrokerSession(BrokerSession):
    mode = "simulated"
    requires_credentials = False

    def __init__(
        self,
        account_update_interval: tuple[float, float] = (15.0, 30.0),
        fill_interval: tuple[float, float] = (45.0, 120.0),
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__()
        self._accounts = {a["id"]: a for a in generate_accounts()}
        self._account_update_interval = account_update_interval
        self._fill_interval = fill_interval
        self._rng = rng or random.Random()
        self._order_ids = itertools.count(9_000_001)
        self._client = httpx.AsyncClient(
            base_url=SIMULATED_BASE_URL,
            transport=httpx.MockTransport(self._handle_request),
        )
        self._state = ConnectionState.DISCONNECTED
        self._feed_tasks: list[asyncio.Task] = []
        self._pending: set[asyncio.Task] = set()
        self.placed_orders: list[dict[str, Any]] = []

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def feed_state(self) -> ConnectionState:
        return self._state

    async def authenticate(self, credentials: Optional[BrokerCredentials]) -> None:
        logger.info("Simulated broker authentication")

    async def get_token(self) -> str:
        return SIMULATED_TOKEN

    async def list_active_accounts(self) -> list[dict[str, Any]]:
        return [dict(a) for a in self._accounts.values()]

    async def start_feed(self, account_ids: Iterable[int]) -> bool:
        await self.stop_feed()
        ids = [int(a) for a in account_ids if int(a) in self._accounts]
        await self._set_state(ConnectionState.CONNECTED)
        if ids:
            self._feed_tasks = [
                asyncio.create_task(self._account_update_loop(ids), name="sim-account-updates"),
                asyncio.create_task(self._fill_loop(ids), name="sim-fills"),
            ]
        logger.info("Simulated live updates started", accounts=len(ids))
        return True

    async def stop_feed(self) -> None:
        tasks = self._feed_tasks + list(self._pending)
        self._feed_tasks = []
        self._pending.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state != ConnectionState.DISCONNECTED:
            await self._set_state(ConnectionState.DISCONNECTED)

    # -- simulated push events ---------------------------------------------

    async def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._state_sink is not None:
            result = self._state_sink(state)
            if asyncio.iscoroutine(result):
                await result

    async def _emit(self, event: BrokerEvent) -> None:
        if self._event_sink is None:
            return
        try:
            result = self._event_sink(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Simulated event handler failed", kind=event.kind.value)

    async def _account_update_loop(self, account_ids: list[int]) -> None:
        while True:
            await asyncio.sleep(self._rng.uniform(*self._account_update_interval))
            await self._emit(self.generate_account_update(self._rng.choice(account_ids)))

    async def _fill_loop(self, account_ids: list[int]) -> None:
        while True:
            await asyncio.sleep(self._rng.uniform(*self._fill_interval))
            await self._emit(self.generate_fill(self._rng.choice(account_ids)))

    def generate_account_update(self, account_id: int) -> AccountUpdateEvent:
        account = self._accounts[account_id]
        pnl_change = self._rng.uniform(-50, 50)
        account["balance"] = round(account["balance"] + self._rng.uniform(-100, 100), 2)
        account["pnl"] = round(account["pnl"] + pnl_change, 2)
        account["dailyPnl"] = round(account["dailyPnl"] + pnl_change * 0.5, 2)
        account["unrealizedPnl"] = round(account["unrealizedPnl"] + self._rng.uniform(-25, 25), 2)
        fields = {
            "accountId": account_id,
            "balance": account["balance"],
            "pnl": account["pnl"],
            "dailyPnl": account["dailyPnl"],
            "unrealizedPnl": account["unrealizedPnl"],
        }
        return AccountUpdateEvent(account_id=account_id, fields=fields)

    def generate_fill(
        self,
        account_id: int,
        symbol: Optional[str] = None,
        side: Optional[str] = None,
        size: Optional[int] = None,
        order_id: Optional[int] = None,
    ) -> FillEvent:
        symbol = symbol or self._rng.choice(sorted(_FILL_PRICES))
        base = _FILL_PRICES.get(symbol, 1000.0)
        fill = Fill(
            id=f"fill_{utcnow().strftime('%Y%m%d%H%M%S%f')}_{self._rng.randrange(16**6):06x}",
            account_id=account_id,
            symbol=symbol,
            side=side or self._rng.choice(["BUY", "SELL"]),
            size=size or self._rng.randint(1, 5),
            price=round(base + self._rng.uniform(-50, 50), 2),
            profit_and_loss=round(self._rng.uniform(-250, 250), 2),
            order_id=order_id,
            creation_timestamp=utcnow(),
        )
        return FillEvent(account_id=account_id, fill=fill)

    # -- simulated REST endpoints ------------------------------------------

    async def _handle_request(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        try:
            body = json.loads(request.content or b"{}")
        except ValueError:
            return httpx.Response(400, json={"success": False, "errorMessage": "Malformed JSON"})

        if path == "/api/Auth/loginKey":
            return httpx.Response(200, json={"success": True, "token": SIMULATED_TOKEN})
        if path == "/api/Auth/validate":
            return httpx.Response(200, json={"success": True, "newToken": SIMULATED_TOKEN})
        if path == "/api/Account/search":
            return httpx.Response(
                200, json={"success": True, "accounts": await self.list_active_accounts()}
            )
        if path == "/api/Order/place":
            return self._place_order(body)
        if path == "/api/Position/closeContract":
            return self._close_position(body)
        return httpx.Response(404, json={"success": False, "errorMessage": f"No route {path}"})

    def _place_order(self, body: dict[str, Any]) -> httpx.Response:
        account_id = body.get("accountId")
        if account_id not in self._accounts:
            return httpx.Response(
                200,
                json={"success": False, "orderId": None, "errorCode": 1, "errorMessage": "Account not found"},
            )
        if not isinstance(body.get("size"), int) or body["size"] <= 0:
            return httpx.Response(
                200,
                json={"success": False, "orderId": None, "errorCode": 2, "errorMessage": "Invalid size"},
            )
        order_id = next(self._order_ids)
        self.placed_orders.append({**body, "orderId": order_id, "placedAt": utcnow_iso()})
        logger.info("Simulated order placed", order_id=order_id, account_id=account_id)

        if self._state == ConnectionState.CONNECTED:
            side = "BUY" if body.get("side") == 0 else "SELL"
            event = self.generate_fill(
                account_id, symbol=body.get("contractId"), side=side, size=body["size"], order_id=order_id
            )
            task = asyncio.get_running_loop().create_task(self._emit(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return httpx.Response(
            200, json={"success": True, "orderId": order_id, "errorCode": 0, "errorMessage": None}
        )

    def _close_position(self, body: dict[str, Any]) -> httpx.Response:
        if body.get("accountId") not in self._accounts:
            return httpx.Response(
                200, json={"success": False, "errorCode": 1, "errorMessage": "Account not found"}
            )
        self.placed_orders.append({**body, "close": True, "placedAt": utcnow_iso()})
        return httpx.Response(200, json={"success": True, "errorCode": 0, "errorMessage": None})

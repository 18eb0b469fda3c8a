import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import json

from api import routes
from api.websocket import ConnectionManager, build_snapshot
from services.account_registry import AccountRegistry
from services.notifications import UiEvent
from utils.errors import (
    AgentError,
    AuthenticationError,
    CloudUnreachableError,
    RateLimitExceeded,
)
from utils.rate_limiter import RateLimitConfig, RateLimiterRegistry


def _orchestrator(registry):
    """Orchestrator stand-in exposing what the routes touch."""
    limits = RateLimiterRegistry({"activation": RateLimitConfig(5, 3600)})

    def set_account_trading(account_id, enabled):
        return registry.set_account_trading(account_id, enabled)

    return SimpleNamespace(
        registry=registry,
        cloud=SimpleNamespace(api=SimpleNamespace(rate_limits=limits)),
        get_status=lambda: {"state": "warning", "accountCount": len(registry)},
        set_master_kill_switch=registry.set_master_kill_switch,
        set_account_trading=set_account_trading,
        save_broker_credentials=AsyncMock(),
        remove_broker_credentials=AsyncMock(),
        activate_cloud=AsyncMock(return_value="bot-1"),
        deactivate_cloud=AsyncMock(),
    )


def test_get_orchestrator_requires_started_agent():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(HTTPException) as exc_info:
        routes.get_orchestrator(request)

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_status_and_rate_limits(registry):
    orchestrator = _orchestrator(registry)

    status = await routes.get_status(orchestrator=orchestrator)
    limits = await routes.get_rate_limits(orchestrator=orchestrator)

    assert status == {"state": "warning", "accountCount": 5}
    assert limits["activation"] == {"used": 0, "limit": 5, "remaining": 5, "reset_in": 0}


@pytest.mark.asyncio
async def test_accounts_listing(registry):
    orchestrator = _orchestrator(registry)

    result = await routes.list_accounts(orchestrator=orchestrator)

    assert result["count"] == 5
    assert result["accounts"][0]["id"] == 123456
    assert result["cumulativePnl"] == pytest.approx(registry.cumulative_pnl())
    assert "tradingEnabled" in result["accounts"][0]


@pytest.mark.asyncio
async def test_unknown_account_is_404(registry):
    orchestrator = _orchestrator(registry)

    with pytest.raises(HTTPException) as exc_info:
        await routes.get_account(999, orchestrator=orchestrator)
    assert exc_info.value.status_code == 404

    with pytest.raises(HTTPException):
        await routes.set_account_trading(
            999, routes.ToggleRequest(enabled=True), orchestrator=orchestrator
        )


@pytest.mark.asyncio
async def test_kill_switch_routes(registry):
    orchestrator = _orchestrator(registry)

    status = await routes.set_master_kill_switch(
        routes.ToggleRequest(enabled=True), orchestrator=orchestrator
    )
    assert status["masterEnabled"] is True
    assert status["accounts"]["123456"]["canTrade"] is True

    status = await routes.set_account_trading(
        123456, routes.ToggleRequest(enabled=False), orchestrator=orchestrator
    )
    assert status["accounts"]["123456"] == {"enabled": False, "canTrade": False}
    assert registry.can_trade(234567) is True


@pytest.mark.asyncio
async def test_save_broker_credentials_strips_input(registry):
    orchestrator = _orchestrator(registry)
    body = routes.BrokerCredentialsRequest.model_validate(
        {"username": " trader@example.com ", "apiKey": " key "}
    )

    result = await routes.save_broker_credentials(body, orchestrator=orchestrator)

    assert result == {"status": "connected", "accounts": 5}
    credentials = orchestrator.save_broker_credentials.await_args.args[0]
    assert credentials.username == "trader@example.com"
    assert credentials.api_key == "key"
    assert "key" not in json.dumps(result)


@pytest.mark.asyncio
async def test_save_broker_credentials_errors(registry):
    orchestrator = _orchestrator(registry)
    body = routes.BrokerCredentialsRequest(username="u", apiKey="k")

    orchestrator.save_broker_credentials.side_effect = AuthenticationError(
        "bad key", AuthenticationError.INVALID_CREDENTIALS
    )
    response = await routes.save_broker_credentials(body, orchestrator=orchestrator)
    assert response.status_code == 401
    assert json.loads(response.body)["category"] == AuthenticationError.INVALID_CREDENTIALS

    orchestrator.save_broker_credentials.side_effect = ValueError("username required")
    with pytest.raises(HTTPException) as exc_info:
        await routes.save_broker_credentials(body, orchestrator=orchestrator)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_activate_cloud(registry):
    orchestrator = _orchestrator(registry)

    result = await routes.activate_cloud(
        routes.ActivationRequest(activationToken=" act-1 "), orchestrator=orchestrator
    )

    assert result == {"status": "activated", "botId": "bot-1"}
    orchestrator.activate_cloud.assert_awaited_once_with("act-1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,status",
    [
        (RateLimitExceeded("activation", 1800), 429),
        (AuthenticationError("expired", AuthenticationError.INVALID_ACTIVATION_TOKEN), 401),
        (CloudUnreachableError("offline"), 503),
        (AgentError("boom"), 502),
    ],
)
async def test_activate_cloud_error_mapping(registry, error, status):
    orchestrator = _orchestrator(registry)
    orchestrator.activate_cloud.side_effect = error

    response = await routes.activate_cloud(
        routes.ActivationRequest(activationToken="act-1"), orchestrator=orchestrator
    )

    assert response.status_code == status
    if status == 429:
        assert response.headers["Retry-After"] == "1800"
        assert json.loads(response.body)["retryAfter"] == 1800


@pytest.mark.asyncio
async def test_deactivate_and_delete(registry):
    orchestrator = _orchestrator(registry)

    assert await routes.deactivate_cloud(orchestrator=orchestrator) == {"status": "deactivated"}
    assert await routes.delete_broker_credentials(orchestrator=orchestrator) == {"status": "deleted"}
    orchestrator.deactivate_cloud.assert_awaited_once()
    orchestrator.remove_broker_credentials.assert_awaited_once()


@pytest.mark.asyncio
async def test_connection_manager_broadcasts_notifications():
    manager = ConnectionManager()
    socket = MagicMock()
    socket.send_text = AsyncMock()
    broken = MagicMock()
    broken.send_text = AsyncMock(side_effect=RuntimeError("gone"))
    manager.active_connections = {socket, broken}

    await manager.notify(UiEvent.TRADING_STATUS, {"masterEnabled": False})

    message = json.loads(socket.send_text.await_args.args[0])
    assert message == {"type": "trading_status", "data": {"masterEnabled": False}}
    assert manager.active_connections == {socket}


@pytest.mark.asyncio
async def test_client_joining_during_broadcast_does_not_abort_it():
    manager = ConnectionManager()
    joined = []

    async def send_and_join(text):
        late = MagicMock()
        late.send_text = AsyncMock()
        joined.append(late)
        manager.active_connections.add(late)

    first = MagicMock()
    first.send_text = AsyncMock(side_effect=send_and_join)
    second = MagicMock()
    second.send_text = AsyncMock(side_effect=send_and_join)
    manager.active_connections = {first, second}

    await manager.notify(UiEvent.PNL_UPDATE, {"accountId": 1})

    first.send_text.assert_awaited_once()
    second.send_text.assert_awaited_once()
    assert manager.active_connections == {first, second, *joined}
    assert len(joined) == 2


def test_snapshot_has_status_and_accounts():
    registry = AccountRegistry()
    registry.initialize_accounts([{"id": 1, "name": "A"}])

    snapshot = build_snapshot(_orchestrator(registry))

    assert snapshot["status"]["accountCount"] == 1
    assert snapshot["accounts"][0]["name"] == "A"

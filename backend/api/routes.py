"""
Agent API Routes

Local endpoints for the desktop UI: connection status, accounts, kill
switches, broker credentials and cloud activation.  No route ever returns
credentials or tokens.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from models.credentials import BrokerCredentials
from utils.errors import (
    AgentError,
    AuthenticationError,
    CloudUnreachableError,
    ConnectivityError,
    RateLimitExceeded,
)
from utils.logger import get_logger, mask_identifier

logger = get_logger("routes")
router = APIRouter()


# ==================== REQUEST MODELS ====================


class ToggleRequest(BaseModel):
    enabled: bool


class BrokerCredentialsRequest(BaseModel):
    username: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1, alias="apiKey")

    model_config = {"populate_by_name": True}


class ActivationRequest(BaseModel):
    activation_token: str = Field(..., min_length=1, alias="activationToken")

    model_config = {"populate_by_name": True}


# ==================== HELPERS ====================


def get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Agent not started")
    return orchestrator


def _error_response(exc: AgentError) -> JSONResponse:
    if isinstance(exc, RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "retryAfter": exc.seconds_until_reset},
            headers={"Retry-After": str(exc.seconds_until_reset)},
        )
    if isinstance(exc, AuthenticationError):
        return JSONResponse(status_code=401, content={"detail": str(exc), "category": exc.category})
    if isinstance(exc, CloudUnreachableError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})
    if isinstance(exc, ConnectivityError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# ==================== STATUS ====================


@router.get("/status")
async def get_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.get_status()


@router.get("/rate-limits")
async def get_rate_limits(orchestrator=Depends(get_orchestrator)):
    return orchestrator.cloud.api.rate_limits.get_status()


# ==================== ACCOUNTS ====================


@router.get("/accounts")
async def list_accounts(orchestrator=Depends(get_orchestrator)):
    accounts = orchestrator.registry.get_all_accounts()
    return {
        "accounts": [a.to_wire() for a in accounts],
        "count": len(accounts),
        "cumulativePnl": orchestrator.registry.cumulative_pnl(),
    }


@router.get("/accounts/{account_id}")
async def get_account(account_id: int, orchestrator=Depends(get_orchestrator)):
    account = orchestrator.registry.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account.to_wire()


# ==================== KILL SWITCHES ====================


@router.get("/trading")
async def get_trading_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.registry.get_trading_status()


@router.post("/trading/master")
async def set_master_kill_switch(body: ToggleRequest, orchestrator=Depends(get_orchestrator)):
    orchestrator.set_master_kill_switch(body.enabled)
    logger.info("Master kill switch set from UI", enabled=body.enabled)
    return orchestrator.registry.get_trading_status()


@router.post("/trading/accounts/{account_id}")
async def set_account_trading(
    account_id: int, body: ToggleRequest, orchestrator=Depends(get_orchestrator)
):
    if not orchestrator.set_account_trading(account_id, body.enabled):
        raise HTTPException(status_code=404, detail="Account not found")
    return orchestrator.registry.get_trading_status()


# ==================== BROKER ====================


@router.post("/broker/credentials")
async def save_broker_credentials(
    body: BrokerCredentialsRequest, orchestrator=Depends(get_orchestrator)
):
    credentials = BrokerCredentials(username=body.username.strip(), api_key=body.api_key.strip())
    logger.info("Saving broker credentials", username=mask_identifier(credentials.username))
    try:
        await orchestrator.save_broker_credentials(credentials)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except AgentError as exc:
        return _error_response(exc)
    return {"status": "connected", "accounts": len(orchestrator.registry)}


@router.delete("/broker/credentials")
async def delete_broker_credentials(orchestrator=Depends(get_orchestrator)):
    await orchestrator.remove_broker_credentials()
    return {"status": "deleted"}


# ==================== CLOUD ====================


@router.post("/cloud/activate")
async def activate_cloud(body: ActivationRequest, orchestrator=Depends(get_orchestrator)):
    try:
        bot_id = await orchestrator.activate_cloud(body.activation_token.strip())
    except AgentError as exc:
        return _error_response(exc)
    return {"status": "activated", "botId": bot_id}


@router.post("/cloud/deactivate")
async def deactivate_cloud(orchestrator=Depends(get_orchestrator)):
    await orchestrator.deactivate_cloud()
    return {"status": "deactivated"}

"""Broker (ProjectX gateway) authentication and account lookup.

Token policy:
    1. Cached token while ``now < expiry``.
    2. Otherwise try ``/api/Auth/validate`` with the existing token.  The
       gateway may or may not hand back a ``newToken``; a successful
       validate without one keeps the current token.
    3. Otherwise full login via ``/api/Auth/loginKey``.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx

from models.credentials import BrokerCredentials
from utils.errors import AuthenticationError, ConnectivityError
from utils.logger import get_logger, mask_identifier

logger = get_logger("broker.auth")

LOGIN_PATH = "/api/Auth/loginKey"
VALIDATE_PATH = "/api/Auth/validate"
ACCOUNT_SEARCH_PATH = "/api/Account/search"


class BrokerAuthSession:
    """Owns the broker token cache for one set of credentials."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_lifetime_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._token_lifetime = float(token_lifetime_seconds)
        self._clock = clock
        self._credentials: Optional[BrokerCredentials] = None
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None

    def initialize(self, credentials: BrokerCredentials) -> None:
        """Store credentials. Raises ``ValueError`` if either field is blank."""
        username = (credentials.username or "").strip() if credentials else ""
        api_key = (credentials.api_key or "").strip() if credentials else ""
        if not username or not api_key:
            raise ValueError("Broker credentials require both username and apiKey")
        self._credentials = BrokerCredentials(username=username, api_key=api_key)
        self.clear_token()
        logger.info("Broker auth initialized", username=mask_identifier(username))

    @property
    def is_initialized(self) -> bool:
        return self._credentials is not None

    @property
    def token_expires_at(self) -> Optional[float]:
        return self._expires_at

    def has_valid_token(self) -> bool:
        return bool(self._token and self._expires_at and self._clock() < self._expires_at)

    def clear_token(self) -> None:
        self._token = None
        self._expires_at = None

    async def get_token(self) -> str:
        """Return a usable token, refreshing or logging in as needed."""
        if self.has_valid_token():
            return self._token  # type: ignore[return-value]

        if self._token:
            refreshed = await self._validate_and_refresh(self._token)
            if refreshed:
                return refreshed

        return await self._login()

    async def _login(self) -> str:
        if self._credentials is None:
            raise AuthenticationError(
                "Broker auth not initialized", AuthenticationError.TOKEN_MISSING
            )

        logger.info(
            "Authenticating with broker",
            username=mask_identifier(self._credentials.username),
        )
        try:
            response = await self._client.post(
                LOGIN_PATH,
                json={
                    "userName": self._credentials.username,
                    "apiKey": self._credentials.api_key,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Broker login failed",
                status=exc.response.status_code,
                detail=exc.response.text[:200],
            )
            raise AuthenticationError(
                f"Broker login rejected (HTTP {exc.response.status_code})",
                AuthenticationError.INVALID_CREDENTIALS,
            ) from exc
        except httpx.TransportError as exc:
            logger.error("Broker login error", error=str(exc))
            raise AuthenticationError(
                f"Cannot reach broker: {exc}", AuthenticationError.NETWORK
            ) from exc
        except ValueError as exc:
            raise AuthenticationError(
                "Malformed broker login response", AuthenticationError.INVALID_CREDENTIALS
            ) from exc

        token = data.get("token") if isinstance(data, dict) else None
        if not token or data.get("success") is False:
            message = (
                data.get("errorMessage") if isinstance(data, dict) else None
            ) or "Token not found in login response"
            logger.error("Broker login rejected", error=message)
            raise AuthenticationError(message, AuthenticationError.INVALID_CREDENTIALS)

        self._set_token(token)
        logger.info("Broker authentication successful")
        return token

    async def _validate_and_refresh(self, token: str) -> Optional[str]:
        """Return a valid token via the validate endpoint, or None to force login."""
        try:
            response = await self._client.post(
                VALIDATE_PATH,
                json={},
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPStatusError, httpx.TransportError, ValueError) as exc:
            logger.warning("Broker token validation error", error=str(exc))
            return None

        if not isinstance(data, dict) or not data.get("success"):
            logger.warning("Broker token validation failed, falling back to login")
            return None

        new_token = data.get("newToken")
        self._set_token(new_token or token)
        logger.info("Broker token refreshed", rotated=bool(new_token))
        return self._token

    def _set_token(self, token: str) -> None:
        self._token = token
        self._expires_at = self._clock() + self._token_lifetime

    async def list_active_accounts(self, token: str) -> list[dict[str, Any]]:
        """Fetch accounts the broker flags as active. Empty is not an error."""
        try:
            response = await self._client.post(
                ACCOUNT_SEARCH_PATH,
                json={"onlyActiveAccounts": True},
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Broker account search failed",
                status=exc.response.status_code,
                detail=exc.response.text[:200],
            )
            if exc.response.status_code in (401, 403):
                raise AuthenticationError(
                    "Broker token rejected", AuthenticationError.INVALID_CREDENTIALS
                ) from exc
            raise ConnectivityError(
                f"Account search failed (HTTP {exc.response.status_code})"
            ) from exc
        except httpx.TransportError as exc:
            logger.error("Broker account search error", error=str(exc))
            raise ConnectivityError(f"Cannot reach broker: {exc}") from exc
        except ValueError as exc:
            raise ConnectivityError("Malformed account search response") from exc

        if isinstance(data, dict) and data.get("success") and data.get("accounts"):
            accounts = [a for a in data["accounts"] if isinstance(a, dict)]
            logger.info("Active accounts found", count=len(accounts))
            return accounts

        logger.warning("No accounts found in response")
        return []

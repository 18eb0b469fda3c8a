"""HTTP calls to the cloud engine: activation, token refresh, telemetry.

Every call passes its client-side rate limiter before any request is
built.  When a certificate fingerprint is configured, each HTTPS connection
is checked against it right after the TLS handshake, before the request
is written.
"""

from __future__ import annotations

from typing import Any, Optional

import httpcore
import httpx

from models.credentials import TokenRefresh
from utils.errors import (
    AgentError,
    AuthenticationError,
    CloudUnreachableError,
    TelemetryNotSentError,
)
from utils.logger import get_logger
from utils.rate_limiter import RateLimiterRegistry
from utils.security import PinnedHTTPTransport, canonical_json, sign_request

logger = get_logger("cloud.client")

ACTIVATE_PATH = "/v1/auth/activate"
REFRESH_PATH = "/v1/auth/refresh"
TELEMETRY_PATH = "/v1/ingest/telemetry"

UNREACHABLE_MESSAGE = "Cannot connect to the cloud engine. Please check your internet connection."


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return default


class CloudApiClient:
    """Thin async client over the cloud engine's REST surface."""

    def __init__(
        self,
        base_url: str,
        rate_limits: RateLimiterRegistry,
        timeout: float = 10.0,
        cert_fingerprint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    ):
        if client is not None and cert_fingerprint:
            raise ValueError("cert_fingerprint cannot be combined with a prebuilt client")
        self._limits = rate_limits
        transport = None
        if cert_fingerprint:
            transport = PinnedHTTPTransport(cert_fingerprint, network_backend=network_backend)
            logger.info("Certificate pinning enabled")
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def rate_limits(self) -> RateLimiterRegistry:
        return self._limits

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    async def activate(self, activation_token: str, device_fingerprint: str) -> dict[str, str]:
        """Exchange a single-use activation token for bot credentials."""
        self._limits.check("activation")
        logger.info("Activating bot with token")

        try:
            response = await self._client.post(
                ACTIVATE_PATH,
                json={"activationToken": activation_token, "deviceFingerprint": device_fingerprint},
            )
        except httpx.TransportError as exc:
            logger.error("Activation failed", error=str(exc))
            raise CloudUnreachableError(UNREACHABLE_MESSAGE) from exc

        if response.status_code == 404:
            logger.error("Activation rejected", status=404)
            raise AuthenticationError(
                "Invalid or expired activation token",
                AuthenticationError.INVALID_ACTIVATION_TOKEN,
            )
        if response.is_error:
            message = _error_message(response, "Activation failed")
            logger.error("Activation failed", status=response.status_code, error=message)
            raise AgentError(message)

        try:
            data = response.json()
        except ValueError as exc:
            raise AgentError("Invalid activation response") from exc
        if not isinstance(data, dict) or not all(
            data.get(key) for key in ("botId", "accessToken", "refreshToken")
        ):
            raise AgentError("Invalid activation response")

        logger.info("Activation successful", bot_id=data["botId"])
        return {
            "botId": str(data["botId"]),
            "accessToken": str(data["accessToken"]),
            "refreshToken": str(data["refreshToken"]),
        }

    async def refresh(self, refresh_token: str) -> TokenRefresh:
        """Get a new access token. The refresh token may or may not rotate."""
        self._limits.check("refresh")
        logger.info("Refreshing access token")

        try:
            response = await self._client.post(REFRESH_PATH, json={"refreshToken": refresh_token})
        except httpx.TransportError as exc:
            logger.error("Token refresh failed", error=str(exc))
            raise CloudUnreachableError(UNREACHABLE_MESSAGE) from exc

        if response.status_code in (401, 403, 404):
            message = _error_message(response, "Refresh token rejected")
            logger.error("Token refresh rejected", status=response.status_code, error=message)
            raise AuthenticationError(message, AuthenticationError.REFRESH_REJECTED)
        if response.is_error:
            message = _error_message(response, "Token refresh failed")
            logger.error("Token refresh failed", status=response.status_code, error=message)
            raise AgentError(message)

        try:
            data = response.json()
        except ValueError as exc:
            raise AgentError("Invalid refresh response") from exc
        if not isinstance(data, dict) or not data.get("accessToken"):
            raise AgentError("Invalid refresh response")

        refreshed = TokenRefresh.from_response(data)
        logger.info("Token refresh successful", refresh_token_rotated=refreshed.refresh_token is not None)
        return refreshed

    async def send_telemetry(
        self,
        accounts: list[dict[str, Any]],
        access_token: Optional[str],
        device_fingerprint: Optional[str],
    ) -> bool:
        """Send a signed account snapshot. Returns True on HTTP 204."""
        if not access_token:
            raise TelemetryNotSentError("Cannot send telemetry without an access token")
        if not device_fingerprint:
            raise TelemetryNotSentError("Cannot send telemetry without a device fingerprint")
        self._limits.check("telemetry")

        signed = sign_request({"accounts": accounts}, access_token)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "X-Device-Fingerprint": device_fingerprint,
            **signed.headers(),
        }
        try:
            response = await self._client.post(
                TELEMETRY_PATH,
                content=canonical_json(signed.payload).encode("utf-8"),
                headers=headers,
            )
        except httpx.TransportError as exc:
            logger.error("Telemetry send failed", error=str(exc))
            return False

        if response.status_code == 204:
            logger.debug("Telemetry sent", accounts=len(accounts))
            return True
        logger.error(
            "Telemetry send failed",
            status=response.status_code,
            detail=response.text[:200],
        )
        return False

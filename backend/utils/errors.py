"""Exception taxonomy for the execution agent.

Authentication, connectivity and rate-limit failures are raised as
exceptions and surfaced to the orchestrator.  Order execution never raises
past its boundary and kill-switch rejections are ordinary results, so
neither has an exception type here.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for all agent-raised errors."""


class AuthenticationError(AgentError):
    """Credentials or tokens were rejected (or are missing)."""

    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_ACTIVATION_TOKEN = "invalid_activation_token"
    REFRESH_REJECTED = "refresh_rejected"
    TOKEN_MISSING = "token_missing"
    NETWORK = "network"  # Could not reach the auth endpoint at all

    def __init__(self, message: str, category: str = INVALID_CREDENTIALS):
        super().__init__(message)
        self.category = category


class CloudUnreachableError(AgentError):
    """The cloud engine could not be reached at the transport level."""


class ConnectivityError(AgentError):
    """A persistent channel failed its handshake or timed out."""


class CertificatePinningError(AgentError):
    """The server certificate did not match the pinned fingerprint."""


class TelemetryNotSentError(AgentError):
    """Local precondition for telemetry failed; nothing was sent."""


class RateLimitExceeded(AgentError):
    """Raised by a client-side limiter before any request is attempted."""

    def __init__(self, name: str, seconds_until_reset: int, message: Optional[str] = None):
        self.name = name
        self.seconds_until_reset = seconds_until_reset
        super().__init__(
            message
            or f"Rate limit exceeded. Try again in {seconds_until_reset} seconds."
        )

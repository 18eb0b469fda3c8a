from .logger import (
    setup_logging,
    get_logger,
    mask_identifier,
)
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimiterRegistry, cloud_rate_limits
from .errors import (
    AgentError,
    AuthenticationError,
    CloudUnreachableError,
    ConnectivityError,
    CertificatePinningError,
    TelemetryNotSentError,
    RateLimitExceeded,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "mask_identifier",

    # Rate Limiter
    "RateLimitConfig",
    "RateLimiter",
    "RateLimiterRegistry",
    "cloud_rate_limits",

    # Errors
    "AgentError",
    "AuthenticationError",
    "CloudUnreachableError",
    "ConnectivityError",
    "CertificatePinningError",
    "TelemetryNotSentError",
    "RateLimitExceeded",
]

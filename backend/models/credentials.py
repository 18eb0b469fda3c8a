from dataclasses import dataclass, field
from typing import Any, Optional

from utils.logger import mask_identifier


@dataclass(frozen=True)
class BrokerCredentials:
    username: str
    api_key: str = field(repr=False)

    def __repr__(self) -> str:
        return f"BrokerCredentials(username={mask_identifier(self.username)!r})"

    def to_dict(self) -> dict[str, str]:
        return {"username": self.username, "apiKey": self.api_key}


@dataclass(frozen=True)
class CloudTokens:
    bot_id: str
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    device_fingerprint: str

    def to_dict(self) -> dict[str, str]:
        return {
            "botId": self.bot_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "deviceFingerprint": self.device_fingerprint,
        }


@dataclass(frozen=True)
class TokenRefresh:
    """Result of a cloud refresh; ``refresh_token`` is set only if rotated."""

    access_token: str
    refresh_token: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenRefresh":
        return cls(
            access_token=str(data["accessToken"]),
            refresh_token=str(data["refreshToken"]) if data.get("refreshToken") else None,
        )

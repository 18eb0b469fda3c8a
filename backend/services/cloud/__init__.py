from services.cloud.channel import ChannelState, CloudChannel
from services.cloud.client import CloudApiClient
from services.cloud.session import CloudSession

__all__ = [
    "ChannelState",
    "CloudApiClient",
    "CloudChannel",
    "CloudSession",
]

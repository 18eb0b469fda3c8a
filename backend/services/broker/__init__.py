from services.broker.auth import BrokerAuthSession
from services.broker.realtime import BrokerRealtimeFeed, ConnectionState
from services.broker.session import BrokerSession, RealBrokerSession
from services.broker.simulator import SimulatedBrokerSession


def create_broker_session(settings, **kwargs) -> BrokerSession:
    """Pick the broker strategy once, from configuration."""
    if settings.BROKER_MODE == "simulated":
        return SimulatedBrokerSession(**kwargs)
    return RealBrokerSession.from_settings(settings, **kwargs)


__all__ = [
    "BrokerAuthSession",
    "BrokerRealtimeFeed",
    "BrokerSession",
    "ConnectionState",
    "RealBrokerSession",
    "SimulatedBrokerSession",
    "create_broker_session",
]

from .client import BrokerClient, Subscription
from .server import Broker

__all__ = ["Broker", "BrokerClient", "Subscription"]

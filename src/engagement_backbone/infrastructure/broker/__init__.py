"""
Broker Module

Provides the shared broker connection (redis.asyncio) and the broadcast channel.
"""

from .broadcast import Broadcaster
from .broker_client import (
    BrokerClient,
    BrokerState,
    close_broker,
    get_broker_client,
    init_broker,
)

__all__ = [
    "BrokerClient",
    "BrokerState",
    "Broadcaster",
    "get_broker_client",
    "init_broker",
    "close_broker",
]

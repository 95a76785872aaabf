"""Chat messaging pipeline: ingress, broker, consumer and WebSocket hub."""

from jobchat.messaging.broker import Broker, BrokerState
from jobchat.messaging.consumer import PersistenceConsumer
from jobchat.messaging.hub import Connection, Hub
from jobchat.messaging.service import MessagingService, MonotonicClock

__all__ = [
    "Broker",
    "BrokerState",
    "Connection",
    "Hub",
    "MessagingService",
    "MonotonicClock",
    "PersistenceConsumer",
]

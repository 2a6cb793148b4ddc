"""
Core Module
===========
Infrastructure shared by every wallet context:
- Transport: relay messages and the in-process message bus
- Correlation: one-shot correlated calls with deadlines
- Events: in-process pub/sub for progress and activity
- Persistence: durable key/value request store
"""

from .transport import (
    BACKGROUND,
    POPUP,
    EXECUTOR,
    Endpoint,
    EndpointKind,
    Message,
    MessageBus,
    MessageType,
    TransportError,
)
from .correlation import PendingCalls
from .events import EventBus
from .persistence import DurableRequestStore, StoreNotInitialized

__all__ = [
    # Transport
    "BACKGROUND",
    "POPUP",
    "EXECUTOR",
    "Endpoint",
    "EndpointKind",
    "Message",
    "MessageBus",
    "MessageType",
    "TransportError",
    # Correlation
    "PendingCalls",
    "EventBus",
    # Persistence
    "DurableRequestStore",
    "StoreNotInitialized",
]

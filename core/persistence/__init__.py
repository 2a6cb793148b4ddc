"""
Persistence Module
==================

[PERSISTENCE] Durable key/value storage shared by the wallet contexts:
- DurableRequestStore: pending request slots, saved credentials, lock flag
"""

from .request_store import DurableRequestStore, StoreNotInitialized

__all__ = [
    "DurableRequestStore",
    "StoreNotInitialized",
]

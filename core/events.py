"""
In-process notifications for observers of the orchestrator (the demo
runner, the activity log, tests). Nothing here crosses the relay.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# Event names
REQUEST_STATE = "request_state"        # {requestClass, requestId, status}
REQUEST_REMOVED = "request_removed"    # {requestClass, requestId, status}
PROOF_PROGRESS = "proof_progress"      # {status, requestId, error?}
ACTIVITY_LOG = "activity_log"          # {level, message}

Listener = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Async fan-out of named events. Listeners may be sync or async."""

    def __init__(self):
        self._subscribers: Dict[str, List[Listener]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, event_name: str, callback: Listener) -> None:
        async with self._lock:
            self._subscribers.setdefault(event_name, []).append(callback)

    async def unsubscribe(self, event_name: str, callback: Listener) -> None:
        async with self._lock:
            listeners = self._subscribers.get(event_name)
            if listeners:
                self._subscribers[event_name] = [cb for cb in listeners if cb != callback]

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def broadcast(self, event_name: str, payload: Dict[str, Any]) -> int:
        """Deliver ``payload`` to every listener in subscription order. Returns how many succeeded."""
        async with self._lock:
            callbacks = list(self._subscribers.get(event_name, []))

        delivered = 0
        for cb in callbacks:
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                # one failing listener must not starve the others
                logger.warning("[EVENTS] Listener for %s failed: %s", event_name, e)
        return delivered

    async def next(self, event_name: str, predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Wait for the next ``event_name`` whose payload satisfies ``predicate``.

        Raises:
            asyncio.TimeoutError: nothing matched within ``timeout``
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _listener(payload: Dict[str, Any]) -> None:
            if not future.done() and (predicate is None or predicate(payload)):
                future.set_result(payload)

        await self.subscribe(event_name, _listener)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            await self.unsubscribe(event_name, _listener)

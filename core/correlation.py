"""
Correlated Calls - one-shot request/response table
==================================================

[PROTOCOL] Every cross-context wait (human decision, executor round trip)
goes through one primitive:

1. ``create()`` registers an entry keyed by a generated correlation id and
   arms its deadline timer.
2. The first of ``resolve()`` / ``reject()`` / deadline expiry wins.
3. The winner removes the entry and cancels the timer before it touches the
   future, so the loser always finds nothing and becomes a no-op.

[USAGE]
    calls = PendingCalls()
    call_id = calls.create(timeout=30.0, on_timeout=lambda: DecisionTimeout())
    ...
    calls.resolve(call_id, {"approved": True})   # from a message handler
    ...
    result = await calls.wait(call_id)
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Call:
    call_id: str
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    tag: str = ""


class PendingCalls:
    """Pending-call table: each entry settles exactly once."""

    def __init__(self):
        self._calls: Dict[str, _Call] = {}
        # Settled futures stay here until their waiter collects them
        self._futures: Dict[str, asyncio.Future] = {}

    def create(
        self,
        timeout: Optional[float] = None,
        on_timeout: Optional[Callable[[], BaseException]] = None,
        tag: str = "",
        call_id: Optional[str] = None,
    ) -> str:
        """
        Register a new pending call.

        Args:
            timeout: Seconds until the call is rejected automatically (None = never)
            on_timeout: Factory for the exception set on expiry (default: asyncio.TimeoutError)
            tag: Free-form label used in logs
            call_id: Explicit id (default: random hex)

        Returns:
            Correlation id
        """
        loop = asyncio.get_running_loop()
        call_id = call_id or secrets.token_hex(8)
        if call_id in self._calls:
            raise ValueError(f"Duplicate correlation id: {call_id}")

        call = _Call(call_id=call_id, future=loop.create_future(), tag=tag)
        if timeout is not None:
            call.timer = loop.call_later(timeout, self._expire, call_id, on_timeout)
        self._calls[call_id] = call
        self._futures[call_id] = call.future
        return call_id

    def _take(self, call_id: str) -> Optional[_Call]:
        call = self._calls.pop(call_id, None)
        if call is None:
            return None
        if call.timer is not None:
            call.timer.cancel()
            call.timer = None
        return call

    def _expire(self, call_id: str, on_timeout: Optional[Callable[[], BaseException]]) -> None:
        call = self._take(call_id)
        if call is None or call.future.done():
            return
        exc = on_timeout() if on_timeout else asyncio.TimeoutError()
        logger.debug("[CALLS] %s %s expired", call.tag or "call", call_id)
        call.future.set_exception(exc)

    def resolve(self, call_id: str, value: Any) -> bool:
        """Settle a call with a value. Returns False if it already settled."""
        call = self._take(call_id)
        if call is None or call.future.done():
            return False
        call.future.set_result(value)
        return True

    def reject(self, call_id: str, exc: BaseException) -> bool:
        """Settle a call with an exception. Returns False if it already settled."""
        call = self._take(call_id)
        if call is None or call.future.done():
            return False
        call.future.set_exception(exc)
        return True

    def cancel(self, call_id: str) -> bool:
        call = self._take(call_id)
        if call is None or call.future.done():
            return False
        call.future.cancel()
        return True

    async def wait(self, call_id: str) -> Any:
        """Await the outcome of a call registered with ``create()``."""
        future = self._futures.get(call_id)
        if future is None:
            raise KeyError(f"Unknown call: {call_id}")
        try:
            return await future
        finally:
            self._futures.pop(call_id, None)

    def is_pending(self, call_id: Optional[str]) -> bool:
        return call_id is not None and call_id in self._calls

    def reject_all(self, make_exc: Callable[[], BaseException]) -> int:
        """Settle every pending call with a fresh exception. Waiters still collect their outcome."""
        settled = 0
        for call_id in list(self._calls):
            if self.reject(call_id, make_exc()):
                settled += 1
        return settled

    def __len__(self) -> int:
        return len(self._calls)

"""
Idle auto-lock.

The wallet locks itself after ``idle_lock`` seconds without user activity:
the lock flag is persisted and every page and extension context is told.
"""

import asyncio
import logging
from typing import Optional, Set

from config import WALLET_LOCKED_KEY
from core.persistence import DurableRequestStore
from core.transport import BACKGROUND, Message, MessageBus, MessageType

logger = logging.getLogger(__name__)


class AutoLock:
    def __init__(self, store: DurableRequestStore, bus: MessageBus, idle_timeout: float = 300.0):
        self.store = store
        self.bus = bus
        self.idle_timeout = idle_timeout
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def armed(self) -> bool:
        return self._timer is not None

    async def start(self) -> None:
        """Arm the timer unless the wallet is already locked."""
        if not await self.store.get(WALLET_LOCKED_KEY, False):
            self.reset()

    def reset(self) -> None:
        """Restart the idle countdown (user activity, unlock)."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.idle_timeout, self._expire)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.lock())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def lock(self) -> None:
        self.cancel()
        await self.store.set(WALLET_LOCKED_KEY, True)
        message = Message(MessageType.WALLET_LOCKED, {}, sender=BACKGROUND)
        tabs = await self.bus.send_to_tabs(message)
        await self.bus.broadcast(message)
        logger.info(f"[LOCK] Wallet locked after inactivity, notified {tabs} tab(s)")

    async def unlocked(self) -> None:
        await self.store.set(WALLET_LOCKED_KEY, False)
        self.reset()

    async def locked_by_user(self) -> None:
        self.cancel()
        await self.store.set(WALLET_LOCKED_KEY, True)

    async def stop(self) -> None:
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

import asyncio
import logging
from typing import Deque, Optional

from core.events import ACTIVITY_LOG, EventBus


COLOR_MAP = {
    "ORCH": "purple",
    "PROOF": "cyan",
    "SURFACE": "orange",
    "EXECUTOR": "gold",
    "VC": "green",
    "LOCK": "red",
}


def colorize(msg: str) -> str:
    for key, color in COLOR_MAP.items():
        if f"[{key}]" in msg:
            return f"<span style='color:{color}'>{msg}</span>"
    return msg


class UIStreamHandler(logging.Handler):
    """Logging handler that pushes activity lines to the approval UI via the event bus."""

    def __init__(self, buffer: Deque[str], event_bus: Optional[EventBus] = None):
        super().__init__()
        self.buffer = buffer
        self.event_bus = event_bus

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            html = colorize(msg)
            self.buffer.append(html)
            if self.event_bus is None:
                return
            payload = {"message": html, "level": record.levelname}
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop: skip broadcasting to avoid unawaited coroutine warnings.
                return
            loop.create_task(self.event_bus.broadcast(ACTIVITY_LOG, payload))
        except Exception:
            self.handleError(record)

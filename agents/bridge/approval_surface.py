"""
Approval Surface Proxy
======================
The orchestrator's handle on the human-facing approval UI.

Two duties only:
1. make the UI visible for a pending request (``show``), confirming it
   actually appeared;
2. normalize the human's decision message into a ``Decision``.

Rendering belongs to the UI context itself and is not modeled here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.transport import BACKGROUND, POPUP, Message, MessageBus, MessageType, TransportError
from wallet.errors import SurfaceUnavailable

if TYPE_CHECKING:
    from wallet.requests import PendingRequest

logger = logging.getLogger(__name__)


class DecisionStatus(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Decision:
    """A human answer to one pending request."""

    status: DecisionStatus
    address: Optional[str] = None
    error: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == DecisionStatus.APPROVED

    @classmethod
    def from_message(cls, message: Message) -> "Decision":
        # Address responses report the outcome as ``success``, the rest as ``approved``
        if message.type == MessageType.ADDRESS_REQUEST_RESPONSE:
            approved = bool(message.get("success"))
        else:
            approved = bool(message.get("approved"))
        return cls(
            status=DecisionStatus.APPROVED if approved else DecisionStatus.REJECTED,
            address=message.get("address"),
            error=message.get("error"),
            request_id=message.get("requestId"),
        )


class ApprovalSurface(ABC):
    """Contract the orchestrator uses to surface the approval UI."""

    @abstractmethod
    async def show(self, record: "PendingRequest") -> None:
        """
        Make the UI visible for ``record``.

        Raises:
            SurfaceUnavailable: the UI could not be shown
        """

    @abstractmethod
    def is_visible(self) -> bool:
        """Return True if the UI confirmed visibility most recently."""


class BusApprovalSurface(ApprovalSurface):
    """
    Opens the popup context over the relay.

    The popup must answer ``OPEN_APPROVAL_SURFACE`` with ``{"visible": true}``
    within ``timeout`` seconds.
    """

    def __init__(self, bus: MessageBus, target: str = POPUP, timeout: float = 5.0):
        self.bus = bus
        self.target = target
        self.timeout = float(timeout)
        self._visible = False

    def _open_message(self, record: Optional["PendingRequest"]) -> Message:
        payload: Dict[str, Any] = {}
        if record is not None:
            payload = {"requestClass": record.request_class.value, "requestId": record.request_id}
        return Message(MessageType.OPEN_APPROVAL_SURFACE, payload, sender=BACKGROUND)

    async def show(self, record: Optional["PendingRequest"]) -> None:
        try:
            reply = await self.bus.request(self.target, self._open_message(record), timeout=self.timeout)
        except TransportError as e:
            self._visible = False
            logger.warning("[SURFACE] Could not open %s: %s", self.target, e)
            raise SurfaceUnavailable(details=str(e)) from e

        if not reply or not reply.get("visible"):
            self._visible = False
            logger.warning("[SURFACE] %s refused to show", self.target)
            raise SurfaceUnavailable(details=reply)

        self._visible = True
        logger.debug("[SURFACE] %s visible", self.target)

    def is_visible(self) -> bool:
        return self._visible and self.bus.is_attached(self.target)

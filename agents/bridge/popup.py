"""
Approval popup context.

Stands in for the human-facing UI: it answers ``OPEN_APPROVAL_SURFACE``,
reads the pending record from the durable store like the real popup does,
and sends the human's decision back to the background.

Who the "human" is gets decided by a policy callable:

    popup = ApprovalPopup(bus, store, account, policy=approve_all)
    popup = ApprovalPopup(bus, store, account, policy=lambda record: None)   # never answers
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from eth_account import Account
from eth_account.signers.local import LocalAccount

from core.persistence import DurableRequestStore
from core.transport import (
    BACKGROUND,
    POPUP,
    Endpoint,
    EndpointKind,
    Message,
    MessageBus,
    MessageType,
    TransportError,
)
from wallet.requests import PendingRequest, PendingRequestSlots, RequestClass, RequestStatus

logger = logging.getLogger(__name__)

# Returns True (approve), False (reject) or None (leave unanswered)
Policy = Callable[[PendingRequest], Optional[bool]]


def approve_all(record: PendingRequest) -> Optional[bool]:
    return True


def reject_all(record: PendingRequest) -> Optional[bool]:
    return False


def ignore_all(record: PendingRequest) -> Optional[bool]:
    return None


def decision_type_for(record: PendingRequest) -> MessageType:
    if record.request_class is RequestClass.ADDRESS:
        return MessageType.ADDRESS_REQUEST_RESPONSE
    if record.request_class is RequestClass.VC_ISSUANCE:
        return MessageType.VC_ISSUANCE_RESPONSE
    if record.request_class is RequestClass.VC_SAVE:
        return MessageType.VC_SAVE_RESPONSE
    if record.needs_address:
        return MessageType.PROOF_WITH_ADDRESS_RESPONSE
    return MessageType.PROOF_SUBMISSION_RESPONSE


class ApprovalPopup:
    """Extension context named ``popup``."""

    def __init__(
        self,
        bus: MessageBus,
        store: DurableRequestStore,
        account: Optional[LocalAccount] = None,
        policy: Optional[Policy] = None,
        name: str = POPUP,
        think_time: float = 0.0,
        render_poll: float = 0.01,
        render_attempts: int = 100,
    ):
        self.bus = bus
        self.slots = PendingRequestSlots(store)
        self.account = account or Account.create()
        self.policy = policy or approve_all
        self.name = name
        self.think_time = think_time
        self.render_poll = render_poll
        self.render_attempts = render_attempts

        # False makes the popup refuse to show (window could not be created)
        self.available = True

        self.shown: List[str] = []
        self.progress: List[Dict[str, Any]] = []
        self.notifications: List[Message] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def address(self) -> str:
        return self.account.address

    def attach(self) -> None:
        self.bus.attach(Endpoint(self.name, EndpointKind.EXTENSION, self.handle))

    async def close(self) -> None:
        self.bus.detach(self.name)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def handle(self, message: Message) -> Optional[Dict[str, Any]]:
        if message.type == MessageType.OPEN_APPROVAL_SURFACE:
            return self._open(message)
        if message.type == MessageType.PROOF_PROGRESS:
            self.progress.append(dict(message.payload))
        elif message.type in (MessageType.VC_SAVED, MessageType.SBT_SAVED, MessageType.WALLET_LOCKED):
            self.notifications.append(message)
        return None

    def _open(self, message: Message) -> Dict[str, Any]:
        if not self.available:
            return {"visible": False}

        request_class = message.get("requestClass")
        request_id = message.get("requestId")
        if request_class and request_id:
            self.shown.append(request_id)
            task = asyncio.get_running_loop().create_task(
                self._decide(RequestClass(request_class), request_id)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return {"visible": True}

    async def _rendered(self, request_class: RequestClass, request_id: str) -> Optional[PendingRequest]:
        """Wait until the record is in the store and ready for a decision."""
        for _ in range(self.render_attempts):
            record = await self.slots.get(request_class)
            if record is None or record.request_id != request_id:
                return None
            if record.status is RequestStatus.AWAITING_DECISION:
                return record
            await asyncio.sleep(self.render_poll)
        return None

    async def _decide(self, request_class: RequestClass, request_id: str) -> None:
        record = await self._rendered(request_class, request_id)
        if record is None:
            return
        if self.think_time:
            await asyncio.sleep(self.think_time)

        verdict = self.policy(record)
        if verdict is None:
            logger.debug(f"[SURFACE] Leaving {request_id} unanswered")
            return
        await self.respond(record, verdict)

    async def respond(
        self,
        record: PendingRequest,
        approved: bool,
        error: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Send the decision for ``record`` to the background."""
        msg_type = decision_type_for(record)
        payload: Dict[str, Any] = {"requestId": record.request_id}
        if msg_type == MessageType.ADDRESS_REQUEST_RESPONSE:
            payload["success"] = approved
            payload["address"] = self.address if approved else None
        else:
            payload["approved"] = approved
            if record.needs_address:
                payload["address"] = self.address if approved else None
        if error is not None:
            payload["error"] = error
        elif not approved:
            payload["error"] = "User rejected"

        try:
            return await self.bus.request(BACKGROUND, Message(msg_type, payload, sender=self.name))
        except TransportError as e:
            logger.warning(f"[SURFACE] Decision for {record.request_id} not delivered: {e}")
            return None

    async def approve(self, request_class: RequestClass) -> Optional[Dict[str, Any]]:
        record = await self.slots.get(request_class)
        if record is None:
            return None
        return await self.respond(record, True)

    async def reject(self, request_class: RequestClass, error: str = "User rejected") -> Optional[Dict[str, Any]]:
        record = await self.slots.get(request_class)
        if record is None:
            return None
        return await self.respond(record, False, error)

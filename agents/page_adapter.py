"""
Page Adapter
============
Content-script side of the wallet: bridges a web page's same-window
messages to the relay.

Every page request gets exactly one response posted back to the window,
including when the background is unreachable. Nothing raises into the page.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from core.transport import (
    BACKGROUND,
    Endpoint,
    EndpointKind,
    Message,
    MessageBus,
    MessageType,
    TransportError,
)

logger = logging.getLogger(__name__)

EXTENSION_DETECTED = "DID_WALLET_EXTENSION_DETECTED"
PING = "DID_WALLET_PING"
PROOF_COMPLETED = "DID_WALLET_PROOF_COMPLETED"
SHUTTING_DOWN = "Wallet shutting down"

# page request -> (relay request, page response or None for fire-and-forget, failure shape)
ROUTES: Dict[str, Tuple[MessageType, Optional[str], Dict[str, Any]]] = {
    "DID_WALLET_REQUEST_ADDRESS": (
        MessageType.REQUEST_WALLET_ADDRESS,
        "DID_WALLET_ADDRESS_RESPONSE",
        {"success": False, "address": None},
    ),
    "DID_WALLET_REQUEST_VC_ISSUANCE": (
        MessageType.REQUEST_VC_ISSUANCE,
        "DID_WALLET_VC_ISSUANCE_RESPONSE",
        {"approved": False},
    ),
    "DID_WALLET_SAVE_VC": (
        MessageType.SAVE_VC,
        "DID_WALLET_VC_SAVE_RESPONSE",
        {"success": False},
    ),
    "DID_WALLET_REQUEST_PROOF": (
        MessageType.REQUEST_PROOF_SUBMISSION,
        "DID_WALLET_PROOF_RESPONSE",
        {"success": False, "approved": False},
    ),
    "DID_WALLET_REQUEST_PROOF_WITH_ADDRESS": (
        MessageType.REQUEST_PROOF_WITH_ADDRESS,
        "DID_WALLET_PROOF_WITH_ADDRESS_RESPONSE",
        {"success": False, "approved": False, "address": None},
    ),
    "DID_WALLET_SAVE_SBT": (
        MessageType.SAVE_SBT,
        "DID_WALLET_SBT_SAVE_RESPONSE",
        {"success": False},
    ),
    "DID_WALLET_PROOF_WITH_ADDRESS_SBT": (MessageType.UPDATE_PROOF_REQUEST_SBT, None, {}),
    "DID_WALLET_PREPARE_PROOF_INTENT": (MessageType.PREPARE_PROOF_POPUP, None, {}),
}


class PageWindow:
    """The page side of ``window.postMessage``: collects what the adapter posts."""

    def __init__(self, origin: str):
        self.origin = origin
        self.posted: List[Dict[str, Any]] = []
        self._arrived = asyncio.Condition()

    async def post_message(self, data: Dict[str, Any]) -> None:
        async with self._arrived:
            self.posted.append(dict(data))
            self._arrived.notify_all()

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.posted if m.get("type") == msg_type]

    async def wait_for(self, msg_type: str, timeout: float = 5.0) -> Dict[str, Any]:
        """Return the first posted message of ``msg_type``, waiting if needed."""
        async def _wait():
            async with self._arrived:
                await self._arrived.wait_for(lambda: bool(self.of_type(msg_type)))
                return self.of_type(msg_type)[0]
        return await asyncio.wait_for(_wait(), timeout)


class PageAdapter:
    """One per open page; attached to the relay as a tab endpoint."""

    def __init__(
        self,
        bus: MessageBus,
        window: PageWindow,
        name: Optional[str] = None,
        request_timeout: Optional[float] = None,
    ):
        self.bus = bus
        self.window = window
        self.name = name or f"tab:{window.origin}"
        self.request_timeout = request_timeout

    async def attach(self) -> None:
        self.bus.attach(Endpoint(self.name, EndpointKind.TAB, self._on_relay, origin=self.window.origin))
        await self.window.post_message({"type": EXTENSION_DETECTED})

    def detach(self) -> None:
        self.bus.detach(self.name)

    async def _on_relay(self, message: Message) -> None:
        """Unsolicited notifications from the background."""
        if message.type == MessageType.PROOF_TRANSACTION_COMPLETED:
            await self.window.post_message({
                "type": PROOF_COMPLETED,
                "success": message.get("success", False),
                "txHash": message.get("txHash"),
                "blockNumber": message.get("blockNumber"),
                "error": message.get("error"),
            })
        elif message.type == MessageType.WALLET_LOCKED:
            await self.window.post_message({"type": "DID_WALLET_LOCKED"})
        return None

    async def receive(self, data: Dict[str, Any]) -> None:
        """Handle one message the page posted to its own window."""
        page_type = data.get("type")
        if page_type == PING:
            await self.window.post_message({"type": EXTENSION_DETECTED})
            return

        route = ROUTES.get(page_type)
        if route is None:
            return
        relay_type, response_type, failure = route

        payload = {k: v for k, v in data.items() if k != "type"}
        payload["origin"] = self.window.origin
        message = Message(relay_type, payload, sender=self.name)

        try:
            reply = await self.bus.request(BACKGROUND, message, timeout=self.request_timeout)
        except TransportError as e:
            logger.warning(f"[PAGE] {page_type} from {self.window.origin} failed: {e}")
            if response_type is not None:
                await self.window.post_message({"type": response_type, **failure, "error": str(e)})
            return
        except asyncio.CancelledError:
            logger.warning(f"[PAGE] {page_type} from {self.window.origin} cancelled")
            if response_type is not None:
                await self.window.post_message({"type": response_type, **failure, "error": SHUTTING_DOWN})
            raise

        if response_type is None:
            return
        response = dict(reply) if reply else {**failure, "error": "No response from wallet"}
        response["type"] = response_type
        if "requestId" in data:
            response["requestId"] = data["requestId"]
        await self.window.post_message(response)

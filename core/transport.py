"""
Transport Layer - relay between isolated execution contexts
===========================================================

[CONTEXTS] The wallet runs as several isolated contexts that share nothing
but this bus:
- background: the orchestrator (single endpoint named ``background``)
- extension: approval popup, executor and other extension pages
- tab: one page adapter per open page, tagged with the page origin

[DELIVERY]
- ``request()``     point-to-point, returns the handler's reply
- ``broadcast()``   every extension endpoint except the sender, best effort
- ``send_to_tabs()`` every tab endpoint whose origin matches, best effort

The relay is stateless: it never stores messages and never retries.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Well-known endpoint names
BACKGROUND = "background"
POPUP = "popup"
EXECUTOR = "executor"


class TransportError(Exception):
    """Message could not be delivered (no receiver, receiver failed, or timed out)."""


class MessageType(Enum):
    """Relay message types (extension-internal wire names)."""

    # Page -> background requests
    REQUEST_WALLET_ADDRESS = auto()
    REQUEST_VC_ISSUANCE = auto()
    SAVE_VC = auto()
    DID_WALLET_SAVE_VC = auto()         # legacy alias of SAVE_VC
    SAVE_VC_DIRECT = auto()
    DELETE_VC = auto()
    REQUEST_PROOF_SUBMISSION = auto()
    REQUEST_PROOF_WITH_ADDRESS = auto()
    UPDATE_PROOF_REQUEST_SBT = auto()
    PREPARE_PROOF_POPUP = auto()
    SAVE_SBT = auto()

    # Lock state
    USER_ACTIVITY = auto()
    WALLET_UNLOCKED = auto()
    WALLET_LOCKED = auto()

    # Background -> approval surface
    OPEN_APPROVAL_SURFACE = auto()

    # Approval surface -> background (human decisions)
    ADDRESS_REQUEST_RESPONSE = auto()
    VC_ISSUANCE_RESPONSE = auto()
    VC_SAVE_RESPONSE = auto()
    PROOF_SUBMISSION_RESPONSE = auto()
    PROOF_WITH_ADDRESS_RESPONSE = auto()

    # Background <-> executor
    SEND_PROOF_TX = auto()
    PROOF_TX_RESPONSE = auto()

    # Notifications
    PROOF_PROGRESS = auto()
    PROOF_TRANSACTION_COMPLETED = auto()
    VC_SAVED = auto()
    SBT_SAVED = auto()


@dataclass
class Message:
    """
    Relay message.

    - type: discriminator
    - payload: class-specific fields
    - sender: endpoint name of the originating context
    - timestamp: creation time
    - correlation_id: set on messages that answer a correlated call
    """

    type: MessageType
    payload: Dict[str, Any] = field(default_factory=dict)
    sender: str = ""
    timestamp: float = field(default_factory=time.time)
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Flat wire shape: ``{"type": NAME, **payload}``."""
        data = dict(self.payload)
        data["type"] = self.type.name
        if self.correlation_id is not None:
            data["correlationId"] = self.correlation_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], sender: str = "") -> "Message":
        payload = {k: v for k, v in data.items() if k not in ("type", "correlationId")}
        try:
            msg_type = MessageType[data["type"]]
        except KeyError as e:
            raise TransportError(f"Unknown message type: {data.get('type')!r}") from e
        return cls(
            type=msg_type,
            payload=payload,
            sender=sender,
            correlation_id=data.get("correlationId"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, json_str: str, sender: str = "") -> "Message":
        return cls.from_dict(json.loads(json_str), sender=sender)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


class EndpointKind(Enum):
    BACKGROUND = "background"
    EXTENSION = "extension"
    TAB = "tab"


Handler = Callable[[Message], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class Endpoint:
    """A context attached to the bus."""

    name: str
    kind: EndpointKind
    handler: Handler
    origin: Optional[str] = None


class MessageBus:
    """
    In-process relay.

    [USAGE]
        bus = MessageBus()
        bus.attach(Endpoint("background", EndpointKind.BACKGROUND, orchestrator.handle))
        reply = await bus.request("background", Message(MessageType.REQUEST_WALLET_ADDRESS, {...}))
    """

    def __init__(self):
        self._endpoints: Dict[str, Endpoint] = {}

    def attach(self, endpoint: Endpoint) -> None:
        if endpoint.name in self._endpoints:
            logger.warning("[BUS] Replacing endpoint %s", endpoint.name)
        self._endpoints[endpoint.name] = endpoint
        logger.debug("[BUS] Attached %s (%s)", endpoint.name, endpoint.kind.value)

    def detach(self, name: str) -> None:
        if self._endpoints.pop(name, None) is not None:
            logger.debug("[BUS] Detached %s", name)

    def is_attached(self, name: str) -> bool:
        return name in self._endpoints

    def endpoints(self, kind: Optional[EndpointKind] = None) -> List[Endpoint]:
        return [e for e in self._endpoints.values() if kind is None or e.kind == kind]

    async def request(
        self,
        target: str,
        message: Message,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Deliver to one endpoint and return its reply.

        Raises:
            TransportError: no such endpoint, handler raised, or timeout
        """
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            raise TransportError(f"Receiving end does not exist: {target}")

        try:
            if timeout is not None:
                return await asyncio.wait_for(endpoint.handler(message), timeout)
            return await endpoint.handler(message)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{target} did not reply within {timeout}s") from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"{target} failed: {e}") from e

    async def _deliver_all(self, endpoints: List[Endpoint], message: Message) -> int:
        delivered = 0
        for endpoint in endpoints:
            try:
                await endpoint.handler(message)
                delivered += 1
            except Exception as e:
                logger.warning("[BUS] %s -> %s failed: %s", message.type.name, endpoint.name, e)
        return delivered

    async def broadcast(self, message: Message) -> int:
        """Send to every extension context except the sender. Returns delivery count."""
        targets = [
            e for e in self._endpoints.values()
            if e.kind == EndpointKind.EXTENSION and e.name != message.sender
        ]
        return await self._deliver_all(targets, message)

    async def send_to_tabs(self, message: Message, origin: Optional[str] = None) -> int:
        """Send to page contexts, optionally only those whose origin matches."""
        targets = [
            e for e in self._endpoints.values()
            if e.kind == EndpointKind.TAB and (origin is None or _origin_matches(e.origin, origin))
        ]
        return await self._deliver_all(targets, message)


def _origin_matches(tab_origin: Optional[str], origin: str) -> bool:
    """Same rule as an ``<origin>/*`` URL pattern."""
    if not tab_origin:
        return False
    return tab_origin.rstrip("/") == origin.rstrip("/")

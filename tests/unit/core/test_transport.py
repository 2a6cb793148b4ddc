"""
Transport Layer Unit Tests
==========================

[CRITICAL] The relay is the only path between contexts: message shape,
delivery rules and failure reporting are covered here.
"""

import asyncio
import json

import pytest

from core.transport import (
    BACKGROUND,
    Endpoint,
    EndpointKind,
    Message,
    MessageBus,
    MessageType,
    TransportError,
)


# ============================================================================
# Message Tests
# ============================================================================

class TestMessageType:
    """Test MessageType enum."""

    def test_all_message_types_exist(self):
        """Verify the relay vocabulary the contexts rely on."""
        expected = [
            "REQUEST_WALLET_ADDRESS", "REQUEST_VC_ISSUANCE", "SAVE_VC", "DID_WALLET_SAVE_VC",
            "SAVE_VC_DIRECT", "DELETE_VC", "REQUEST_PROOF_SUBMISSION", "REQUEST_PROOF_WITH_ADDRESS",
            "UPDATE_PROOF_REQUEST_SBT", "PREPARE_PROOF_POPUP", "SAVE_SBT",
            "ADDRESS_REQUEST_RESPONSE", "VC_ISSUANCE_RESPONSE", "VC_SAVE_RESPONSE",
            "PROOF_SUBMISSION_RESPONSE", "PROOF_WITH_ADDRESS_RESPONSE",
            "SEND_PROOF_TX", "PROOF_TX_RESPONSE", "PROOF_PROGRESS", "PROOF_TRANSACTION_COMPLETED",
        ]

        for name in expected:
            assert hasattr(MessageType, name), f"Missing MessageType.{name}"


class TestMessage:
    """Test Message dataclass."""

    def test_create_message(self):
        msg = Message(MessageType.REQUEST_WALLET_ADDRESS, {"origin": "https://a.example"}, sender="tab:a")

        assert msg.type == MessageType.REQUEST_WALLET_ADDRESS
        assert msg.get("origin") == "https://a.example"
        assert msg.get("missing", 7) == 7
        assert msg.timestamp > 0
        assert msg.correlation_id is None

    def test_flat_wire_shape(self):
        """Payload fields sit next to ``type`` on the wire."""
        msg = Message(MessageType.PROOF_TX_RESPONSE, {"success": True, "txHash": "0x01"}, correlation_id="c1")

        data = msg.to_dict()

        assert data == {"type": "PROOF_TX_RESPONSE", "success": True, "txHash": "0x01", "correlationId": "c1"}

    def test_from_dict(self):
        msg = Message.from_dict({"type": "SAVE_VC", "vc": {"id": "x"}, "correlationId": "c2"}, sender="tab")

        assert msg.type == MessageType.SAVE_VC
        assert msg.payload == {"vc": {"id": "x"}}
        assert msg.correlation_id == "c2"
        assert msg.sender == "tab"

    def test_json_roundtrip(self):
        msg = Message(MessageType.DELETE_VC, {"vcId": "urn:1"})

        restored = Message.from_json(msg.to_json())

        assert json.loads(msg.to_json())["type"] == "DELETE_VC"
        assert restored.type == msg.type
        assert restored.payload == msg.payload

    def test_unknown_type_rejected(self):
        with pytest.raises(TransportError):
            Message.from_dict({"type": "NOT_A_TYPE"})


# ============================================================================
# MessageBus Tests
# ============================================================================

def _recorder(received, reply=None):
    async def handler(message):
        received.append(message)
        return reply
    return handler


class TestMessageBus:
    """Test point-to-point and fan-out delivery."""

    @pytest.mark.asyncio
    async def test_request_returns_reply(self, bus):
        received = []
        bus.attach(Endpoint(BACKGROUND, EndpointKind.BACKGROUND, _recorder(received, {"ok": True})))

        reply = await bus.request(BACKGROUND, Message(MessageType.USER_ACTIVITY))

        assert reply == {"ok": True}
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_request_missing_endpoint(self, bus):
        with pytest.raises(TransportError, match="does not exist"):
            await bus.request("popup", Message(MessageType.OPEN_APPROVAL_SURFACE))

    @pytest.mark.asyncio
    async def test_request_handler_failure(self, bus):
        async def broken(message):
            raise RuntimeError("boom")

        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, broken))

        with pytest.raises(TransportError, match="boom"):
            await bus.request("popup", Message(MessageType.OPEN_APPROVAL_SURFACE))

    @pytest.mark.asyncio
    async def test_request_timeout(self, bus):
        async def slow(message):
            await asyncio.sleep(1)

        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, slow))

        with pytest.raises(TransportError, match="did not reply"):
            await bus.request("popup", Message(MessageType.OPEN_APPROVAL_SURFACE), timeout=0.05)

    @pytest.mark.asyncio
    async def test_detach(self, bus):
        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, _recorder([])))
        bus.detach("popup")

        assert not bus.is_attached("popup")
        assert bus.endpoints() == []

    @pytest.mark.asyncio
    async def test_broadcast_skips_sender_and_tabs(self, bus):
        popup, executor, tab = [], [], []
        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, _recorder(popup)))
        bus.attach(Endpoint("executor", EndpointKind.EXTENSION, _recorder(executor)))
        bus.attach(Endpoint("tab:a", EndpointKind.TAB, _recorder(tab), origin="https://a.example"))

        delivered = await bus.broadcast(Message(MessageType.PROOF_PROGRESS, {"status": "x"}, sender="executor"))

        assert delivered == 1
        assert len(popup) == 1
        assert executor == []
        assert tab == []

    @pytest.mark.asyncio
    async def test_broadcast_survives_failing_listener(self, bus):
        async def broken(message):
            raise RuntimeError("listener down")

        received = []
        bus.attach(Endpoint("broken", EndpointKind.EXTENSION, broken))
        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, _recorder(received)))

        delivered = await bus.broadcast(Message(MessageType.VC_SAVED, sender=BACKGROUND))

        assert delivered == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_send_to_tabs_matches_origin(self, bus):
        a, b = [], []
        bus.attach(Endpoint("tab:a", EndpointKind.TAB, _recorder(a), origin="https://a.example/"))
        bus.attach(Endpoint("tab:b", EndpointKind.TAB, _recorder(b), origin="https://b.example"))

        delivered = await bus.send_to_tabs(
            Message(MessageType.PROOF_TRANSACTION_COMPLETED, {"success": True}),
            origin="https://a.example",
        )

        assert delivered == 1
        assert len(a) == 1
        assert b == []

    @pytest.mark.asyncio
    async def test_send_to_all_tabs(self, bus):
        a, b = [], []
        bus.attach(Endpoint("tab:a", EndpointKind.TAB, _recorder(a), origin="https://a.example"))
        bus.attach(Endpoint("tab:b", EndpointKind.TAB, _recorder(b), origin="https://b.example"))

        assert await bus.send_to_tabs(Message(MessageType.WALLET_LOCKED)) == 2

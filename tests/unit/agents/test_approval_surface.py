"""
Approval surface proxy and popup context tests.
"""

from __future__ import annotations

import pytest

from agents.bridge import ApprovalPopup, BusApprovalSurface, Decision, DecisionStatus
from agents.bridge.popup import decision_type_for
from core.transport import Endpoint, EndpointKind, Message, MessageType
from wallet.errors import SurfaceUnavailable
from wallet.requests import (
    AddressPayload,
    PendingRequest,
    ProofPayload,
    ProofWithAddressPayload,
    RequestClass,
)


def test_decision_from_address_response():
    decision = Decision.from_message(Message(
        MessageType.ADDRESS_REQUEST_RESPONSE, {"success": True, "address": "0xabc", "requestId": "r1"},
    ))

    assert decision.status == DecisionStatus.APPROVED
    assert decision.approved
    assert decision.address == "0xabc"
    assert decision.request_id == "r1"


def test_decision_from_approval_response():
    decision = Decision.from_message(Message(
        MessageType.VC_ISSUANCE_RESPONSE, {"approved": False, "error": "nope"},
    ))

    assert decision.status == DecisionStatus.REJECTED
    assert decision.error == "nope"


def test_decision_type_per_class():
    address = PendingRequest(RequestClass.ADDRESS, "o", AddressPayload())
    proof = PendingRequest(RequestClass.PROOF, "o", ProofPayload())
    proof_with_address = PendingRequest(RequestClass.PROOF, "o", ProofWithAddressPayload())

    assert decision_type_for(address) == MessageType.ADDRESS_REQUEST_RESPONSE
    assert decision_type_for(proof) == MessageType.PROOF_SUBMISSION_RESPONSE
    assert decision_type_for(proof_with_address) == MessageType.PROOF_WITH_ADDRESS_RESPONSE


class TestBusApprovalSurface:

    @pytest.mark.asyncio
    async def test_show_confirmed(self, bus, store):
        popup = ApprovalPopup(bus, store, policy=lambda record: None)
        popup.attach()
        surface = BusApprovalSurface(bus, timeout=0.5)
        record = PendingRequest(RequestClass.ADDRESS, "https://a.example", AddressPayload())

        await surface.show(record)

        assert surface.is_visible()
        assert popup.shown == [record.request_id]
        await popup.close()
        assert not surface.is_visible()

    @pytest.mark.asyncio
    async def test_no_popup(self, bus):
        surface = BusApprovalSurface(bus, timeout=0.1)

        with pytest.raises(SurfaceUnavailable) as exc:
            await surface.show(None)

        assert exc.value.code == "EXTENSION_POPUP_OPEN_FAILED"
        assert not surface.is_visible()

    @pytest.mark.asyncio
    async def test_popup_does_not_confirm(self, bus):
        async def silent(message):
            return None

        bus.attach(Endpoint("popup", EndpointKind.EXTENSION, silent))

        with pytest.raises(SurfaceUnavailable):
            await BusApprovalSurface(bus, timeout=0.1).show(None)


class TestApprovalPopup:

    @pytest.mark.asyncio
    async def test_records_notifications(self, bus, store):
        popup = ApprovalPopup(bus, store)
        popup.attach()

        await bus.broadcast(Message(MessageType.PROOF_PROGRESS, {"status": "generating-proof"}, sender="background"))
        await bus.broadcast(Message(MessageType.VC_SAVED, {"vcId": "x"}, sender="background"))

        assert popup.progress == [{"status": "generating-proof"}]
        assert [m.type for m in popup.notifications] == [MessageType.VC_SAVED]
        await popup.close()

    @pytest.mark.asyncio
    async def test_manual_decision_without_record(self, bus, store):
        popup = ApprovalPopup(bus, store)

        assert await popup.approve(RequestClass.PROOF) is None
        assert await popup.reject(RequestClass.PROOF) is None

    def test_address_is_checksummed(self, bus, store):
        popup = ApprovalPopup(bus, store)

        assert popup.address.startswith("0x")
        assert len(popup.address) == 42
        assert popup.address != popup.address.lower()

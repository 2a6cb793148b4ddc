"""
PendingRequest model and state machine tests.
"""

import pytest

from wallet.errors import InvalidTransition
from wallet.requests import (
    AddressPayload,
    CredentialSavePayload,
    IssuancePayload,
    PendingRequest,
    PendingRequestSlots,
    ProofPayload,
    ProofWithAddressPayload,
    RequestClass,
    RequestStatus,
    can_transition,
    payload_from_dict,
)


def _proof(with_address: bool = False) -> PendingRequest:
    payload = ProofWithAddressPayload(region="Seoul", contract_info={"address": "0x0"}) if with_address \
        else ProofPayload(region="Seoul", credential_type="ResidentCard")
    return PendingRequest(RequestClass.PROOF, "https://verifier.example", payload)


class TestStateMachine:

    def test_initial_state(self):
        record = PendingRequest(RequestClass.ADDRESS, "https://a.example", AddressPayload())

        assert record.status == RequestStatus.AWAITING_SURFACE
        assert record.state_entered_at == record.created_at
        assert not record.is_terminal
        assert len(record.request_id) == 16

    def test_address_happy_path(self):
        record = PendingRequest(RequestClass.ADDRESS, "https://a.example", AddressPayload())
        record.advance(RequestStatus.AWAITING_DECISION)
        record.advance(RequestStatus.COMPLETED)

        assert record.is_terminal

    def test_proof_path(self):
        record = _proof(with_address=True)
        for status in (
            RequestStatus.AWAITING_DECISION,
            RequestStatus.GENERATING_PROOF,
            RequestStatus.SUBMITTING_TX,
            RequestStatus.EXECUTOR_PENDING,
            RequestStatus.FAILED,
        ):
            record.advance(status, now=1.0)

        assert record.status == RequestStatus.FAILED
        assert record.state_entered_at == 1.0

    def test_no_backward_moves(self):
        record = _proof()
        record.advance(RequestStatus.AWAITING_DECISION)
        record.advance(RequestStatus.GENERATING_PROOF)

        with pytest.raises(InvalidTransition):
            record.advance(RequestStatus.AWAITING_DECISION)

    def test_terminal_is_final(self):
        record = PendingRequest(RequestClass.VC_ISSUANCE, "o", IssuancePayload(credential={"id": "x"}))
        record.advance(RequestStatus.AWAITING_DECISION)
        record.advance(RequestStatus.REJECTED)

        with pytest.raises(InvalidTransition):
            record.advance(RequestStatus.COMPLETED)

    def test_class_specific_states(self):
        """Proof-only and save-only states are refused for other classes."""
        assert not can_transition(RequestClass.ADDRESS, RequestStatus.AWAITING_DECISION, RequestStatus.GENERATING_PROOF)
        assert not can_transition(RequestClass.PROOF, RequestStatus.AWAITING_DECISION, RequestStatus.APPROVED)
        assert can_transition(RequestClass.VC_SAVE, RequestStatus.AWAITING_DECISION, RequestStatus.APPROVED)
        assert not can_transition(RequestClass.VC_SAVE, RequestStatus.AWAITING_SURFACE, RequestStatus.COMPLETED)

    def test_payload_must_match_class(self):
        with pytest.raises(ValueError):
            PendingRequest(RequestClass.ADDRESS, "o", ProofPayload())


class TestSerialization:

    def test_roundtrip_keeps_payload_variant(self):
        record = _proof(with_address=True)
        record.advance(RequestStatus.AWAITING_DECISION)
        record.address = "0x" + "ab" * 20
        record.sbt = {"tokenURI": "ipfs://x"}

        restored = PendingRequest.from_dict(record.to_dict())

        assert restored == record
        assert restored.needs_address

    def test_wire_keys(self):
        record = PendingRequest(
            RequestClass.VC_SAVE,
            "manual-import",
            CredentialSavePayload(credential={"id": "x"}, duplicate={"id": "y"}),
            is_duplicate=True,
            duplicate_id="y",
        )
        data = record.to_dict()

        assert data["requestClass"] == "vc-save"
        assert data["status"] == "awaiting-approval-surface"
        assert data["isDuplicate"] is True
        assert data["payload"]["duplicateVC"] == {"id": "y"}

    def test_unknown_payload_kind(self):
        with pytest.raises(ValueError):
            payload_from_dict({"kind": "mystery"})


class TestSlots:

    @pytest.mark.asyncio
    async def test_put_get_discard(self, store):
        slots = PendingRequestSlots(store)
        record = PendingRequest(RequestClass.ADDRESS, "https://a.example", AddressPayload())

        await slots.put(record)

        assert await store.contains("pendingAddressRequest")
        assert (await slots.get(RequestClass.ADDRESS)).request_id == record.request_id
        assert await slots.all() == [record]
        assert await slots.discard(RequestClass.ADDRESS)
        assert await slots.get(RequestClass.ADDRESS) is None

    @pytest.mark.asyncio
    async def test_discard_spares_newer_request(self, store):
        slots = PendingRequestSlots(store)
        old = _proof()
        new = _proof()
        await slots.put(new)

        assert await slots.discard(RequestClass.PROOF, old.request_id) is False
        assert (await slots.get(RequestClass.PROOF)).request_id == new.request_id
        assert await slots.discard(RequestClass.PROOF, new.request_id) is True

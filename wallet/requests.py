"""
Pending Requests - persisted approval records
=============================================

[MODEL] One PendingRequest per request class lives in the durable store.
A non-terminal record blocks creation of another record of the same class.

[STATE MACHINE]
    awaiting-approval-surface -> awaiting-decision -> rejected
                                                  +-> completed                 (address, vc-issuance)
                                                  +-> approved -> completed     (vc-save)
                                                  +-> generating-proof -> submitting-transaction
                                                        -> executor-pending -> completed | failed  (proof)

Transitions are monotonic: ``advance()`` refuses anything not in the table.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Type, Union, TYPE_CHECKING

from wallet.errors import InvalidTransition

if TYPE_CHECKING:
    from core.persistence import DurableRequestStore


class RequestClass(Enum):
    ADDRESS = "address"
    VC_ISSUANCE = "vc-issuance"
    VC_SAVE = "vc-save"
    PROOF = "proof"

    @property
    def slot_key(self) -> str:
        return SLOT_KEYS[self]


SLOT_KEYS: Dict[RequestClass, str] = {
    RequestClass.ADDRESS: "pendingAddressRequest",
    RequestClass.VC_ISSUANCE: "pendingVCIssuance",
    RequestClass.VC_SAVE: "pendingVCSave",
    RequestClass.PROOF: "pendingProofRequest",
}


class RequestStatus(Enum):
    IDLE = "idle"
    AWAITING_SURFACE = "awaiting-approval-surface"
    AWAITING_DECISION = "awaiting-decision"
    APPROVED = "approved-and-processing"
    GENERATING_PROOF = "generating-proof"
    SUBMITTING_TX = "submitting-transaction"
    EXECUTOR_PENDING = "executor-pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.COMPLETED,
    RequestStatus.FAILED,
    RequestStatus.REJECTED,
})

_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.IDLE: frozenset({RequestStatus.AWAITING_SURFACE}),
    RequestStatus.AWAITING_SURFACE: frozenset({RequestStatus.AWAITING_DECISION, RequestStatus.FAILED}),
    RequestStatus.AWAITING_DECISION: frozenset({
        RequestStatus.REJECTED,
        RequestStatus.APPROVED,
        RequestStatus.COMPLETED,
        RequestStatus.GENERATING_PROOF,
        RequestStatus.FAILED,
    }),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.GENERATING_PROOF: frozenset({RequestStatus.SUBMITTING_TX, RequestStatus.FAILED}),
    RequestStatus.SUBMITTING_TX: frozenset({
        RequestStatus.EXECUTOR_PENDING,
        RequestStatus.COMPLETED,
        RequestStatus.FAILED,
    }),
    RequestStatus.EXECUTOR_PENDING: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
}

_COMMON = frozenset({
    RequestStatus.AWAITING_SURFACE,
    RequestStatus.AWAITING_DECISION,
    RequestStatus.COMPLETED,
    RequestStatus.FAILED,
    RequestStatus.REJECTED,
})

# Class-specific subsets of the shared state machine
CLASS_STATUSES: Dict[RequestClass, FrozenSet[RequestStatus]] = {
    RequestClass.ADDRESS: _COMMON,
    RequestClass.VC_ISSUANCE: _COMMON,
    RequestClass.VC_SAVE: _COMMON | {RequestStatus.APPROVED},
    RequestClass.PROOF: _COMMON | {
        RequestStatus.GENERATING_PROOF,
        RequestStatus.SUBMITTING_TX,
        RequestStatus.EXECUTOR_PENDING,
    },
}


def can_transition(request_class: RequestClass, current: RequestStatus, target: RequestStatus) -> bool:
    if target not in CLASS_STATUSES[request_class]:
        return False
    return target in _TRANSITIONS.get(current, frozenset())


# ============================================================================
# Payload variants
# ============================================================================

@dataclass(frozen=True)
class AddressPayload:
    kind: ClassVar[str] = "address"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddressPayload":
        return cls()


@dataclass(frozen=True)
class IssuancePayload:
    kind: ClassVar[str] = "vc-issuance"

    credential: Dict[str, Any]
    subject: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "vc": self.credential, "student": self.subject}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssuancePayload":
        return cls(credential=data.get("vc") or {}, subject=data.get("student"))


@dataclass(frozen=True)
class CredentialSavePayload:
    kind: ClassVar[str] = "vc-save"

    credential: Dict[str, Any]
    duplicate: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "vc": self.credential, "duplicateVC": self.duplicate}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialSavePayload":
        return cls(credential=data.get("vc") or {}, duplicate=data.get("duplicateVC"))


@dataclass(frozen=True)
class ProofPayload:
    kind: ClassVar[str] = "proof"

    region: Optional[str] = None
    credential_type: Optional[str] = None
    prep: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "region": self.region,
            "vcType": self.credential_type,
            "prep": self.prep,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofPayload":
        return cls(region=data.get("region"), credential_type=data.get("vcType"), prep=data.get("prep"))


@dataclass(frozen=True)
class ProofWithAddressPayload:
    kind: ClassVar[str] = "proof-with-address"

    region: Optional[str] = None
    credential_type: Optional[str] = None
    prep: Optional[Dict[str, Any]] = None
    contract_info: Optional[Dict[str, Any]] = None
    circuit_files: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "region": self.region,
            "vcType": self.credential_type,
            "prep": self.prep,
            "contractInfo": self.contract_info,
            "circuitFiles": self.circuit_files,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofWithAddressPayload":
        return cls(
            region=data.get("region"),
            credential_type=data.get("vcType"),
            prep=data.get("prep"),
            contract_info=data.get("contractInfo"),
            circuit_files=data.get("circuitFiles"),
        )


RequestPayload = Union[
    AddressPayload,
    IssuancePayload,
    CredentialSavePayload,
    ProofPayload,
    ProofWithAddressPayload,
]

PAYLOAD_TYPES: Dict[str, Type] = {
    p.kind: p
    for p in (AddressPayload, IssuancePayload, CredentialSavePayload, ProofPayload, ProofWithAddressPayload)
}

# Which request class each payload variant belongs to
PAYLOAD_CLASSES: Dict[str, RequestClass] = {
    AddressPayload.kind: RequestClass.ADDRESS,
    IssuancePayload.kind: RequestClass.VC_ISSUANCE,
    CredentialSavePayload.kind: RequestClass.VC_SAVE,
    ProofPayload.kind: RequestClass.PROOF,
    ProofWithAddressPayload.kind: RequestClass.PROOF,
}


def payload_from_dict(data: Dict[str, Any]) -> RequestPayload:
    kind = data.get("kind")
    if kind not in PAYLOAD_TYPES:
        raise ValueError(f"Unknown payload kind: {kind!r}")
    return PAYLOAD_TYPES[kind].from_dict(data)


# ============================================================================
# PendingRequest
# ============================================================================

@dataclass
class PendingRequest:
    """Persisted record of one in-flight cross-context operation."""

    request_class: RequestClass
    origin: str
    payload: RequestPayload
    request_id: str = field(default_factory=lambda: secrets.token_hex(8))
    status: RequestStatus = RequestStatus.AWAITING_SURFACE
    created_at: float = field(default_factory=time.time)
    state_entered_at: float = 0.0

    # Written by the orchestrator as the request advances
    address: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[str] = None
    error: Optional[str] = None
    sbt: Optional[Dict[str, Any]] = None
    token_uri: Optional[str] = None
    is_duplicate: bool = False
    duplicate_id: Optional[str] = None

    def __post_init__(self) -> None:
        if PAYLOAD_CLASSES[self.payload.kind] != self.request_class:
            raise ValueError(
                f"{type(self.payload).__name__} does not belong to {self.request_class.value}"
            )
        if not self.state_entered_at:
            self.state_entered_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def needs_address(self) -> bool:
        return isinstance(self.payload, ProofWithAddressPayload)

    def advance(self, status: RequestStatus, now: Optional[float] = None) -> None:
        """
        Move to ``status``.

        Raises:
            InvalidTransition: backward move, skip, or status foreign to the class
        """
        if not can_transition(self.request_class, self.status, status):
            raise InvalidTransition(
                f"{self.request_class.value}: {self.status.value} -> {status.value} is not allowed"
            )
        self.status = status
        self.state_entered_at = now if now is not None else time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "requestClass": self.request_class.value,
            "origin": self.origin,
            "payload": self.payload.to_dict(),
            "status": self.status.value,
            "createdAt": self.created_at,
            "stateEnteredAt": self.state_entered_at,
            "address": self.address,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "error": self.error,
            "sbt": self.sbt,
            "tokenURI": self.token_uri,
            "isDuplicate": self.is_duplicate,
            "duplicateId": self.duplicate_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingRequest":
        return cls(
            request_class=RequestClass(data["requestClass"]),
            origin=data.get("origin", ""),
            payload=payload_from_dict(data.get("payload") or {}),
            request_id=data["requestId"],
            status=RequestStatus(data["status"]),
            created_at=data.get("createdAt", 0.0),
            state_entered_at=data.get("stateEnteredAt", 0.0),
            address=data.get("address"),
            tx_hash=data.get("txHash"),
            block_number=data.get("blockNumber"),
            error=data.get("error"),
            sbt=data.get("sbt"),
            token_uri=data.get("tokenURI"),
            is_duplicate=bool(data.get("isDuplicate", False)),
            duplicate_id=data.get("duplicateId"),
        )


class PendingRequestSlots:
    """
    Typed view over the per-class slots of the durable store.

    Any context may read; only the orchestrator calls ``put``/``discard``.
    """

    def __init__(self, store: "DurableRequestStore"):
        self.store = store

    async def get(self, request_class: RequestClass) -> Optional[PendingRequest]:
        data = await self.store.get(request_class.slot_key)
        if not data:
            return None
        return PendingRequest.from_dict(data)

    async def put(self, record: PendingRequest) -> None:
        await self.store.set(record.request_class.slot_key, record.to_dict())

    async def discard(self, request_class: RequestClass, request_id: Optional[str] = None) -> bool:
        """
        Remove the slot. With ``request_id``, only if the slot still holds that
        record (a newer request may already own it).
        """
        if request_id is None:
            return await self.store.remove(request_class.slot_key) > 0
        return await self.store.remove_if(
            request_class.slot_key,
            lambda current: isinstance(current, dict) and current.get("requestId") == request_id,
        )

    async def all(self) -> List[PendingRequest]:
        records = []
        for request_class in RequestClass:
            record = await self.get(request_class)
            if record is not None:
                records.append(record)
        return records

"""
Wallet Module
=============
Background side of the wallet:
- Orchestrator: request lifecycle, decisions, proof pipeline
- PendingRequest / PendingRequestSlots: persisted per-class request records
- CredentialStore / SoulboundStore: saved credentials and soulbound tokens
- AutoLock: idle lock timer
"""

from .errors import (
    WalletError,
    SurfaceUnavailable,
    UserRejected,
    DecisionTimeout,
    ExecutorFailure,
    ExecutorTimeout,
    MalformedPayload,
    AlreadyInProgress,
    InvalidTransition,
    InvalidRequest,
    CredentialNotFound,
    CredentialSaveFailed,
    WalletShuttingDown,
)
from .requests import (
    RequestClass,
    RequestStatus,
    PendingRequest,
    PendingRequestSlots,
    AddressPayload,
    IssuancePayload,
    CredentialSavePayload,
    ProofPayload,
    ProofWithAddressPayload,
)
from .credentials import CredentialStore, SoulboundStore, DedupKey
from .autolock import AutoLock
from .orchestrator import Orchestrator

__all__ = [
    # Errors
    "WalletError",
    "SurfaceUnavailable",
    "UserRejected",
    "DecisionTimeout",
    "ExecutorFailure",
    "ExecutorTimeout",
    "MalformedPayload",
    "AlreadyInProgress",
    "InvalidTransition",
    "InvalidRequest",
    "CredentialNotFound",
    "CredentialSaveFailed",
    "WalletShuttingDown",
    # Requests
    "RequestClass",
    "RequestStatus",
    "PendingRequest",
    "PendingRequestSlots",
    "AddressPayload",
    "IssuancePayload",
    "CredentialSavePayload",
    "ProofPayload",
    "ProofWithAddressPayload",
    # Stores
    "CredentialStore",
    "SoulboundStore",
    "DedupKey",
    "AutoLock",
    "Orchestrator",
]

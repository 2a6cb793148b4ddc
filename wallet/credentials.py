"""
Credential Store - saved verifiable credentials and soulbound records
=====================================================================

[DEDUP] A credential is identified by the triple (issuer, subject, type):
- issuer:  ``issuer.id`` or the ``issuer`` string
- subject: ``credentialSubject.id``, ``.name`` or ``.studentName``
- type:    first entry of ``type`` other than "VerifiableCredential"

A key with any component missing never matches anything.

Saving a credential whose key matches a stored record replaces that record's
payload in place and keeps its identifier; otherwise a new record is appended.

[SOULBOUND] Soulbound records are written only by the proof pipeline after a
confirmed transaction. There is deliberately no public "save" for them.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from config import SAVED_SBTS_KEY, SAVED_VCS_KEY
from wallet.errors import CredentialNotFound, CredentialSaveFailed, InvalidRequest

if TYPE_CHECKING:
    from core.persistence import DurableRequestStore

logger = logging.getLogger(__name__)

GENERIC_CREDENTIAL_TYPE = "VerifiableCredential"


def _issuer_of(credential: Dict[str, Any]) -> Optional[str]:
    issuer = credential.get("issuer")
    if isinstance(issuer, dict):
        return issuer.get("id") or None
    return issuer or None


def _subject_of(credential: Dict[str, Any]) -> Optional[str]:
    subject = credential.get("credentialSubject")
    if not isinstance(subject, dict):
        return None
    return subject.get("id") or subject.get("name") or subject.get("studentName") or None


def _type_of(credential: Dict[str, Any]) -> Optional[str]:
    types = credential.get("type")
    if isinstance(types, str):
        types = [types]
    if not isinstance(types, list):
        return None
    for value in types:
        if value and value != GENERIC_CREDENTIAL_TYPE:
            return value
    return None


@dataclass(frozen=True)
class DedupKey:
    issuer: str
    subject: str
    credential_type: str

    @classmethod
    def from_credential(cls, credential: Dict[str, Any]) -> Optional["DedupKey"]:
        """Best-effort extraction. Returns None when any component is missing."""
        if not isinstance(credential, dict):
            return None
        issuer = _issuer_of(credential)
        subject = _subject_of(credential)
        credential_type = _type_of(credential)
        if not (issuer and subject and credential_type):
            return None
        return cls(issuer=issuer, subject=subject, credential_type=credential_type)


def credential_id(credential: Dict[str, Any]) -> str:
    """Identifier carried by the credential itself (``id`` or merkle root)."""
    proof = credential.get("proof")
    merkle_root = proof.get("merkleRoot") if isinstance(proof, dict) else None
    return credential.get("id") or merkle_root or ""


@dataclass
class CredentialRecord:
    """A previously accepted credential."""

    id: str
    credential: Dict[str, Any]
    stored_at: float
    origin: str = ""

    @property
    def dedup_key(self) -> Optional[DedupKey]:
        return DedupKey.from_credential(self.credential)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "credential": self.credential,
            "storedAt": self.stored_at,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        return cls(
            id=data["id"],
            credential=data.get("credential") or {},
            stored_at=data.get("storedAt", 0.0),
            origin=data.get("origin", ""),
        )


@dataclass
class SaveResult:
    record: CredentialRecord
    is_duplicate: bool
    previous_id: Optional[str] = None

    @property
    def record_id(self) -> str:
        return self.record.id


class CredentialStore:
    """
    Saved credentials, persisted as a list under ``savedVCs``.

    Callers are the orchestrator only; reads from other contexts go through
    ``list()``.
    """

    def __init__(self, store: "DurableRequestStore"):
        self.store = store
        self._lock = asyncio.Lock()

    async def list(self) -> List[CredentialRecord]:
        raw = await self.store.get(SAVED_VCS_KEY, [])
        return [CredentialRecord.from_dict(item) for item in raw]

    async def _write(self, records: List[CredentialRecord]) -> None:
        await self.store.set(SAVED_VCS_KEY, [r.to_dict() for r in records])

    async def _commit(self, records: List[CredentialRecord]) -> None:
        try:
            await self._write(records)
        except Exception as e:
            raise CredentialSaveFailed(f"Failed to save VC: {e}") from e

    @staticmethod
    def _index_of_duplicate(records: List[CredentialRecord], key: Optional[DedupKey]) -> int:
        if key is None:
            return -1
        for index, record in enumerate(records):
            if record.dedup_key == key:
                return index
        return -1

    async def find_duplicate(self, credential: Dict[str, Any]) -> Optional[CredentialRecord]:
        records = await self.list()
        index = self._index_of_duplicate(records, DedupKey.from_credential(credential))
        return records[index] if index >= 0 else None

    async def get(self, record_id: str) -> Optional[CredentialRecord]:
        for record in await self.list():
            if record.id == record_id:
                return record
        return None

    async def save(self, credential: Dict[str, Any], origin: str = "") -> SaveResult:
        """
        Insert or overwrite by dedup key.

        Raises:
            InvalidRequest: credential is not a JSON object
            CredentialSaveFailed: the store rejected the write
        """
        if not isinstance(credential, dict) or not credential:
            raise InvalidRequest("Credential payload is required")

        async with self._lock:
            records = await self.list()
            key = DedupKey.from_credential(credential)
            index = self._index_of_duplicate(records, key)
            now = time.time()

            if index >= 0:
                previous = records[index]
                record = CredentialRecord(id=previous.id, credential=credential, stored_at=now, origin=origin)
                records[index] = record
                await self._commit(records)
                logger.info(f"[VC] Overwrote {previous.id} ({key.issuer}, {key.subject}, {key.credential_type})")
                return SaveResult(record=record, is_duplicate=True, previous_id=previous.id)

            record_id = credential_id(credential) or f"vc:{secrets.token_hex(8)}"
            record = CredentialRecord(id=record_id, credential=credential, stored_at=now, origin=origin)
            records.append(record)
            await self._commit(records)
        logger.info(f"[VC] Saved new credential {record_id}")
        return SaveResult(record=record, is_duplicate=False)

    async def delete(self, record_id: str) -> CredentialRecord:
        """
        Raises:
            InvalidRequest: empty id
            CredentialNotFound: no record with that id
        """
        if not record_id:
            raise InvalidRequest("VC ID is required")
        async with self._lock:
            records = await self.list()
            for index, record in enumerate(records):
                if record.id == record_id:
                    del records[index]
                    await self._write(records)
                    logger.info(f"[VC] Deleted {record_id}")
                    return record
        raise CredentialNotFound(f"VC not found: {record_id}")


class SoulboundStore:
    """Soulbound token records, persisted as a list under ``savedSBTs``."""

    def __init__(self, store: "DurableRequestStore"):
        self.store = store

    async def list(self) -> List[Dict[str, Any]]:
        return list(await self.store.get(SAVED_SBTS_KEY, []))

    async def record_confirmed(self, sbt: Dict[str, Any], tx_hash: Optional[str]) -> Tuple[str, bool]:
        """
        Upsert a soulbound record for a confirmed proof transaction.

        Returns:
            (record id, replaced existing)
        """
        record_id = sbt.get("id") or f"sbt:{tx_hash or int(time.time() * 1000)}"
        record = dict(sbt)
        record["id"] = record_id
        if tx_hash and not record.get("txHash"):
            record["txHash"] = tx_hash

        records = await self.list()
        for index, existing in enumerate(records):
            if existing.get("id") == record_id:
                records[index] = record
                await self.store.set(SAVED_SBTS_KEY, records)
                return record_id, True

        records.append(record)
        await self.store.set(SAVED_SBTS_KEY, records)
        return record_id, False

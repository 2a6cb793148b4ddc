"""
Background Orchestrator - approval flows between page, human and executor
=========================================================================

[ROLE] The single authority over pending requests. Every page request,
human decision and executor result arrives here as a relay message; every
state change goes through ``_enter()`` which persists the record before
anything observes it.

[SINGLE-FLIGHT] At most one non-terminal request per class. The class is
reserved in memory synchronously, before the first await, so two requests
arriving in the same tick cannot both pass the check.

[EXCLUSIVITY] Human decisions and executor results are correlated calls
(see ``core.correlation``): whichever of decision, deadline or shutdown
comes first settles the call, the rest are no-ops.

[PROOF PIPELINE] Approval is answered immediately; proof generation, the
executor round trip, page notification and soulbound save continue in a
background task. Terminal proof records stay readable for
``completion_retention`` seconds, then disappear.

[RECOVERY] A periodic sweep removes slots with no live flow whose state
deadline has passed (records left behind by a crashed context).
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from eth_utils import is_address, to_checksum_address

from agents.bridge.approval_surface import ApprovalSurface, Decision
from config import config, TimeoutConfig
from core.correlation import PendingCalls
from core.events import PROOF_PROGRESS, REQUEST_REMOVED, REQUEST_STATE, EventBus
from core.persistence import DurableRequestStore
from core.transport import (
    BACKGROUND,
    EXECUTOR,
    Endpoint,
    EndpointKind,
    Message,
    MessageBus,
    MessageType,
    TransportError,
)
from wallet.autolock import AutoLock
from wallet.credentials import CredentialStore, SaveResult, SoulboundStore
from wallet.errors import (
    AlreadyInProgress,
    DecisionTimeout,
    ExecutorFailure,
    ExecutorTimeout,
    InvalidRequest,
    SurfaceUnavailable,
    UserRejected,
    WalletError,
    WalletShuttingDown,
)
from wallet.proofs import PLACEHOLDER_CALLDATA
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
)

logger = logging.getLogger(__name__)

# Decision message -> request class it answers
DECISION_CLASSES: Dict[MessageType, RequestClass] = {
    MessageType.ADDRESS_REQUEST_RESPONSE: RequestClass.ADDRESS,
    MessageType.VC_ISSUANCE_RESPONSE: RequestClass.VC_ISSUANCE,
    MessageType.VC_SAVE_RESPONSE: RequestClass.VC_SAVE,
    MessageType.PROOF_SUBMISSION_RESPONSE: RequestClass.PROOF,
    MessageType.PROOF_WITH_ADDRESS_RESPONSE: RequestClass.PROOF,
}

# Failure response shape per request message type (everything else: success=false)
FAILURE_SHAPES: Dict[MessageType, Dict[str, Any]] = {
    MessageType.REQUEST_VC_ISSUANCE: {"approved": False},
    MessageType.REQUEST_PROOF_SUBMISSION: {"success": False, "approved": False},
    MessageType.REQUEST_PROOF_WITH_ADDRESS: {"success": False, "approved": False, "address": None},
    MessageType.PREPARE_PROOF_POPUP: {"ok": False},
}

# Proof statuses reported on PROOF_PROGRESS
PROGRESS_STATUSES = frozenset({
    RequestStatus.GENERATING_PROOF,
    RequestStatus.SUBMITTING_TX,
    RequestStatus.COMPLETED,
    RequestStatus.FAILED,
})

MANUAL_IMPORT_ORIGIN = "manual-import"


def normalize_address(address: Any) -> str:
    """
    Validate and checksum an Ethereum address.

    Raises:
        InvalidRequest: not a 20-byte hex address
    """
    if not isinstance(address, str) or not is_address(address):
        raise InvalidRequest(f"Invalid wallet address: {address!r}")
    return to_checksum_address(address)


def _without_none(**fields) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


@dataclass
class _Flow:
    """Live, in-memory side of a pending request."""

    record: PendingRequest
    decision_call: Optional[str] = None
    executor_call: Optional[str] = None
    removed: bool = False


class Orchestrator:
    """
    Background context of the wallet.

    Attach it to the relay with ``start()``; it then answers every request
    message addressed to ``background``.
    """

    def __init__(
        self,
        store: DurableRequestStore,
        bus: MessageBus,
        surface: ApprovalSurface,
        timeouts: Optional[TimeoutConfig] = None,
        events: Optional[EventBus] = None,
        executor_target: str = EXECUTOR,
        default_token_uri: Optional[str] = None,
    ):
        self.store = store
        self.bus = bus
        self.surface = surface
        self.timeouts = timeouts or config.timeouts
        self.events = events or EventBus()
        self.executor_target = executor_target
        self.default_token_uri = default_token_uri or config.storage.default_token_uri

        self.slots = PendingRequestSlots(store)
        self.credentials = CredentialStore(store)
        self.soulbound = SoulboundStore(store)
        self.autolock = AutoLock(store, bus, self.timeouts.idle_lock)

        self._calls = PendingCalls()
        self._flows: Dict[RequestClass, _Flow] = {}
        self._tasks: Set[asyncio.Task] = set()
        # One future per relay message being handled, done when its response is ready
        self._inflight: Set[asyncio.Future] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        self._handlers: Dict[MessageType, Callable[[Message], Awaitable[Optional[Dict[str, Any]]]]] = {
            MessageType.REQUEST_WALLET_ADDRESS: self._on_request_address,
            MessageType.REQUEST_VC_ISSUANCE: self._on_request_issuance,
            MessageType.SAVE_VC: self._on_save_vc,
            MessageType.DID_WALLET_SAVE_VC: self._on_save_vc,
            MessageType.SAVE_VC_DIRECT: self._on_save_vc_direct,
            MessageType.DELETE_VC: self._on_delete_vc,
            MessageType.REQUEST_PROOF_SUBMISSION: self._on_request_proof,
            MessageType.REQUEST_PROOF_WITH_ADDRESS: self._on_request_proof,
            MessageType.UPDATE_PROOF_REQUEST_SBT: self._on_update_sbt,
            MessageType.SAVE_SBT: self._on_save_sbt,
            MessageType.PREPARE_PROOF_POPUP: self._on_prepare_popup,
            MessageType.PROOF_TX_RESPONSE: self._on_executor_response,
            MessageType.USER_ACTIVITY: self._on_lock_state,
            MessageType.WALLET_UNLOCKED: self._on_lock_state,
            MessageType.WALLET_LOCKED: self._on_lock_state,
        }
        for msg_type in DECISION_CLASSES:
            self._handlers[msg_type] = self._on_decision

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.bus.attach(Endpoint(BACKGROUND, EndpointKind.BACKGROUND, self.handle))

        removed = await self.sweep()
        if removed:
            logger.warning(f"[ORCH] Recovered {removed} orphaned request(s) on startup")

        await self.autolock.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("[ORCH] Background orchestrator started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.bus.detach(BACKGROUND)

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        # Waiting requests answer with a failure instead of being cancelled
        settled = self._calls.reject_all(WalletShuttingDown)
        if settled:
            logger.info(f"[ORCH] Settled {settled} waiting call(s) on shutdown")
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=self.timeouts.surface_open_timeout)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._flows.clear()

        await self.autolock.stop()
        logger.info("[ORCH] Background orchestrator stopped")

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Relay boundary
    # =========================================================================

    async def handle(self, message: Message) -> Optional[Dict[str, Any]]:
        """
        Dispatch one relay message. Never raises: every failure becomes the
        failure response of the request type.
        """
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"[ORCH] Ignoring {message.type.name} from {message.sender}")
            return None

        done = asyncio.get_running_loop().create_future()
        self._inflight.add(done)
        try:
            return await handler(message)
        except WalletError as e:
            logger.info(f"[ORCH] {message.type.name} failed: {e.code} {e.message}")
            return self._failure(message.type, e.message)
        except Exception as e:
            logger.error(f"[ORCH] {message.type.name} crashed: {e}", exc_info=True)
            return self._failure(message.type, str(e))
        finally:
            self._inflight.discard(done)
            done.set_result(None)

    @staticmethod
    def _failure(msg_type: MessageType, error: str) -> Dict[str, Any]:
        response = dict(FAILURE_SHAPES.get(msg_type, {"success": False}))
        response["error"] = error
        return response

    async def _on_request_address(self, message: Message) -> Dict[str, Any]:
        return await self.request_address(message.get("origin") or message.sender)

    async def _on_request_issuance(self, message: Message) -> Dict[str, Any]:
        return await self.request_credential_issuance(
            message.get("vc"), message.get("student"), message.get("origin") or message.sender
        )

    async def _on_save_vc(self, message: Message) -> Dict[str, Any]:
        return await self.save_credential(message.get("vc"), message.get("origin"))

    async def _on_save_vc_direct(self, message: Message) -> Dict[str, Any]:
        return await self.save_credential_direct(message.get("vc"), message.get("origin"))

    async def _on_delete_vc(self, message: Message) -> Dict[str, Any]:
        return await self.delete_credential(message.get("vcId"))

    async def _on_request_proof(self, message: Message) -> Dict[str, Any]:
        return await self.submit_proof(
            origin=message.get("origin") or message.sender,
            region=message.get("region"),
            credential_type=message.get("vcType"),
            prep=message.get("prep"),
            contract_info=message.get("contractInfo"),
            with_address=message.type == MessageType.REQUEST_PROOF_WITH_ADDRESS,
        )

    async def _on_update_sbt(self, message: Message) -> Dict[str, Any]:
        return await self.attach_soulbound(message.get("sbt"), message.get("tokenURI"))

    async def _on_save_sbt(self, message: Message) -> Dict[str, Any]:
        return await self.save_soulbound(message.get("sbt"))

    async def _on_prepare_popup(self, message: Message) -> Dict[str, Any]:
        return await self.prepare_proof_surface()

    async def _on_decision(self, message: Message) -> Dict[str, Any]:
        return {"accepted": self.record_decision(message)}

    async def _on_executor_response(self, message: Message) -> Dict[str, Any]:
        return {"accepted": self.record_executor_response(message)}

    async def _on_lock_state(self, message: Message) -> None:
        if message.type == MessageType.USER_ACTIVITY:
            self.autolock.reset()
        elif message.type == MessageType.WALLET_UNLOCKED:
            await self.autolock.unlocked()
        else:
            await self.autolock.locked_by_user()
        return None

    # =========================================================================
    # Request lifecycle
    # =========================================================================

    async def _open(self, record: PendingRequest, decision_timeout: float) -> _Flow:
        """
        Reserve the class, persist the record, show the approval surface and
        arm the decision deadline.

        Raises:
            AlreadyInProgress: a non-terminal request of this class exists
            SurfaceUnavailable: the UI did not come up (record is removed)
        """
        cls = record.request_class
        previous = self._flows.get(cls)
        if previous is not None and not previous.record.is_terminal:
            raise AlreadyInProgress(
                f"{cls.value} request already in progress",
                details={"requestId": previous.record.request_id},
            )

        flow = _Flow(record)
        self._flows[cls] = flow

        try:
            try:
                stored = await self.slots.get(cls)
            except (KeyError, ValueError) as e:
                logger.warning(f"[ORCH] Discarding unreadable {cls.slot_key}: {e}")
                await self.slots.discard(cls)
                stored = None

            live_id = previous.record.request_id if previous is not None else None
            if stored is not None and not stored.is_terminal and stored.request_id != live_id:
                raise AlreadyInProgress(
                    f"{cls.value} request already in progress",
                    details={"requestId": stored.request_id},
                )

            record.state_entered_at = time.time()
            await self.slots.put(record)
        except BaseException:
            self._release(flow, previous)
            raise

        async with self._settling(flow):
            await self._publish_state(record)
            logger.info(f"[ORCH] New {cls.value} request {record.request_id} from {record.origin}")

            try:
                await self.surface.show(record)
            except SurfaceUnavailable as e:
                await self._conclude(flow, RequestStatus.FAILED, e.message)
                raise

            # Armed before the first await after show() so no decision can be missed
            flow.decision_call = self._calls.create(
                timeout=decision_timeout,
                on_timeout=DecisionTimeout,
                tag=f"decision:{cls.value}",
            )
            await self._enter(flow, RequestStatus.AWAITING_DECISION)
        return flow

    @asynccontextmanager
    async def _settling(self, flow: _Flow):
        """Drop ``flow`` if the block fails before the flow reached its end."""
        try:
            yield flow
        except BaseException:
            if not flow.removed:
                await self._abandon(flow)
            raise

    async def _abandon(self, flow: _Flow) -> None:
        """
        Forget a flow whose bookkeeping failed part way (store write, shutdown).
        The class is freed at once; a slot that cannot be discarded now is left
        to the sweep, which removes records without a live flow.
        """
        record = flow.record
        flow.removed = True
        for call_id in (flow.decision_call, flow.executor_call):
            if call_id is not None:
                self._calls.cancel(call_id)
        flow.decision_call = flow.executor_call = None
        if self._flows.get(record.request_class) is flow:
            del self._flows[record.request_class]

        try:
            await self.slots.discard(record.request_class, record.request_id)
        except Exception as e:
            logger.warning(f"[ORCH] Could not discard {record.request_id}: {e}")
        logger.warning(f"[ORCH] Abandoned {record.request_class.value} {record.request_id} ({record.status.value})")

    def _release(self, flow: _Flow, previous: Optional[_Flow]) -> None:
        cls = flow.record.request_class
        if self._flows.get(cls) is flow:
            if previous is not None:
                self._flows[cls] = previous
            else:
                del self._flows[cls]

    async def _wait_decision(self, flow: _Flow):
        try:
            return await self._calls.wait(flow.decision_call)
        finally:
            flow.decision_call = None

    async def _enter(self, flow: _Flow, status: RequestStatus) -> None:
        """Advance, persist, then notify. No-op writes once the flow was removed."""
        record = flow.record
        record.advance(status)
        if flow.removed:
            return
        await self.slots.put(record)
        await self._publish_state(record)
        if record.request_class is RequestClass.PROOF and status in PROGRESS_STATUSES:
            await self._progress(status.value, record)

    async def _conclude(self, flow: _Flow, status: RequestStatus, error: Optional[str] = None) -> None:
        """Terminal transition followed by immediate removal."""
        if error is not None:
            flow.record.error = error
        await self._enter(flow, status)
        await self._remove(flow)

    async def _remove(self, flow: _Flow) -> None:
        if flow.removed:
            return
        flow.removed = True
        record = flow.record
        for call_id in (flow.decision_call, flow.executor_call):
            if call_id is not None:
                self._calls.cancel(call_id)

        if self._flows.get(record.request_class) is flow:
            del self._flows[record.request_class]
        await self.slots.discard(record.request_class, record.request_id)

        await self.events.broadcast(REQUEST_REMOVED, {
            "requestClass": record.request_class.value,
            "requestId": record.request_id,
            "status": record.status.value,
        })
        logger.debug(f"[ORCH] Removed {record.request_class.value} {record.request_id} ({record.status.value})")

    async def _publish_state(self, record: PendingRequest) -> None:
        await self.events.broadcast(REQUEST_STATE, {
            "requestClass": record.request_class.value,
            "requestId": record.request_id,
            "status": record.status.value,
        })

    async def _progress(self, status: str, record: PendingRequest) -> None:
        payload = _without_none(status=status, requestId=record.request_id, error=record.error)
        await self.bus.broadcast(Message(MessageType.PROOF_PROGRESS, payload, sender=BACKGROUND))
        await self.events.broadcast(PROOF_PROGRESS, payload)
        logger.info(f"[PROOF] {record.request_id}: {status}")

    # =========================================================================
    # Decisions and executor results
    # =========================================================================

    def record_decision(self, message: Message) -> bool:
        """
        Settle the pending decision of the class ``message`` answers.

        Returns False for late, foreign or duplicate decisions, which change
        nothing.
        """
        cls = DECISION_CLASSES[message.type]
        flow = self._flows.get(cls)
        if flow is None or not self._calls.is_pending(flow.decision_call):
            logger.info(f"[ORCH] Late {message.type.name} ignored")
            return False

        if cls is RequestClass.PROOF:
            expected = (
                MessageType.PROOF_WITH_ADDRESS_RESPONSE
                if flow.record.needs_address
                else MessageType.PROOF_SUBMISSION_RESPONSE
            )
            if message.type != expected:
                logger.warning(f"[ORCH] {message.type.name} does not answer {flow.record.payload.kind}")
                return False

        decision = Decision.from_message(message)
        if decision.request_id and decision.request_id != flow.record.request_id:
            logger.warning(f"[ORCH] Decision for stale request {decision.request_id} ignored")
            return False

        return self._calls.resolve(flow.decision_call, decision)

    def record_executor_response(self, message: Message) -> bool:
        call_id = message.correlation_id
        if not call_id:
            logger.warning("[EXECUTOR] Response without correlation id ignored")
            return False
        if not self._calls.resolve(call_id, dict(message.payload)):
            logger.info(f"[EXECUTOR] Late response {call_id} ignored")
            return False
        return True

    # =========================================================================
    # Address
    # =========================================================================

    async def request_address(self, origin: str) -> Dict[str, Any]:
        """Ask the human to disclose the wallet address to ``origin``."""
        record = PendingRequest(RequestClass.ADDRESS, origin or "", AddressPayload())
        flow = await self._open(record, self.timeouts.address_timeout)

        async with self._settling(flow):
            try:
                decision = await self._wait_decision(flow)
            except DecisionTimeout as e:
                await self._conclude(flow, RequestStatus.REJECTED, e.message)
                return {"success": False, "error": e.message}

            if not decision.approved:
                error = decision.error or UserRejected.default_message
                await self._conclude(flow, RequestStatus.REJECTED, error)
                return {"success": False, "error": error}

            try:
                address = normalize_address(decision.address)
            except InvalidRequest as e:
                await self._conclude(flow, RequestStatus.FAILED, e.message)
                return {"success": False, "error": e.message}

            flow.record.address = address
            await self._conclude(flow, RequestStatus.COMPLETED)
        logger.info(f"[ORCH] Address disclosed to {origin}")
        return {"success": True, "address": address}

    # =========================================================================
    # Credentials
    # =========================================================================

    async def request_credential_issuance(
        self,
        credential: Dict[str, Any],
        subject: Optional[Dict[str, Any]],
        origin: str,
    ) -> Dict[str, Any]:
        """Ask the human to accept a credential offered by an issuer page."""
        if not isinstance(credential, dict) or not credential:
            raise InvalidRequest("Credential payload is required")

        duplicate = await self.credentials.find_duplicate(credential)
        record = PendingRequest(
            RequestClass.VC_ISSUANCE,
            origin or "",
            IssuancePayload(credential=credential, subject=subject),
            is_duplicate=duplicate is not None,
            duplicate_id=duplicate.id if duplicate else None,
        )
        flow = await self._open(record, self.timeouts.decision_timeout)

        async with self._settling(flow):
            try:
                decision = await self._wait_decision(flow)
            except DecisionTimeout as e:
                await self._conclude(flow, RequestStatus.REJECTED, e.message)
                return {"approved": False, "error": e.message}

            if decision.approved:
                await self._conclude(flow, RequestStatus.COMPLETED)
                return {"approved": True}

            await self._conclude(flow, RequestStatus.REJECTED, decision.error)
        return _without_none(approved=False, error=decision.error)

    async def save_credential(self, credential: Dict[str, Any], origin: Optional[str] = None) -> Dict[str, Any]:
        """
        Save a credential. New credentials are stored at once; a duplicate
        needs the human to confirm the overwrite on the approval surface.
        """
        if not isinstance(credential, dict) or not credential:
            raise InvalidRequest("Credential payload is required")
        origin = origin or MANUAL_IMPORT_ORIGIN

        duplicate = await self.credentials.find_duplicate(credential)
        if duplicate is None:
            result = await self.credentials.save(credential, origin)
            await self._announce_saved(result)
            return {"success": True, "vcId": result.record_id}

        record = PendingRequest(
            RequestClass.VC_SAVE,
            origin,
            CredentialSavePayload(credential=credential, duplicate=duplicate.to_dict()),
            is_duplicate=True,
            duplicate_id=duplicate.id,
        )
        flow = await self._open(record, self.timeouts.decision_timeout)
        self._spawn(self._confirm_overwrite(flow), name=f"vc-save-{record.request_id}")
        logger.info(f"[VC] Duplicate of {duplicate.id}, waiting for overwrite confirmation")
        return {
            "success": True,
            "message": "Duplicate credential: confirm the overwrite in the wallet popup",
            "isDuplicate": True,
            "duplicateId": duplicate.id,
        }

    async def _confirm_overwrite(self, flow: _Flow) -> None:
        record = flow.record
        async with self._settling(flow):
            try:
                decision = await self._wait_decision(flow)
            except DecisionTimeout as e:
                await self._conclude(flow, RequestStatus.REJECTED, e.message)
                return

            if not decision.approved:
                await self._conclude(flow, RequestStatus.REJECTED, decision.error or UserRejected.default_message)
                return

            await self._enter(flow, RequestStatus.APPROVED)
            try:
                result = await self.credentials.save(record.payload.credential, record.origin)
            except WalletError as e:
                logger.error(f"[VC] Overwrite of {record.duplicate_id} failed: {e.message}")
                await self._conclude(flow, RequestStatus.FAILED, e.message)
                return

            await self._conclude(flow, RequestStatus.COMPLETED)
        await self._announce_saved(result)

    async def save_credential_direct(self, credential: Dict[str, Any], origin: Optional[str] = None) -> Dict[str, Any]:
        """Save without confirmation, silently overwriting a duplicate."""
        result = await self.credentials.save(credential, origin or MANUAL_IMPORT_ORIGIN)
        await self._announce_saved(result)
        return {"success": True, "vcId": result.record_id, "isDuplicate": result.is_duplicate}

    async def delete_credential(self, vc_id: str) -> Dict[str, Any]:
        await self.credentials.delete(vc_id)
        return {"success": True, "vcId": vc_id}

    async def _announce_saved(self, result: SaveResult) -> None:
        await self.bus.broadcast(Message(
            MessageType.VC_SAVED,
            {"vcId": result.record_id, "isDuplicate": result.is_duplicate},
            sender=BACKGROUND,
        ))

    # =========================================================================
    # Proofs
    # =========================================================================

    async def submit_proof(
        self,
        origin: str,
        region: Optional[str] = None,
        credential_type: Optional[str] = None,
        prep: Optional[Dict[str, Any]] = None,
        contract_info: Optional[Dict[str, Any]] = None,
        with_address: bool = False,
    ) -> Dict[str, Any]:
        """
        Ask the human to approve a proof submission.

        The response is sent as soon as the human decides; the proof pipeline
        keeps running and reports through PROOF_PROGRESS and, with an address,
        PROOF_TRANSACTION_COMPLETED to the origin page.
        """
        if with_address:
            payload = ProofWithAddressPayload(
                region=region,
                credential_type=credential_type,
                prep=prep,
                contract_info=contract_info,
                circuit_files=(prep or {}).get("circuitFiles"),
            )
        else:
            payload = ProofPayload(region=region, credential_type=credential_type, prep=prep)

        record = PendingRequest(RequestClass.PROOF, origin or "", payload)
        flow = await self._open(record, self.timeouts.decision_timeout)
        refused: Dict[str, Any] = {"success": False, "approved": False}
        if with_address:
            refused["address"] = None

        async with self._settling(flow):
            try:
                decision = await self._wait_decision(flow)
            except DecisionTimeout as e:
                await self._conclude(flow, RequestStatus.REJECTED, e.message)
                return {**refused, "error": e.message}

            if not decision.approved:
                await self._conclude(flow, RequestStatus.REJECTED, decision.error or UserRejected.default_message)
                return {**refused, "success": True}

            response: Dict[str, Any] = {"success": True, "approved": True}
            if with_address:
                try:
                    record.address = normalize_address(decision.address)
                except InvalidRequest as e:
                    await self._conclude(flow, RequestStatus.FAILED, e.message)
                    return {**refused, "error": e.message}
                response["address"] = record.address

            await self._enter(flow, RequestStatus.GENERATING_PROOF)
        self._spawn(self._run_proof_pipeline(flow), name=f"proof-{record.request_id}")
        return response

    async def _run_proof_pipeline(self, flow: _Flow) -> None:
        record = flow.record
        async with self._settling(flow):
            try:
                await asyncio.sleep(self.timeouts.proof_generation_delay)
                await self._enter(flow, RequestStatus.SUBMITTING_TX)

                if not record.needs_address:
                    await asyncio.sleep(self.timeouts.tx_submission_delay)
                    await self._enter(flow, RequestStatus.COMPLETED)
                else:
                    await self._enter(flow, RequestStatus.EXECUTOR_PENDING)
                    result = await self._invoke_executor(flow)
                    record.tx_hash = result.get("txHash")
                    record.block_number = result.get("blockNumber")
                    await self._enter(flow, RequestStatus.COMPLETED)
                    await self._notify_page(record, success=True)
                    self._spawn(
                        self._save_soulbound_later(record, result.get("sbtData")),
                        name=f"sbt-{record.request_id}",
                    )
            except WalletError as e:
                await self._fail_proof(flow, e.message)
            except Exception as e:
                logger.error(f"[PROOF] Pipeline for {record.request_id} crashed: {e}", exc_info=True)
                await self._fail_proof(flow, str(e))

            await asyncio.sleep(self.timeouts.completion_retention)
            await self._remove(flow)
            await self._progress("removed", record)

    async def _fail_proof(self, flow: _Flow, error: str) -> None:
        record = flow.record
        if record.is_terminal:
            return
        record.error = error
        await self._enter(flow, RequestStatus.FAILED)
        if record.needs_address:
            await self._notify_page(record, success=False)

    async def _invoke_executor(self, flow: _Flow) -> Dict[str, Any]:
        """
        Hand the transaction to the executor and wait for its correlated result.

        Raises:
            ExecutorFailure: executor unreachable or reported failure (message verbatim)
            ExecutorTimeout: no result within ``executor_timeout``
        """
        record = flow.record
        call_id = self._calls.create(
            timeout=self.timeouts.executor_timeout,
            on_timeout=ExecutorTimeout,
            tag="executor",
        )
        flow.executor_call = call_id

        message = Message(
            MessageType.SEND_PROOF_TX,
            {
                "address": record.address,
                "proofCalldata": PLACEHOLDER_CALLDATA,
                "contractInfo": record.payload.contract_info,
                "tokenURI": self._token_uri(record),
            },
            sender=BACKGROUND,
            correlation_id=call_id,
        )
        try:
            await self.bus.request(self.executor_target, message, timeout=self.timeouts.surface_open_timeout)
        except TransportError as e:
            logger.warning(f"[EXECUTOR] Could not reach {self.executor_target}: {e}")
            self._calls.reject(call_id, ExecutorFailure(f"Executor unavailable: {e}"))

        try:
            result = await self._calls.wait(call_id)
        finally:
            flow.executor_call = None

        if not result.get("success"):
            raise ExecutorFailure(result.get("error") or ExecutorFailure.default_message)
        logger.info(f"[EXECUTOR] {record.request_id} confirmed in tx {result.get('txHash')}")
        return result

    def _token_uri(self, record: PendingRequest) -> str:
        if record.token_uri:
            return record.token_uri
        if record.sbt and record.sbt.get("tokenURI"):
            return record.sbt["tokenURI"]
        return self.default_token_uri

    async def _notify_page(self, record: PendingRequest, success: bool) -> None:
        payload = _without_none(
            success=success,
            txHash=record.tx_hash,
            blockNumber=record.block_number,
            origin=record.origin,
            error=None if success else record.error,
        )
        message = Message(MessageType.PROOF_TRANSACTION_COMPLETED, payload, sender=BACKGROUND)
        delivered = await self.bus.send_to_tabs(message, origin=record.origin)
        if not delivered:
            logger.warning(f"[PROOF] No open page for {record.origin} to notify")

    async def _save_soulbound_later(self, record: PendingRequest, sbt_data: Optional[Dict[str, Any]]) -> None:
        await asyncio.sleep(self.timeouts.sbt_save_delay)
        sbt = sbt_data or record.sbt
        if not sbt:
            logger.warning(f"[PROOF] No SBT data for {record.request_id}, nothing saved")
            return
        try:
            sbt_id, replaced = await self.soulbound.record_confirmed(sbt, record.tx_hash)
        except Exception as e:
            logger.error(f"[PROOF] Failed to save SBT for {record.request_id}: {e}")
            return
        await self.bus.broadcast(Message(
            MessageType.SBT_SAVED,
            {"id": sbt_id, "replaced": replaced, "txHash": record.tx_hash},
            sender=BACKGROUND,
        ))
        logger.info(f"[PROOF] SBT {sbt_id} {'updated' if replaced else 'saved'}")

    async def attach_soulbound(self, sbt: Optional[Dict[str, Any]], token_uri: Optional[str] = None) -> Dict[str, Any]:
        """Attach SBT metadata from the verifier page to the live proof request."""
        if not isinstance(sbt, dict):
            raise InvalidRequest("SBT data is required")
        flow = self._flows.get(RequestClass.PROOF)
        if flow is None or flow.removed:
            logger.warning("[PROOF] SBT update with no proof request in flight")
            return {"success": False, "error": "No proof request in progress"}

        flow.record.sbt = sbt
        flow.record.token_uri = token_uri or sbt.get("tokenURI")
        await self.slots.put(flow.record)
        return {"success": True}

    async def save_soulbound(self, sbt: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        logger.warning("[PROOF] Refused direct SBT save")
        return {
            "success": False,
            "error": "SBTs are saved only after a confirmed proof transaction",
        }

    async def prepare_proof_surface(self) -> Dict[str, Any]:
        """Warm up the approval surface ahead of a proof request."""
        try:
            await self.surface.show(None)
        except SurfaceUnavailable as e:
            logger.debug(f"[SURFACE] Prepare failed: {e.message}")
        return {"ok": True}

    # =========================================================================
    # Introspection and recovery
    # =========================================================================

    def status_of(self, request_class: RequestClass) -> RequestStatus:
        flow = self._flows.get(request_class)
        if flow is None or flow.removed:
            return RequestStatus.IDLE
        return flow.record.status

    def live_request(self, request_class: RequestClass) -> Optional[PendingRequest]:
        flow = self._flows.get(request_class)
        return flow.record if flow is not None and not flow.removed else None

    def _deadline(self, record: PendingRequest) -> float:
        t = self.timeouts
        if record.is_terminal:
            return t.completion_retention
        if record.status is RequestStatus.AWAITING_SURFACE:
            return t.surface_open_timeout
        if record.status is RequestStatus.AWAITING_DECISION:
            return t.address_timeout if record.request_class is RequestClass.ADDRESS else t.decision_timeout
        if record.status is RequestStatus.GENERATING_PROOF:
            return t.proof_generation_delay
        if record.status is RequestStatus.SUBMITTING_TX:
            return t.tx_submission_delay
        if record.status is RequestStatus.EXECUTOR_PENDING:
            return t.executor_timeout
        return t.decision_timeout

    async def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove stored records that no live flow owns and whose state deadline
        has passed. Returns the number of records removed.
        """
        now = now if now is not None else time.time()
        removed = 0
        for cls in RequestClass:
            try:
                record = await self.slots.get(cls)
            except (KeyError, ValueError) as e:
                logger.warning(f"[ORCH] Discarding unreadable {cls.slot_key}: {e}")
                await self.slots.discard(cls)
                removed += 1
                continue
            if record is None:
                continue

            flow = self._flows.get(cls)
            if flow is not None and not flow.removed and flow.record.request_id == record.request_id:
                continue
            if now - record.state_entered_at < self._deadline(record):
                continue

            if await self.slots.discard(cls, record.request_id):
                removed += 1
                logger.warning(
                    f"[ORCH] Swept orphaned {cls.value} request {record.request_id} ({record.status.value})"
                )
                if cls is RequestClass.PROOF:
                    await self._progress("removed", record)
        return removed

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.timeouts.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[ORCH] Sweep failed: {e}")

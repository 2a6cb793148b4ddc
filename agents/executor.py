"""
Proof Transaction Executor
==========================

[ROLE] Offscreen context that owns the signing key and submits proof
transactions for the background. It is reached at the ``executor`` endpoint.

[PROTOCOL]
    background --SEND_PROOF_TX{correlationId, address, proofCalldata, contractInfo, tokenURI}--> executor
    executor   --{"accepted": true}--> background                (immediate ack)
    executor   --PROOF_TX_RESPONSE{correlationId, success, txHash, blockNumber | error}--> background

Every ``SEND_PROOF_TX`` gets exactly one ``PROOF_TX_RESPONSE`` unless the
executor is configured ``silent`` (used to exercise the executor timeout).

[CHAIN] There is no RPC node here: the executor verifies the calldata shape,
signs a digest of the transaction with its account and derives a
deterministic transaction hash from the signature. Block numbers come from a
local counter.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import encode_hex, is_address, keccak, to_checksum_address

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
from wallet.errors import ExecutorFailure, MalformedPayload, WalletError
from wallet.proofs import parse_calldata, public_inputs

logger = logging.getLogger(__name__)


class ProofExecutor:
    """
    [USAGE]
        executor = ProofExecutor(bus, account=Account.from_key(key))
        executor.attach()
    """

    def __init__(
        self,
        bus: MessageBus,
        account: Optional[LocalAccount] = None,
        name: str = EXECUTOR,
        latency: float = 0.0,
        fail_with: Optional[str] = None,
        silent: bool = False,
        start_block: int = 1_000_000,
    ):
        self.bus = bus
        self.account = account or Account.create()
        self.name = name
        self.latency = latency
        self.fail_with = fail_with
        self.silent = silent
        self._block = start_block
        self._tasks: Set[asyncio.Task] = set()
        self.submitted: Dict[str, Dict[str, Any]] = {}

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
        if message.type != MessageType.SEND_PROOF_TX:
            return None
        if not message.correlation_id:
            logger.warning("[EXECUTOR] SEND_PROOF_TX without correlation id dropped")
            return {"accepted": False, "error": "correlationId is required"}

        task = asyncio.get_running_loop().create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {"accepted": True}

    async def _process(self, message: Message) -> None:
        call_id = message.correlation_id
        try:
            result = await self.submit(message.payload)
        except WalletError as e:
            logger.warning(f"[EXECUTOR] {call_id} failed: {e.message}")
            result = {"success": False, "error": e.message}
        except Exception as e:
            logger.error(f"[EXECUTOR] {call_id} crashed: {e}", exc_info=True)
            result = {"success": False, "error": str(e)}

        if self.silent:
            logger.debug(f"[EXECUTOR] Withholding response for {call_id}")
            return

        reply = Message(MessageType.PROOF_TX_RESPONSE, result, sender=self.name, correlation_id=call_id)
        try:
            await self.bus.request(BACKGROUND, reply)
        except TransportError as e:
            logger.warning(f"[EXECUTOR] Response for {call_id} not delivered: {e}")

    async def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate, sign and "mine" one proof transaction.

        Raises:
            MalformedPayload: bad address, calldata or contract info
            ExecutorFailure: configured failure (network error, revert...)
        """
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_with:
            raise ExecutorFailure(self.fail_with)

        address = payload.get("address")
        if not isinstance(address, str) or not is_address(address):
            raise MalformedPayload(f"Invalid recipient address: {address!r}")
        calldata = parse_calldata(payload.get("proofCalldata"))

        contract_info = payload.get("contractInfo") or {}
        if not isinstance(contract_info, dict):
            raise MalformedPayload("contractInfo must be an object")
        contract = contract_info.get("address")
        if contract is not None and not is_address(contract):
            raise MalformedPayload(f"Invalid contract address: {contract!r}")

        tx = {
            "from": self.account.address,
            "to": to_checksum_address(contract) if contract else None,
            "recipient": to_checksum_address(address),
            "publicInputs": public_inputs(calldata),
            "tokenURI": payload.get("tokenURI"),
        }
        digest = keccak(text=json.dumps(tx, sort_keys=True, separators=(",", ":")))
        signed = self.account.sign_message(encode_defunct(digest))
        tx_hash = encode_hex(keccak(signed.signature))

        self._block += 1
        self.submitted[tx_hash] = tx
        logger.info(f"[EXECUTOR] Proof tx {tx_hash[:18]}... mined in block {self._block}")
        return {"success": True, "txHash": tx_hash, "blockNumber": str(self._block)}

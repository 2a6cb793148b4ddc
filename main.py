#!/usr/bin/env python3
"""
DID Wallet Bridge - demo runner
===============================

Wires every wallet context onto one in-process relay and plays a page
request through it:

    page --DID_WALLET_*--> page adapter --relay--> background orchestrator
                                                     |-> approval popup (human)
                                                     +-> proof executor

Usage:
    python main.py --scenario address
    python main.py --scenario proof-with-address --fast
    python main.py --scenario issuance --reject
    python main.py --scenario proof --ignore          # decision timeout

Examples:
    # Keep state in a file database across runs
    python main.py --db data/demo.db --scenario save

    # Executor reports a network failure
    python main.py --scenario proof-with-address --executor-fail "network error" --fast

    # Keep the approval UI activity lines
    python main.py --scenario address --activity-log activity.html
"""

import argparse
import asyncio
import json
import logging
from collections import deque
from contextlib import suppress
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()

from config import config
from core.events import PROOF_PROGRESS, EventBus
from core.logger import UIStreamHandler
from core.persistence import DurableRequestStore
from core.transport import MessageBus
from agents.bridge import ApprovalPopup, BusApprovalSurface, approve_all, ignore_all, reject_all
from agents.executor import ProofExecutor
from agents.page_adapter import PageAdapter, PageWindow
from wallet.orchestrator import Orchestrator

logging.basicConfig(
    level=getattr(logging, config.logging.level, logging.INFO),
    format=config.logging.format,
    datefmt=config.logging.datefmt,
)
logger = logging.getLogger("wallet")

DEMO_ORIGIN = "https://verifier.example"
DEMO_CONTRACT = {"address": "0x5FbDB2315678afecb367f032d93F642f64180aa3", "chainId": 31337}

DEMO_CREDENTIAL: Dict[str, Any] = {
    "id": "urn:uuid:resident-0001",
    "type": ["VerifiableCredential", "ResidentCard"],
    "issuer": {"id": "did:web:gov.example", "name": "Ministry of Interior"},
    "credentialSubject": {"id": "did:ethr:0xabc", "name": "Kim Resident", "region": "Seoul"},
}

# scenario -> (page request type, page response type, extra page fields)
SCENARIOS = {
    "address": ("DID_WALLET_REQUEST_ADDRESS", "DID_WALLET_ADDRESS_RESPONSE", {}),
    "issuance": (
        "DID_WALLET_REQUEST_VC_ISSUANCE",
        "DID_WALLET_VC_ISSUANCE_RESPONSE",
        {"vc": DEMO_CREDENTIAL, "student": {"name": "Kim Resident"}},
    ),
    "save": ("DID_WALLET_SAVE_VC", "DID_WALLET_VC_SAVE_RESPONSE", {"vc": DEMO_CREDENTIAL}),
    "proof": (
        "DID_WALLET_REQUEST_PROOF",
        "DID_WALLET_PROOF_RESPONSE",
        {"region": "Seoul", "vcType": "ResidentCard", "prep": {}},
    ),
    "proof-with-address": (
        "DID_WALLET_REQUEST_PROOF_WITH_ADDRESS",
        "DID_WALLET_PROOF_WITH_ADDRESS_RESPONSE",
        {"region": "Seoul", "vcType": "ResidentCard", "prep": {}, "contractInfo": DEMO_CONTRACT},
    ),
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="DID wallet approval orchestration demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        type=str,
        default=":memory:",
        help=f"SQLite database for wallet state (default: in-memory, env default: {config.storage.database_path})",
    )
    parser.add_argument(
        "--scenario", "-s",
        choices=sorted(SCENARIOS),
        default="address",
        help="Page request to play (default: address)",
    )
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument("--reject", action="store_true", help="Human rejects the request")
    decision.add_argument("--ignore", action="store_true", help="Human never answers (decision timeout)")
    parser.add_argument(
        "--executor-fail",
        type=str,
        default=None,
        metavar="ERROR",
        help="Executor reports this error instead of confirming",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Scale every protocol deadline down by 100x",
    )
    parser.add_argument(
        "--activity-log",
        type=str,
        default=None,
        metavar="FILE",
        help="Write the approval UI activity lines (HTML) to FILE on exit",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def dump_activity_log(path: str, lines) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    logger.info(f"[MAIN] Wrote {len(lines)} activity line(s) to {path}")


async def run(args: argparse.Namespace) -> int:
    timeouts = config.timeouts.scaled(0.01) if args.fast else config.timeouts
    events = EventBus()

    ui_log_buffer = deque(maxlen=config.logging.buffer_size)
    ui_handler = UIStreamHandler(ui_log_buffer, events)
    ui_handler.setLevel(logging.INFO)
    logging.getLogger().addHandler(ui_handler)

    store = DurableRequestStore(args.db)
    await store.initialize()

    bus = MessageBus()
    policy = reject_all if args.reject else ignore_all if args.ignore else approve_all
    popup = ApprovalPopup(bus, store, policy=policy)
    executor = ProofExecutor(bus, fail_with=args.executor_fail, latency=timeouts.sbt_save_delay)
    surface = BusApprovalSurface(bus, timeout=timeouts.surface_open_timeout)
    orchestrator = Orchestrator(store, bus, surface, timeouts=timeouts, events=events)

    window = PageWindow(DEMO_ORIGIN)
    page = PageAdapter(bus, window)

    async def on_progress(payload: Dict[str, Any]) -> None:
        logger.info(f"[MAIN] progress: {payload['status']}")

    await events.subscribe(PROOF_PROGRESS, on_progress)

    popup.attach()
    executor.attach()
    await orchestrator.start()
    await page.attach()
    logger.info(f"[MAIN] Wallet address: {popup.address}")

    request_type, response_type, fields = SCENARIOS[args.scenario]
    exit_code = 0
    try:
        await page.receive({"type": request_type, **fields})
        response = await window.wait_for(response_type, timeout=timeouts.decision_timeout * 2)
        print(json.dumps(response, indent=2))

        if args.scenario == "proof-with-address" and response.get("approved"):
            wait = timeouts.proof_generation_delay + timeouts.executor_timeout
            completed = await window.wait_for("DID_WALLET_PROOF_COMPLETED", timeout=wait)
            print(json.dumps(completed, indent=2))
            exit_code = 0 if completed.get("success") else 1
        elif args.scenario == "proof" and response.get("approved"):
            wait = timeouts.proof_generation_delay + timeouts.tx_submission_delay + timeouts.surface_open_timeout
            outcome = await events.next(
                PROOF_PROGRESS, lambda p: p["status"] in ("completed", "failed"), timeout=wait,
            )
            exit_code = 0 if outcome["status"] == "completed" else 1
        else:
            exit_code = 0 if response.get("success") or response.get("approved") else 1

        # Let retention and soulbound save run out
        await asyncio.sleep(timeouts.completion_retention + timeouts.sbt_save_delay)
    except asyncio.TimeoutError:
        logger.error("[MAIN] Page never got a response")
        exit_code = 2
    finally:
        page.detach()
        await orchestrator.stop()
        await executor.close()
        await popup.close()
        await store.close()
        logging.getLogger().removeHandler(ui_handler)
        if args.activity_log:
            dump_activity_log(args.activity_log, ui_log_buffer)
        logger.info("[MAIN] Shutdown complete")
    return exit_code


def main() -> int:
    args = parse_args()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    with suppress(KeyboardInterrupt):
        return asyncio.run(run(args))
    return 130


if __name__ == "__main__":
    raise SystemExit(main())

"""
Wallet Bridge Test Configuration
================================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: one component, in-memory store
- E2E tests: every context wired onto one relay

[FIXTURES]
- fast_timeouts: protocol deadlines scaled down for tests
- store: initialized in-memory DurableRequestStore
- wallet_factory: spawn a full wallet (page, orchestrator, popup, executor)

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/e2e/           # End-to-end tests
"""

import sys
import asyncio
import tempfile
import shutil
import logging
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Generator, List, Optional

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import TimeoutConfig
from core.events import PROOF_PROGRESS, REQUEST_STATE, EventBus
from core.persistence import DurableRequestStore
from core.transport import BACKGROUND, Message, MessageBus, MessageType


VERIFIER_ORIGIN = "https://verifier.example"
CONTRACT_INFO = {"address": "0x5FbDB2315678afecb367f032d93F642f64180aa3", "chainId": 31337}


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/e2e/" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="wallet_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


# ============================================================================
# Store Fixtures (Isolated)
# ============================================================================

@pytest.fixture(scope="function")
def isolated_db() -> Generator[str, None, None]:
    """In-memory SQLite, one per test."""
    yield ":memory:"


@pytest_asyncio.fixture(scope="function")
async def store(isolated_db: str) -> AsyncGenerator[DurableRequestStore, None]:
    """Initialized DurableRequestStore."""
    instance = DurableRequestStore(isolated_db)
    await instance.initialize()
    yield instance
    await instance.close()


@pytest.fixture(scope="function")
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture(scope="function")
def fast_timeouts() -> TimeoutConfig:
    """
    Deadlines small enough for tests, ordered like the real ones
    (generation and submission well inside the executor window).
    """
    return TimeoutConfig(
        decision_timeout=0.3,
        address_timeout=0.3,
        proof_generation_delay=0.05,
        tx_submission_delay=0.05,
        completion_retention=0.2,
        executor_timeout=0.4,
        idle_lock=0.2,
        sbt_save_delay=0.02,
        surface_open_timeout=0.3,
        sweep_interval=0.05,
    )


# ============================================================================
# Wallet Factory Fixture
# ============================================================================

class WalletHarness:
    """
    Every wallet context on one relay.

    [USAGE]
        wallet = await wallet_factory(policy=reject_all)
        reply = await wallet.request(MessageType.REQUEST_WALLET_ADDRESS)
    """

    def __init__(
        self,
        store: DurableRequestStore,
        timeouts: TimeoutConfig,
        policy: Optional[Callable] = None,
        executor_options: Optional[Dict[str, Any]] = None,
        origin: str = VERIFIER_ORIGIN,
    ):
        from agents.bridge import ApprovalPopup, BusApprovalSurface
        from agents.executor import ProofExecutor
        from agents.page_adapter import PageAdapter, PageWindow
        from wallet.orchestrator import Orchestrator

        self.store = store
        self.timeouts = timeouts
        self.origin = origin
        self.bus = MessageBus()
        self.events = EventBus()
        self.popup = ApprovalPopup(self.bus, store, policy=policy)
        self.executor = ProofExecutor(self.bus, **(executor_options or {}))
        self.surface = BusApprovalSurface(self.bus, timeout=timeouts.surface_open_timeout)
        self.orchestrator = Orchestrator(store, self.bus, self.surface, timeouts=timeouts, events=self.events)
        self.window = PageWindow(origin)
        self.page = PageAdapter(self.bus, self.window)

        self.states: List[Dict[str, Any]] = []
        self.progress: List[Dict[str, Any]] = []

    async def start(self) -> "WalletHarness":
        await self.events.subscribe(REQUEST_STATE, self.states.append)
        await self.events.subscribe(PROOF_PROGRESS, self.progress.append)
        self.popup.attach()
        self.executor.attach()
        await self.orchestrator.start()
        await self.page.attach()
        return self

    async def stop(self) -> None:
        self.page.detach()
        await self.orchestrator.stop()
        await self.executor.close()
        await self.popup.close()

    async def request(self, msg_type: MessageType, **payload) -> Optional[Dict[str, Any]]:
        """Send a request to the background as the page adapter would."""
        payload.setdefault("origin", self.origin)
        message = Message(msg_type, payload, sender=self.page.name)
        return await self.bus.request(BACKGROUND, message)

    def statuses(self, request_class: str) -> List[str]:
        return [s["status"] for s in self.states if s["requestClass"] == request_class]

    def progress_statuses(self) -> List[str]:
        return [p["status"] for p in self.progress]


@pytest_asyncio.fixture(scope="function")
async def wallet_factory(store, fast_timeouts) -> AsyncGenerator[Callable, None]:
    """
    Factory for started wallets sharing the test store.

    [USAGE]
        async def test_rejects(wallet_factory):
            wallet = await wallet_factory(policy=reject_all)
    """
    created: List[WalletHarness] = []

    async def _create(**kwargs) -> WalletHarness:
        kwargs.setdefault("timeouts", fast_timeouts)
        harness = WalletHarness(store, **kwargs)
        await harness.start()
        created.append(harness)
        return harness

    yield _create

    for harness in created:
        await harness.stop()


@pytest_asyncio.fixture(scope="function")
async def wallet(wallet_factory) -> WalletHarness:
    """Started wallet whose human approves everything."""
    return await wallet_factory()


# ============================================================================
# Test Data
# ============================================================================

@pytest.fixture(scope="function")
def resident_vc() -> Dict[str, Any]:
    return {
        "id": "urn:uuid:resident-0001",
        "type": ["VerifiableCredential", "ResidentCard"],
        "issuer": {"id": "did:web:gov.example", "name": "Ministry of Interior"},
        "credentialSubject": {"id": "did:ethr:0xABC", "name": "Kim Resident", "region": "Seoul"},
    }


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def eventually():
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    async def _eventually(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if loop.time() >= deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return _eventually

"""
Wallet Bridge Configuration
===========================
Centralized configuration for the background orchestrator and its collaborators.

[TIMEOUTS] Protocol deadlines are fixed constants shared with the page-side
scripts and the approval UI. Changing them breaks compatibility.
"""

from dataclasses import dataclass, field, replace

import os

# ============================================================================
# Environment overrides
# ============================================================================

WALLET_DB_PATH: str = os.getenv("WALLET_DB_PATH", "data/wallet_state.db").strip()
WALLET_LOG_LEVEL: str = os.getenv("WALLET_LOG_LEVEL", "INFO").upper()

# Storage keys persisted across context restarts
SAVED_VCS_KEY = "savedVCs"
SAVED_SBTS_KEY = "savedSBTs"
WALLET_LOCKED_KEY = "walletLocked"


@dataclass
class TimeoutConfig:
    """Protocol deadlines (seconds)."""

    # Human decision window for approval requests
    decision_timeout: float = 30.0

    # Human decision window for address disclosure
    address_timeout: float = 30.0

    # Simulated proof generation latency
    proof_generation_delay: float = 10.0

    # Plain proof submission: wait in submitting-transaction before completion
    tx_submission_delay: float = 10.0

    # Terminal proof records stay readable for late subscribers
    completion_retention: float = 3.0

    # Executor round trip (SEND_PROOF_TX -> PROOF_TX_RESPONSE)
    executor_timeout: float = 60.0

    # Wallet auto-lock after inactivity
    idle_lock: float = 5 * 60.0

    # Delay between completion and soulbound record save
    sbt_save_delay: float = 0.5

    # Approval surface must confirm visibility within this window
    surface_open_timeout: float = 5.0

    # Recovery sweep period for orphaned records
    sweep_interval: float = 1.0

    def scaled(self, factor: float) -> "TimeoutConfig":
        """Return a copy with every deadline multiplied by ``factor``."""
        return replace(
            self,
            **{name: getattr(self, name) * factor for name in self.__dataclass_fields__},
        )


@dataclass
class StorageConfig:
    """Durable request store settings."""

    # SQLite database shared by all contexts (":memory:" for tests)
    database_path: str = WALLET_DB_PATH

    # Token URI used when the verifier page did not attach one
    default_token_uri: str = "ipfs://Qm..."


@dataclass
class LoggingConfig:
    level: str = WALLET_LOG_LEVEL
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"
    # Lines kept for the activity feed
    buffer_size: int = 1000


@dataclass
class Config:
    """Main configuration object."""

    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global configuration instance
config = Config()

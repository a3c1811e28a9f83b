"""
Service Configuration

Every component reads its settings from a dataclass that can load itself
from the environment. Defaults match a local development setup against
Solana devnet and a local Redis.

Environment Variables:
    BATCH_SIZE: Messages per batch (default 1000)
    BATCH_TIMEOUT_MS: Max age of an open batch before it is closed (default 300000)

    REDIS_URL: Redis connection URL (default redis://localhost:6379/0)
    REDIS_STREAM: Stream key to consume (default mqtt:messages)
    REDIS_GROUP: Consumer group (default bridge)
    REDIS_CONSUMER: Consumer name within the group (default anchor-<hostname>)
    REDIS_READ_COUNT: Entries per XREADGROUP call (default 100)
    REDIS_BLOCK_MS: Blocking read timeout (default 5000)

    SOLANA_ENABLED: Enable anchoring (default true)
    SOLANA_RPC_URL: JSON-RPC endpoint (default devnet)
    SOLANA_PRIVATE_KEY: Wallet secret (base58, JSON byte array, or base64)
    SOLANA_NETWORK: devnet, testnet or mainnet-beta (default devnet)
    SOLANA_RPC_TIMEOUT_SECONDS: Per-request timeout (default 30)
    SOLANA_CONFIRM_TIMEOUT_SECONDS: Confirmation wait (default 60)

    BLOCKCHAIN_RETRY_INTERVAL_MS: Reconciler period (default 300000)
    BLOCKCHAIN_MAX_RETRIES: Attempts before a batch is failed (default 10)
    BLOCKCHAIN_RECORD_ON_STARTUP: Run a scheduler tick at startup (default false)
    BLOCKCHAIN_SCHEDULE_ENABLED: Enable the windowed scheduler (default true)
    ANCHOR_WINDOW_SECONDS: Scheduler window length (default 600)
    ANCHOR_INTER_ATTEMPT_DELAY_MS: Pause between anchoring attempts (default 1000)
    ANCHOR_RETRY_BATCH_LIMIT: Batches per reconciler pass (default 10)
    ANCHOR_CLAIM_LEASE_SECONDS: Lifetime of an anchoring claim (default 300)
    ANCHOR_MEMO_BYTE_BUDGET: Max encoded proof record size (default 566)
    ANCHOR_MIN_BALANCE_SOL: Balance below which the client is unhealthy (default 0.001)
    ANCHOR_OVERSIZE_POLICY: fail or shrink (default fail)
"""

import os
import socket
from dataclasses import dataclass, field
from typing import Optional

from .db.config import DatabaseConfig


DEVNET_RPC_URL = "https://api.devnet.solana.com"
VALID_NETWORKS = ("devnet", "testnet", "mainnet-beta")
OVERSIZE_POLICIES = ("fail", "shrink")


class ConfigError(ValueError):
    """Raised when an environment setting is missing or malformed."""
    pass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class BatchingConfig:
    """Batch closing triggers."""
    size_threshold: int = 1000
    timeout_seconds: float = 300.0

    def __post_init__(self):
        if self.size_threshold < 1:
            raise ConfigError("BATCH_SIZE must be at least 1")
        if self.timeout_seconds <= 0:
            raise ConfigError("BATCH_TIMEOUT_MS must be positive")

    @classmethod
    def from_env(cls) -> "BatchingConfig":
        return cls(
            size_threshold=_env_int("BATCH_SIZE", 1000),
            timeout_seconds=_env_int("BATCH_TIMEOUT_MS", 300_000) / 1000.0,
        )


@dataclass
class StreamConfig:
    """Redis stream consumer settings."""
    url: str = "redis://localhost:6379/0"
    stream: str = "mqtt:messages"
    group: str = "bridge"
    consumer: str = field(default_factory=lambda: f"anchor-{socket.gethostname()}")
    read_count: int = 100
    block_ms: int = 5000

    @classmethod
    def from_env(cls) -> "StreamConfig":
        return cls(
            url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            stream=os.environ.get("REDIS_STREAM", "mqtt:messages"),
            group=os.environ.get("REDIS_GROUP", "bridge"),
            consumer=os.environ.get("REDIS_CONSUMER") or f"anchor-{socket.gethostname()}",
            read_count=_env_int("REDIS_READ_COUNT", 100),
            block_ms=_env_int("REDIS_BLOCK_MS", 5000),
        )


@dataclass
class SolanaConfig:
    """Ledger connection settings."""
    enabled: bool = True
    rpc_url: str = DEVNET_RPC_URL
    private_key: Optional[str] = None
    network: str = "devnet"
    rpc_timeout_seconds: float = 30.0
    confirm_timeout_seconds: float = 60.0

    def __post_init__(self):
        if self.network not in VALID_NETWORKS:
            raise ConfigError(
                f"SOLANA_NETWORK must be one of {', '.join(VALID_NETWORKS)}, "
                f"got {self.network!r}"
            )

    @property
    def is_mainnet(self) -> bool:
        return self.network == "mainnet-beta"

    @classmethod
    def from_env(cls) -> "SolanaConfig":
        return cls(
            enabled=_env_bool("SOLANA_ENABLED", True),
            rpc_url=os.environ.get("SOLANA_RPC_URL", DEVNET_RPC_URL),
            private_key=os.environ.get("SOLANA_PRIVATE_KEY") or None,
            network=os.environ.get("SOLANA_NETWORK", "devnet"),
            rpc_timeout_seconds=_env_float("SOLANA_RPC_TIMEOUT_SECONDS", 30.0),
            confirm_timeout_seconds=_env_float("SOLANA_CONFIRM_TIMEOUT_SECONDS", 60.0),
        )


@dataclass
class AnchoringConfig:
    """Scheduler, reconciler and anchoring client settings."""
    retry_interval_seconds: float = 300.0
    max_retries: int = 10
    record_on_startup: bool = False
    schedule_enabled: bool = True
    window_seconds: int = 600
    inter_attempt_delay_seconds: float = 1.0
    retry_batch_limit: int = 10
    startup_delay_seconds: float = 5.0
    schedule_grace_seconds: float = 5.0
    claim_lease_seconds: int = 300
    byte_budget: int = 566
    min_balance_sol: float = 0.001
    oversize_policy: str = "fail"

    def __post_init__(self):
        if self.max_retries < 1:
            raise ConfigError("BLOCKCHAIN_MAX_RETRIES must be at least 1")
        if self.window_seconds < 1:
            raise ConfigError("ANCHOR_WINDOW_SECONDS must be at least 1")
        if self.oversize_policy not in OVERSIZE_POLICIES:
            raise ConfigError(
                f"ANCHOR_OVERSIZE_POLICY must be one of {', '.join(OVERSIZE_POLICIES)}, "
                f"got {self.oversize_policy!r}"
            )

    @classmethod
    def from_env(cls) -> "AnchoringConfig":
        return cls(
            retry_interval_seconds=_env_int("BLOCKCHAIN_RETRY_INTERVAL_MS", 300_000) / 1000.0,
            max_retries=_env_int("BLOCKCHAIN_MAX_RETRIES", 10),
            record_on_startup=_env_bool("BLOCKCHAIN_RECORD_ON_STARTUP", False),
            schedule_enabled=_env_bool("BLOCKCHAIN_SCHEDULE_ENABLED", True),
            window_seconds=_env_int("ANCHOR_WINDOW_SECONDS", 600),
            inter_attempt_delay_seconds=_env_int("ANCHOR_INTER_ATTEMPT_DELAY_MS", 1000) / 1000.0,
            retry_batch_limit=_env_int("ANCHOR_RETRY_BATCH_LIMIT", 10),
            claim_lease_seconds=_env_int("ANCHOR_CLAIM_LEASE_SECONDS", 300),
            byte_budget=_env_int("ANCHOR_MEMO_BYTE_BUDGET", 566),
            min_balance_sol=_env_float("ANCHOR_MIN_BALANCE_SOL", 0.001),
            oversize_policy=os.environ.get("ANCHOR_OVERSIZE_POLICY", "fail").lower(),
        )


@dataclass
class Settings:
    """All service settings, loaded once at startup."""
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    anchoring: AnchoringConfig = field(default_factory=AnchoringConfig)
    database: Optional[DatabaseConfig] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            batching=BatchingConfig.from_env(),
            stream=StreamConfig.from_env(),
            solana=SolanaConfig.from_env(),
            anchoring=AnchoringConfig.from_env(),
            database=DatabaseConfig.from_env_or_none(),
        )

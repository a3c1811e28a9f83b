"""Tests for environment configuration and service wiring helpers."""

import pytest

from telemetry_anchor.config import (
    AnchoringConfig,
    BatchingConfig,
    ConfigError,
    Settings,
    SolanaConfig,
    StreamConfig,
)
from telemetry_anchor.db import (
    BatchStoreDriver,
    DatabaseConfig,
    InMemoryBatchStore,
    get_batchstore_driver,
)
from telemetry_anchor.main import create_batch_store, create_wallet_signer

ENV_VARS = (
    "BATCH_SIZE", "BATCH_TIMEOUT_MS",
    "REDIS_URL", "REDIS_STREAM", "REDIS_GROUP", "REDIS_CONSUMER", "REDIS_READ_COUNT", "REDIS_BLOCK_MS",
    "SOLANA_ENABLED", "SOLANA_RPC_URL", "SOLANA_PRIVATE_KEY", "SOLANA_NETWORK",
    "SOLANA_RPC_TIMEOUT_SECONDS", "SOLANA_CONFIRM_TIMEOUT_SECONDS",
    "BLOCKCHAIN_RETRY_INTERVAL_MS", "BLOCKCHAIN_MAX_RETRIES", "BLOCKCHAIN_RECORD_ON_STARTUP",
    "BLOCKCHAIN_SCHEDULE_ENABLED", "ANCHOR_WINDOW_SECONDS", "ANCHOR_INTER_ATTEMPT_DELAY_MS",
    "ANCHOR_RETRY_BATCH_LIMIT", "ANCHOR_CLAIM_LEASE_SECONDS", "ANCHOR_MEMO_BYTE_BUDGET",
    "ANCHOR_MIN_BALANCE_SOL", "ANCHOR_OVERSIZE_POLICY",
    "DATABASE_URL", "DATABASE_HOST", "BATCHSTORE_DRIVER",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:

    def test_settings_defaults(self):
        settings = Settings.from_env()
        assert settings.batching.size_threshold == 1000
        assert settings.batching.timeout_seconds == 300.0
        assert settings.stream.stream == "mqtt:messages"
        assert settings.stream.consumer.startswith("anchor-")
        assert settings.solana.network == "devnet"
        assert settings.solana.enabled
        assert settings.anchoring.max_retries == 10
        assert settings.anchoring.retry_interval_seconds == 300.0
        assert settings.anchoring.window_seconds == 600
        assert settings.anchoring.byte_budget == 566
        assert settings.anchoring.oversize_policy == "fail"
        assert settings.database is None


class TestFromEnv:

    def test_batching(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "50")
        monkeypatch.setenv("BATCH_TIMEOUT_MS", "1500")
        config = BatchingConfig.from_env()
        assert config.size_threshold == 50
        assert config.timeout_seconds == 1.5

    def test_stream(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
        monkeypatch.setenv("REDIS_CONSUMER", "worker-7")
        config = StreamConfig.from_env()
        assert config.url == "redis://cache:6380/2"
        assert config.consumer == "worker-7"

    def test_anchoring(self, monkeypatch):
        monkeypatch.setenv("BLOCKCHAIN_MAX_RETRIES", "4")
        monkeypatch.setenv("BLOCKCHAIN_SCHEDULE_ENABLED", "false")
        monkeypatch.setenv("BLOCKCHAIN_RECORD_ON_STARTUP", "yes")
        monkeypatch.setenv("ANCHOR_INTER_ATTEMPT_DELAY_MS", "250")
        monkeypatch.setenv("ANCHOR_OVERSIZE_POLICY", "SHRINK")
        config = AnchoringConfig.from_env()
        assert config.max_retries == 4
        assert config.schedule_enabled is False
        assert config.record_on_startup is True
        assert config.inter_attempt_delay_seconds == 0.25
        assert config.oversize_policy == "shrink"

    def test_solana(self, monkeypatch):
        monkeypatch.setenv("SOLANA_NETWORK", "mainnet-beta")
        monkeypatch.setenv("SOLANA_ENABLED", "0")
        config = SolanaConfig.from_env()
        assert config.is_mainnet
        assert not config.enabled

    def test_database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://anchor:s3cret@db:5433/telemetry?sslmode=require")
        config = Settings.from_env().database
        assert config.host == "db"
        assert config.port == 5433
        assert config.password == "s3cret"
        assert config.ssl_mode == "require"
        assert "s3cret" not in config.to_url(include_password=False)


class TestValidation:

    def test_non_integer(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "lots")
        with pytest.raises(ConfigError, match="BATCH_SIZE must be an integer"):
            BatchingConfig.from_env()

    def test_non_number(self, monkeypatch):
        monkeypatch.setenv("ANCHOR_MIN_BALANCE_SOL", "some")
        with pytest.raises(ConfigError, match="must be a number"):
            AnchoringConfig.from_env()

    def test_bad_network(self):
        with pytest.raises(ConfigError, match="SOLANA_NETWORK"):
            SolanaConfig(network="localnet")

    def test_bad_oversize_policy(self):
        with pytest.raises(ConfigError, match="ANCHOR_OVERSIZE_POLICY"):
            AnchoringConfig(oversize_policy="truncate")

    def test_bounds(self):
        with pytest.raises(ConfigError):
            BatchingConfig(size_threshold=0)
        with pytest.raises(ConfigError):
            BatchingConfig(timeout_seconds=0)
        with pytest.raises(ConfigError):
            AnchoringConfig(max_retries=0)


class TestStoreSelection:

    def test_memory_by_default(self):
        assert get_batchstore_driver() == BatchStoreDriver.MEMORY
        assert isinstance(create_batch_store(Settings()), InMemoryBatchStore)

    def test_postgres_when_database_configured(self, monkeypatch):
        monkeypatch.setenv("DATABASE_HOST", "db")
        assert get_batchstore_driver() == BatchStoreDriver.PSYCOPG2

    def test_explicit_driver(self, monkeypatch):
        monkeypatch.setenv("BATCHSTORE_DRIVER", "memory")
        monkeypatch.setenv("DATABASE_HOST", "db")
        assert get_batchstore_driver() == BatchStoreDriver.MEMORY

    def test_unknown_driver(self, monkeypatch):
        monkeypatch.setenv("BATCHSTORE_DRIVER", "sqlite")
        with pytest.raises(ValueError, match="Unknown BATCHSTORE_DRIVER"):
            get_batchstore_driver()

    def test_postgres_without_database(self, monkeypatch):
        monkeypatch.setenv("BATCHSTORE_DRIVER", "psycopg2")
        with pytest.raises(ConfigError):
            create_batch_store(Settings())

    def test_dsn(self):
        dsn = DatabaseConfig(host="db", password="pw").to_dsn()
        assert "host=db" in dsn
        assert "password=pw" in dsn
        assert "connect_timeout=10" in dsn


class TestWalletSelection:

    def test_generated_on_devnet(self):
        signer = create_wallet_signer(Settings())
        assert signer.address

    def test_required_on_mainnet(self):
        settings = Settings(solana=SolanaConfig(network="mainnet-beta"))
        with pytest.raises(ConfigError, match="required on mainnet"):
            create_wallet_signer(settings)

    def test_configured_key(self):
        from telemetry_anchor.core import WalletSigner

        expected = WalletSigner.from_seed(bytes(32))
        settings = Settings(solana=SolanaConfig(private_key=expected.secret_base58()))
        assert create_wallet_signer(settings).address == expected.address

"""
Database Layer for Telemetry Anchor

Provides:
- BatchStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema
- Connection configuration
"""

from .store import (
    BatchStore,
    InMemoryBatchStore,
    PostgresBatchStore,
    BatchStoreError,
    BatchNotFoundError,
    AnchorStatusError,
    StoreTimeoutError,
    SCHEMA_SQL,
    summarize_batch,
)
from .config import (
    BatchStoreDriver,
    DatabaseConfig,
    get_batchstore_driver,
    get_database_url,
)

__all__ = [
    "BatchStore",
    "InMemoryBatchStore",
    "PostgresBatchStore",
    "BatchStoreError",
    "BatchNotFoundError",
    "AnchorStatusError",
    "StoreTimeoutError",
    "SCHEMA_SQL",
    "summarize_batch",
    "BatchStoreDriver",
    "DatabaseConfig",
    "get_batchstore_driver",
    "get_database_url",
]

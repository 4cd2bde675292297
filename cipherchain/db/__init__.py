"""
Database Layer for the CipherChain Ledger

Provides:
- BlockStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema
- Environment-based configuration
"""

from .store import (
    BlockStore,
    InMemoryBlockStore,
    PostgresBlockStore,
    ChainHead,
    BlockStoreError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
    StorageUnavailableError,
)
from .config import (
    DatabaseConfig,
    LedgerConfig,
    BlockStoreDriver,
    get_database_config,
    get_database_url,
)

__all__ = [
    "BlockStore",
    "InMemoryBlockStore",
    "PostgresBlockStore",
    "ChainHead",
    "BlockStoreError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "StorageUnavailableError",
    "DatabaseConfig",
    "LedgerConfig",
    "BlockStoreDriver",
    "get_database_config",
    "get_database_url",
]

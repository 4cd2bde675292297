"""
Block store construction from configuration.

Mode is determined by environment variables:
- BLOCKSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

A configured but unreachable database is an error, not a silent
fallback to memory: blocks written to memory would be lost on restart.
"""

from typing import Optional

from ..core.codec import PlainCodec, codec_from_env
from ..observability import get_logger
from .config import BlockStoreDriver, DatabaseConfig, get_blockstore_driver, get_database_config
from .store import BlockStore, InMemoryBlockStore, PostgresBlockStore, StorageUnavailableError

logger = get_logger(__name__)


def create_block_store(codec: Optional[PlainCodec] = None) -> BlockStore:
    """
    Create the appropriate BlockStore based on configuration.

    Returns:
        InMemoryBlockStore for development/testing
        PostgresBlockStore when a database is configured
    """
    driver = get_blockstore_driver()

    if driver == BlockStoreDriver.MEMORY:
        logger.info("Using in-memory block store (no persistence)")
        return InMemoryBlockStore()

    config = get_database_config()
    if config is None:
        raise StorageUnavailableError(
            f"BLOCKSTORE_DRIVER is {driver.value} but no database is configured. "
            "Set DATABASE_URL or DATABASE_HOST."
        )

    return create_postgres_store(config, codec if codec is not None else codec_from_env())


def create_postgres_store(config: DatabaseConfig, codec: PlainCodec) -> PostgresBlockStore:
    """Create PostgresBlockStore with psycopg2 and make sure the schema exists."""
    import psycopg2

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    store = PostgresBlockStore(connection_factory, codec=codec)
    store.create_schema()

    logger.info(
        "PostgreSQL block store ready",
        host=f"{config.host}:{config.port}/{config.database}",
        codec=type(codec).__name__,
    )
    return store

"""
Chain Store - The Heart of the System

This is an append-only, hash-linked message ledger.
Nothing is "edited". Messages happen.

The chain store:
- Creates the genesis block once
- Appends one block per message
- Produces hashes
- Chains blocks together
- Serves the full chain and per-participant views

Rules (enforced in code):
- Genesis must exist before any append
- index = tail.index + 1, prevHash = tail.hash, always
- Timestamps are captured once and never recomputed
- Blocks are never updated or deleted

ARCHITECTURE NOTE:
Storage is delegated to the BlockStore abstraction.
- ChainStore: timestamps, hashing, input rules, conflict retry
- BlockStore: atomic tail read + insert, ordering, durability

ChainStore gets (index, prevHash) from the BlockStore inside the
append transaction before hashing, so concurrent appends can never
compute the same index.
"""

import time
from typing import Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import Block, GENESIS_FROM, GENESIS_PAYLOAD, GENESIS_TO
from .hasher import GENESIS_PREV_HASH, Hasher

if TYPE_CHECKING:
    from ..db.store import BlockStore

logger = get_logger(__name__)

DEFAULT_APPEND_RETRIES = 3


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when append input is rejected."""
    pass


class ChainNotInitializedError(LedgerError):
    """
    Raised when append is called before the genesis block exists.

    This is a startup-ordering bug, not a runtime condition:
    initialize() must complete before any append is accepted.
    """
    pass


class AppendConflictError(LedgerError):
    """Raised when an append keeps losing races after all retries (transient)."""
    pass


class ChainStore:
    """
    The core chain service.

    Handles block construction and hashing. Storage is delegated to a
    BlockStore implementation.

    CHAIN INTEGRITY GUARANTEES:
    - Indices are contiguous (0, 1, 2, ...)
    - prevHash is "0" ONLY for genesis (index 0)
    - Every block's hash is computed over its final, stored field values

    CONCURRENCY GUARANTEES (with BlockStore):
    - The whole chain has a single serialization point: begin_append()
    - Conflicts are retried against a freshly read tail, then surfaced

    No chain state is cached here; every call reads the store.
    """

    def __init__(
        self,
        block_store: Optional["BlockStore"] = None,
        append_retries: int = DEFAULT_APPEND_RETRIES,
    ):
        """
        Initialize ChainStore.

        Args:
            block_store: BlockStore implementation for persistence.
                        If None, creates an InMemoryBlockStore.
            append_retries: Attempts per append before giving up on conflicts.
        """
        # Import here to avoid circular imports
        if block_store is None:
            from ..db.store import InMemoryBlockStore
            block_store = InMemoryBlockStore()

        if append_retries < 1:
            raise ValueError("append_retries must be at least 1")

        self._block_store = block_store
        self._append_retries = append_retries

    @property
    def block_store(self) -> "BlockStore":
        """Get the underlying block store."""
        return self._block_store

    @property
    def block_count(self) -> int:
        """Total number of blocks in the chain."""
        return self._block_store.get_block_count()

    @property
    def is_initialized(self) -> bool:
        """True once the genesis block exists."""
        return not self._block_store.get_head().is_empty

    # ================================================================
    # WRITE PATH
    # ================================================================

    def initialize(self) -> Block:
        """
        Create the genesis block if the store is empty.

        Idempotent: with one or more blocks already stored this is a no-op
        and the existing genesis block is returned.
        """
        with self._block_store.begin_append() as ctx:
            if not ctx.head.is_empty:
                ctx.rollback()
                genesis = self._block_store.get_block(0)
                logger.debug("Chain already initialized", block_count=ctx.head.next_index)
                return genesis

            timestamp = Hasher.timestamp()
            genesis = Block(
                index=0,
                timestamp=timestamp,
                from_=GENESIS_FROM,
                to=GENESIS_TO,
                payload=GENESIS_PAYLOAD,
                prev_hash=GENESIS_PREV_HASH,
                hash=Hasher.hash_block(
                    0, timestamp, GENESIS_FROM, GENESIS_TO, GENESIS_PAYLOAD, GENESIS_PREV_HASH
                ),
            )
            ctx.commit(genesis)

        logger.info("Genesis block created", hash=genesis.hash[:16])
        return genesis

    @staticmethod
    def _validate_message(from_: str, to: str, payload: str) -> None:
        for name, value in (("from", from_), ("to", to), ("payload", payload)):
            if not isinstance(value, str) or not value:
                raise ValidationError(f"'{name}' must be a non-empty string")

    def _append_once(self, from_: str, to: str, payload: str) -> Block:
        with self._block_store.begin_append() as ctx:
            if ctx.head.is_empty:
                raise ChainNotInitializedError(
                    "Cannot append: chain has no genesis block. "
                    "initialize() must run before any append."
                )

            index = ctx.head.next_index
            prev_hash = ctx.head.last_hash
            timestamp = Hasher.timestamp()

            block = Block(
                index=index,
                timestamp=timestamp,
                from_=from_,
                to=to,
                payload=payload,
                prev_hash=prev_hash,
                hash=Hasher.hash_block(index, timestamp, from_, to, payload, prev_hash),
            )
            return ctx.commit(block)

    def append(self, from_: str, to: str, payload: str) -> Block:
        """
        Append a message block to the chain.

        Args:
            from_: Sender identity (already authenticated by the caller)
            to: Recipient identity
            payload: Opaque encrypted payload

        Returns:
            The persisted block

        Raises:
            ValidationError: empty sender/recipient
            ChainNotInitializedError: no genesis block
            AppendConflictError: conflicts persisted through every retry
            BlockStoreError: storage failures (not retried)
        """
        from ..db.store import ConcurrencyError, LockTimeoutError

        self._validate_message(from_, to, payload)

        metrics = get_metrics()
        start = time.perf_counter()
        last_error: Optional[Exception] = None

        for attempt in range(1, self._append_retries + 1):
            try:
                block = self._append_once(from_, to, payload)
            except (ConcurrencyError, LockTimeoutError) as e:
                last_error = e
                metrics.record_append_conflict()
                logger.warning(
                    "Append conflict, retrying with fresh tail",
                    attempt=attempt,
                    max_attempts=self._append_retries,
                    error=str(e),
                )
                continue
            except Exception:
                metrics.record_append_failure()
                raise

            latency_ms = (time.perf_counter() - start) * 1000
            metrics.record_append(latency_ms)
            logger.info(
                f"Message block #{block.index} created: {from_} -> {to}",
                index=block.index,
                hash=block.hash[:16],
                duration_ms=round(latency_ms, 2),
            )
            return block

        metrics.record_append_failure()
        raise AppendConflictError(
            f"Append failed after {self._append_retries} attempts: {last_error}"
        ) from last_error

    # ================================================================
    # READ PATH
    # ================================================================

    def get_full_chain(self) -> list[Block]:
        """All blocks ordered by index ascending."""
        return self._block_store.list_all()

    def get_chain_for_participant(self, identity: str) -> list[Block]:
        """
        The participant view: blocks sent by or to identity, plus system
        blocks, ordered by index ascending.

        This is a filtered projection of the one chain, never a separate chain.
        """
        return self._block_store.list_for_participant(identity)

    def get_tail(self) -> Optional[Block]:
        """The highest-index block, or None if nothing is stored yet."""
        return self._block_store.get_tail()

    def get_block(self, index: int) -> Optional[Block]:
        """The block at index, or None."""
        return self._block_store.get_block(index)

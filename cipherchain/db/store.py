"""
Block Store Abstraction

This module defines the BlockStore interface and provides two implementations:
- InMemoryBlockStore: For development and testing
- PostgresBlockStore: For production with full durability and concurrency safety

The BlockStore is responsible for:
- Atomic "read tail + insert next" transactions
- Ordering and durability guarantees
- Chain head management (single source of truth for index/prevHash)

The ChainStore retains responsibility for:
- Computing timestamps and hashes
- Input validation
- Retry on write conflicts

TRANSACTION CONTRACT:
All append operations MUST use the begin_append() context manager:

    with store.begin_append() as ctx:
        index, prev_hash = ctx.head.next_index, ctx.head.last_hash
        # ... compute timestamp and hash ...
        ctx.commit(block)

This ensures the tail read and the insert are ALWAYS in the same
lock scope / connection / transaction.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Optional

from ..core.codec import PlainCodec
from ..core.hasher import GENESIS_PREV_HASH, Hasher
from ..schemas import Block, GENESIS_FROM


# ============================================================
# EXCEPTIONS
# ============================================================

class BlockStoreError(Exception):
    """Base exception for block store errors."""
    pass


class ConcurrencyError(BlockStoreError):
    """Raised when concurrent appends conflict on index or hash."""
    pass


class ChainIntegrityError(BlockStoreError):
    """Raised when a block would break chain linkage."""
    pass


class LockTimeoutError(BlockStoreError):
    """Raised when lock acquisition times out (ledger busy)."""
    pass


class StorageUnavailableError(BlockStoreError):
    """Raised when the durable store cannot be reached."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current state of the chain head.

    This is what gets locked during atomic append.
    """
    last_index: int  # -1 means empty ledger
    last_hash: Optional[str]  # None means empty ledger

    @property
    def next_index(self) -> int:
        """Get the next index to assign."""
        return self.last_index + 1

    @property
    def is_empty(self) -> bool:
        """Check if the ledger is empty."""
        return self.last_index == -1

    @property
    def expected_prev_hash(self) -> str:
        """prevHash the next block must carry."""
        return GENESIS_PREV_HASH if self.is_empty else self.last_hash


@dataclass
class AppendContext:
    """
    Transaction context for atomic append operations.

    Holds the connection, transaction state, and chain head, so commit or
    rollback always happens on the SAME connection that took the lock.
    All transaction state lives here, not on the store, so one store
    instance can be shared across threads.

    Usage:
        with store.begin_append() as ctx:
            block = build_block(ctx.head.next_index, ctx.head.expected_prev_hash, ...)
            ctx.commit(block)
    """
    head: ChainHead
    _store: "BlockStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, block: Block) -> Block:
        """
        Persist the block within this transaction context.

        Returns:
            The persisted block
        """
        if self._committed:
            raise BlockStoreError("Transaction already committed")
        if self._rolled_back:
            raise BlockStoreError("Transaction already rolled back")

        result = self._store._do_commit(self, block)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def check_successor(head: ChainHead, block: Block, conflict_error=ChainIntegrityError) -> None:
    """
    Verify that block is the valid successor of head.

    Raises:
        conflict_error: index or prevHash do not follow head
        ChainIntegrityError: stored hash does not match the fields
    """
    if block.index != head.next_index:
        raise conflict_error(
            f"Index mismatch: expected {head.next_index}, got {block.index}"
        )

    if block.prev_hash != head.expected_prev_hash:
        raise conflict_error(
            f"Previous hash mismatch: expected {head.expected_prev_hash}, "
            f"got {block.prev_hash}"
        )

    if not Hasher.verify_block(block):
        raise ChainIntegrityError(
            f"Hash verification failed for block {block.index}: "
            f"claimed {block.hash[:16]}..."
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class BlockStore(ABC):
    """
    Abstract base class for block storage.

    The BlockStore is the single source of truth for:
    - Indices (contiguous from 0)
    - Previous hashes (chain linkage)
    - Append ordering (concurrency safety)

    Implementations must ensure:
    1. Atomic append: begin_append context guarantees same lock/transaction
    2. No gaps in indices
    3. No duplicate indices or hashes
    4. Blocks are never updated or deleted
    """

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append operation.

        This context manager:
        1. Acquires a lock on the chain head
        2. Returns an AppendContext with the current head state
        3. Ensures commit/rollback happens on the SAME connection
        4. Auto-rollbacks if an exception occurs or nothing was committed
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, block: Block) -> Block:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def list_all(self) -> list[Block]:
        """All blocks ordered by index ascending."""
        pass

    @abstractmethod
    def list_for_participant(self, identity: str) -> list[Block]:
        """
        Blocks where from == identity, to == identity, or from == "system",
        ordered by index ascending.
        """
        pass

    @abstractmethod
    def get_tail(self) -> Optional[Block]:
        """The block with the highest index, or None for an empty store."""
        pass

    @abstractmethod
    def get_block(self, index: int) -> Optional[Block]:
        """The block at index, or None."""
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """
        Get current chain head without locking.

        Use this for read-only operations.
        """
        pass

    @abstractmethod
    def get_block_count(self) -> int:
        """Get total number of blocks in the store."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryBlockStore(BlockStore):
    """
    In-memory implementation of BlockStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._blocks: list[Block] = []
        self._hashes: set[str] = set()
        self._head = ChainHead(last_index=-1, last_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Begin atomic append with thread lock."""
        self._lock.acquire()

        head = ChainHead(
            last_index=self._head.last_index,
            last_hash=self._head.last_hash,
        )
        ctx = AppendContext(head=head, _store=self, _conn="in_memory_lock")

        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _do_commit(self, ctx: AppendContext, block: Block) -> Block:
        """Commit block to in-memory store."""
        if ctx._conn != "in_memory_lock":
            raise BlockStoreError("_do_commit called outside transaction")

        try:
            check_successor(self._head, block)

            if block.hash in self._hashes:
                raise ConcurrencyError(f"Duplicate block hash {block.hash[:16]}...")

            self._blocks.append(block)
            self._hashes.add(block.hash)
            self._head = ChainHead(last_index=block.index, last_hash=block.hash)

            return block

        finally:
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        """Release lock without committing."""
        if ctx._conn == "in_memory_lock":
            ctx._conn = None
            self._lock.release()

    def list_all(self) -> list[Block]:
        """Return all blocks ordered by index."""
        return sorted(self._blocks, key=lambda b: b.index)

    def list_for_participant(self, identity: str) -> list[Block]:
        """Return the participant's view of the chain."""
        return [b for b in self.list_all() if b.involves(identity)]

    def get_tail(self) -> Optional[Block]:
        blocks = self._blocks
        if not blocks:
            return None
        return max(blocks, key=lambda b: b.index)

    def get_block(self, index: int) -> Optional[Block]:
        for block in self._blocks:
            if block.index == index:
                return block
        return None

    def get_head(self) -> ChainHead:
        """Get current head without locking."""
        return ChainHead(
            last_index=self._head.last_index,
            last_hash=self._head.last_hash,
        )

    def get_block_count(self) -> int:
        """Get total block count."""
        return len(self._blocks)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_blocks (
    block_index BIGINT PRIMARY KEY CHECK (block_index >= 0),
    timestamp   TEXT NOT NULL,
    from_user   TEXT NOT NULL,
    to_user     TEXT NOT NULL,
    payload     TEXT NOT NULL,
    prev_hash   TEXT NOT NULL,
    hash        TEXT NOT NULL UNIQUE,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_ledger_blocks_participants
    ON ledger_blocks (from_user, to_user);

CREATE TABLE IF NOT EXISTS ledger_head (
    id         BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_index BIGINT NOT NULL,
    last_hash  TEXT
);

-- Append-only: refuse UPDATE and DELETE on stored blocks
CREATE OR REPLACE FUNCTION ledger_blocks_immutable() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ledger_blocks is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ledger_blocks_no_mutation ON ledger_blocks;
CREATE TRIGGER ledger_blocks_no_mutation
    BEFORE UPDATE OR DELETE ON ledger_blocks
    FOR EACH ROW EXECUTE FUNCTION ledger_blocks_immutable();
"""

_BLOCK_COLUMNS = "block_index, timestamp, from_user, to_user, payload, prev_hash, hash"


class PostgresBlockStore(BlockStore):
    """
    PostgreSQL implementation of BlockStore.

    Provides:
    - Full ACID guarantees
    - Concurrency safety via FOR UPDATE locking of the ledger_head row
    - UNIQUE(block_index) and UNIQUE(hash) as a second line of defense
    - Durability (blocks survive restarts)
    - Lock/statement timeouts to prevent hanging

    Payloads pass through the configured field codec on the way in and out.

    Usage:
        store = PostgresBlockStore(connection_factory)
        store.create_schema()

        with store.begin_append() as ctx:
            ctx.commit(block)
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # PostgreSQL error codes
    PGCODE_UNIQUE_VIOLATION = '23505'
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        codec: Optional[PlainCodec] = None,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL block store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            codec: Field codec applied to stored payloads (default: plaintext).
            lock_timeout_ms: How long to wait for the head lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._codec = codec or PlainCodec()
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except Exception as e:
            raise StorageUnavailableError(f"Could not connect to PostgreSQL: {e}") from e

    def create_schema(self) -> None:
        """Create tables, indexes and the append-only trigger if missing."""
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute(SCHEMA_SQL)
            cursor.execute("""
                INSERT INTO ledger_head (id, last_index, last_hash)
                VALUES (TRUE, -1, NULL)
                ON CONFLICT (id) DO NOTHING
            """)
            conn.commit()
        finally:
            cursor.close()
            conn.close()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin atomic append with FOR UPDATE lock.

        The connection and transaction are scoped to this context manager,
        so the tail read and the insert are ALWAYS on the same connection.
        """
        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            # SET LOCAL keeps timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            try:
                cursor.execute("""
                    SELECT last_index, last_hash
                    FROM ledger_head
                    WHERE id = TRUE
                    FOR UPDATE
                """)
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        "Ledger busy - could not acquire lock. Try again."
                    ) from e
                if kind == "statement":
                    raise StorageUnavailableError(
                        "Query timed out - statement took too long."
                    ) from e
                raise

            row = cursor.fetchone()
            if row is None:
                # First run: head row missing
                cursor.execute("""
                    INSERT INTO ledger_head (id, last_index, last_hash)
                    VALUES (TRUE, -1, NULL)
                    ON CONFLICT (id) DO NOTHING
                """)
                cursor.execute("""
                    SELECT last_index, last_hash
                    FROM ledger_head
                    WHERE id = TRUE
                    FOR UPDATE
                """)
                row = cursor.fetchone()

            head = ChainHead(last_index=row[0], last_hash=row[1])
            ctx = AppendContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except Exception:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL exception as "lock", "statement", "timeout" or None.

        55P03 (lock_not_available) and 57014 (query_canceled) both show up
        here; 57014 covers lock_timeout AND statement_timeout, told apart
        by the message.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    def _do_commit(self, ctx: AppendContext, block: Block) -> Block:
        """Insert the block and move the head within the current transaction."""
        if ctx._cursor is None or ctx._conn is None:
            raise BlockStoreError("_do_commit called outside begin_append context")

        cursor = ctx._cursor
        conn = ctx._conn

        # Re-read head inside the lock
        cursor.execute("""
            SELECT last_index, last_hash
            FROM ledger_head
            WHERE id = TRUE
        """)
        row = cursor.fetchone()
        current = ChainHead(last_index=row[0], last_hash=row[1])

        check_successor(current, block, conflict_error=ConcurrencyError)

        try:
            cursor.execute(f"""
                INSERT INTO ledger_blocks ({_BLOCK_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, (
                block.index,
                block.timestamp,
                block.from_,
                block.to,
                self._codec.encode(block.payload),
                block.prev_hash,
                block.hash,
            ))
        except Exception as e:
            if getattr(e, 'pgcode', None) == self.PGCODE_UNIQUE_VIOLATION:
                raise ConcurrencyError(
                    f"Block {block.index} or hash {block.hash[:16]}... already exists"
                ) from e
            raise

        cursor.execute("""
            UPDATE ledger_head
            SET last_index = %s, last_hash = %s
            WHERE id = TRUE
        """, (block.index, block.hash))

        conn.commit()

        return block

    def _do_rollback(self, ctx: AppendContext) -> None:
        """Rollback current transaction."""
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except Exception:
                pass

    def _fetch_blocks(self, where: str = "", params: tuple = ()) -> list[Block]:
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute(f"""
                SELECT {_BLOCK_COLUMNS}
                FROM ledger_blocks
                {where}
                ORDER BY block_index
            """, params)
            return [self._row_to_block(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
            conn.close()

    def list_all(self) -> list[Block]:
        """List all blocks from PostgreSQL."""
        return self._fetch_blocks()

    def list_for_participant(self, identity: str) -> list[Block]:
        """List the participant's view (uses the (from_user, to_user) index)."""
        return self._fetch_blocks(
            "WHERE from_user = %s OR to_user = %s OR from_user = %s",
            (identity, identity, GENESIS_FROM),
        )

    def get_tail(self) -> Optional[Block]:
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute(f"""
                SELECT {_BLOCK_COLUMNS}
                FROM ledger_blocks
                ORDER BY block_index DESC
                LIMIT 1
            """)
            row = cursor.fetchone()
            return self._row_to_block(row) if row else None
        finally:
            cursor.close()
            conn.close()

    def get_block(self, index: int) -> Optional[Block]:
        blocks = self._fetch_blocks("WHERE block_index = %s", (index,))
        return blocks[0] if blocks else None

    def get_head(self) -> ChainHead:
        """Get current chain head without locking."""
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                SELECT last_index, last_hash
                FROM ledger_head
                WHERE id = TRUE
            """)
            row = cursor.fetchone()
            if row is None:
                return ChainHead(last_index=-1, last_hash=None)
            return ChainHead(last_index=row[0], last_hash=row[1])
        finally:
            cursor.close()
            conn.close()

    def get_block_count(self) -> int:
        """Get total block count."""
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute("SELECT COUNT(*) FROM ledger_blocks")
            return cursor.fetchone()[0]
        finally:
            cursor.close()
            conn.close()

    def _row_to_block(self, row: tuple) -> Block:
        """Convert a database row to a Block."""
        return Block(
            index=row[0],
            timestamp=row[1],
            from_=row[2],
            to=row[3],
            payload=self._codec.decode(row[4]),
            prev_hash=row[5],
            hash=row[6],
        )

"""
Chain Validator

Walks the stored chain and recomputes every hash, reporting the first
block that does not check out. A pure read-side diagnostic: it never
mutates the chain and never raises for integrity failures. A broken
chain is a normal, structured result; the caller decides whether to
log, alert, or refuse new writes.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ..observability import get_logger, get_metrics
from ..schemas import Block, ValidationReport
from .chain import ChainStore
from .hasher import GENESIS_PREV_HASH, Hasher

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a chain walk."""
    valid: bool
    error: Optional[str] = None
    position: Optional[int] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def failure(cls, position: int, reason: str) -> "ValidationResult":
        return cls(valid=False, error=f"{reason} at position {position}", position=position)

    def to_report(self) -> ValidationReport:
        return ValidationReport(valid=self.valid, error=self.error, position=self.position)


class ChainValidator:
    """
    Detects tampering or corruption in the persisted chain.

    Checks, in order, short-circuiting on the first failure:
    - Genesis (position 0): index 0, prevHash "0", self-consistent hash
    - Each later position i:
        1. index == previous index + 1 (no gaps)
        2. prevHash == previous block's hash
        3. stored hash == recomputed hash
    """

    def __init__(self, chain_store: ChainStore):
        self._chain_store = chain_store

    def validate(self) -> ValidationResult:
        """Validate the full stored chain."""
        chain = self._chain_store.get_full_chain()
        result = self.validate_blocks(chain)

        get_metrics().record_validation(result.valid)
        if result.valid:
            logger.debug("Chain validated", block_count=len(chain))
        else:
            logger.warning(
                "Chain validation failed",
                error=result.error,
                position=result.position,
                block_count=len(chain),
            )
        return result

    @staticmethod
    def validate_blocks(blocks: Iterable[Block]) -> ValidationResult:
        """
        Validate a sequence of blocks in the order given.

        Usable on exported chains without a store.
        """
        chain = list(blocks)
        if not chain:
            return ValidationResult.ok()

        genesis = chain[0]
        if (
            genesis.index != 0
            or genesis.prev_hash != GENESIS_PREV_HASH
            or not Hasher.verify_block(genesis)
        ):
            return ValidationResult.failure(0, "genesis block invalid")

        for i in range(1, len(chain)):
            block = chain[i]
            prev = chain[i - 1]

            if block.index != prev.index + 1:
                return ValidationResult.failure(i, "index gap")

            if block.prev_hash != prev.hash:
                return ValidationResult.failure(i, "prevHash mismatch")

            if not Hasher.verify_block(block):
                return ValidationResult.failure(i, "hash invalid")

        return ValidationResult.ok()

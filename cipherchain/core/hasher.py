"""
Block Hashing Service

Computes the SHA-256 digest that links every block to its predecessor.
Same fields → same hash. Always. Forever.

This is SACRED GROUND.

If this breaks, every stored block becomes unverifiable.
Nothing here may change once a genesis block exists.

CANONICAL HASH INPUT:
1. Fields concatenated with no separator, in this exact order:
   index, timestamp, from, to, payload, prevHash
2. index: base-10 integer, no padding
3. timestamp: the stored ISO-8601 string, never re-rendered
4. Encoding: UTF-8
5. Digest: SHA-256, lowercase hex (64 characters)

CANONICAL TIMESTAMP:
    YYYY-MM-DDTHH:MM:SS.mmmZ  (UTC, milliseconds, Z suffix)
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional

GENESIS_PREV_HASH = "0"


class CanonicalSerializationError(Exception):
    """Raised when block fields cannot be hashed deterministically."""
    pass


class Hasher:
    """
    Deterministic block hashing.

    IMMUTABLE CONTRACT:
    - Same (index, timestamp, from, to, payload, prevHash) → same hash
    - Write path and verify path use this class and nothing else
    """

    @staticmethod
    def timestamp(moment: Optional[datetime] = None) -> str:
        """
        Render a moment in the canonical timestamp form.

        The result is captured once when a block is created and stored as
        text. It is part of the hash input and must never be recomputed.

        Args:
            moment: Timezone-aware datetime (defaults to now, UTC)

        Returns:
            e.g. "2024-01-01T12:00:00.000Z"
        """
        if moment is None:
            moment = datetime.now(timezone.utc)

        if moment.tzinfo is None:
            raise CanonicalSerializationError(
                "Block timestamps must be timezone-aware. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )

        utc = moment.astimezone(timezone.utc)
        return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"

    @staticmethod
    def block_input(
        index: int,
        timestamp: str,
        from_: str,
        to: str,
        payload: str,
        prev_hash: str,
    ) -> str:
        """Build the exact string that gets hashed."""
        if isinstance(index, bool) or not isinstance(index, int):
            raise CanonicalSerializationError(
                f"Block index must be an integer, got {type(index).__name__}"
            )
        if index < 0:
            raise CanonicalSerializationError(f"Block index must be non-negative, got {index}")

        for name, value in (
            ("timestamp", timestamp),
            ("from", from_),
            ("to", to),
            ("payload", payload),
            ("prevHash", prev_hash),
        ):
            if not isinstance(value, str):
                raise CanonicalSerializationError(
                    f"Block field '{name}' must be a string, got {type(value).__name__}"
                )

        return f"{index}{timestamp}{from_}{to}{payload}{prev_hash}"

    @classmethod
    def hash_block(
        cls,
        index: int,
        timestamp: str,
        from_: str,
        to: str,
        payload: str,
        prev_hash: str,
    ) -> str:
        """
        Hash a block's fields.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        data = cls.block_input(index, timestamp, from_, to, payload, prev_hash)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @classmethod
    def hash_of(cls, block) -> str:
        """Recompute the hash of an existing Block from its stored fields."""
        return cls.hash_block(
            block.index,
            block.timestamp,
            block.from_,
            block.to,
            block.payload,
            block.prev_hash,
        )

    @classmethod
    def verify_block(cls, block) -> bool:
        """
        Check that a block's stored hash matches its fields.

        Returns False (never raises) for malformed blocks.
        """
        try:
            computed = cls.hash_of(block)
        except CanonicalSerializationError:
            return False
        if not isinstance(block.hash, str):
            return False
        return cls.constant_time_compare(computed, block.hash)

    @staticmethod
    def constant_time_compare(a: str, b: str) -> bool:
        """Compare two digests without leaking timing information."""
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

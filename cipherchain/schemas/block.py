"""
Canonical Block Schema

This is an append-only message ledger, not CRUD.
Nothing is "edited". Messages happen.

Each block:
- Records one message exchange (or the genesis marker)
- Is hashed
- Is chained to its predecessor
"""

from pydantic import BaseModel, ConfigDict, Field

GENESIS_FROM = "system"
GENESIS_TO = "all"
GENESIS_PAYLOAD = "Genesis Block"


class Block(BaseModel):
    """
    The immutable block record.

    Rules:
    - No UPDATE
    - No DELETE
    - Ever

    Chain Integrity Rules:
    - index is contiguous from 0 (genesis)
    - prev_hash is "0" for genesis, the predecessor's hash otherwise
    - hash must be reproducible from (index, timestamp, from, to, payload, prevHash)
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    index: int = Field(
        ...,
        ge=0,
        description="Position in the chain (0 for genesis)"
    )

    # Stored as text: part of the hash input, never re-rendered
    timestamp: str = Field(
        ...,
        description="ISO-8601 UTC creation time, e.g. 2024-01-01T12:00:00.000Z"
    )

    from_: str = Field(
        ...,
        alias="from",
        description="Sender identity ('system' for genesis)"
    )
    to: str = Field(
        ...,
        description="Recipient identity ('all' for genesis)"
    )

    # Opaque to the ledger - never decrypted or interpreted here
    payload: str = Field(
        ...,
        description="End-to-end encrypted message material"
    )

    prev_hash: str = Field(
        ...,
        alias="prevHash",
        description="Hash of the previous block, '0' for genesis"
    )
    hash: str = Field(
        ...,
        description="SHA-256 over index, timestamp, from, to, payload, prevHash"
    )

    def involves(self, identity: str) -> bool:
        """True if this block belongs in the given participant's view."""
        return self.from_ == identity or self.to == identity or self.from_ == GENESIS_FROM

    def to_dict(self) -> dict:
        """Wire form with 'from' and 'prevHash' keys."""
        return self.model_dump(by_alias=True)

"""
Request/response shapes exchanged with the messaging transport
and the ledger viewer.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageRequest(BaseModel):
    """Inbound append request from the messaging transport."""
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    payload: str = Field(
        ...,
        min_length=1,
        description="Encrypted payload (opaque string)"
    )


class MessageReceipt(BaseModel):
    """What the sender gets back once its message is on the chain."""
    model_config = ConfigDict(populate_by_name=True)

    index: int
    hash: str
    prev_hash: str = Field(..., alias="prevHash")
    timestamp: str


class ValidationReport(BaseModel):
    """
    Chain validation outcome.

    A failed validation is data, not an error: valid=False plus the
    first offending position and a description.
    """
    valid: bool
    error: Optional[str] = None
    position: Optional[int] = None

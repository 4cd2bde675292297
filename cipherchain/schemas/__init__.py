# Canonical Schemas for the Message Ledger
# These define the contract every stored block must obey.

from .block import Block, GENESIS_FROM, GENESIS_TO, GENESIS_PAYLOAD
from .messages import MessageRequest, MessageReceipt, ValidationReport

__all__ = [
    # Block
    "Block",
    "GENESIS_FROM",
    "GENESIS_TO",
    "GENESIS_PAYLOAD",
    # Messages
    "MessageRequest",
    "MessageReceipt",
    "ValidationReport",
]

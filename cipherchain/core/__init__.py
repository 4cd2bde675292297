# Core ledger services
from .hasher import Hasher, CanonicalSerializationError, GENESIS_PREV_HASH
from .chain import (
    ChainStore,
    LedgerError,
    ValidationError,
    ChainNotInitializedError,
    AppendConflictError,
)
from .validator import ChainValidator, ValidationResult
from .codec import PlainCodec, SecretBoxCodec, FieldCodecError, codec_from_env

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "GENESIS_PREV_HASH",
    "ChainStore",
    "LedgerError",
    "ValidationError",
    "ChainNotInitializedError",
    "AppendConflictError",
    "ChainValidator",
    "ValidationResult",
    "PlainCodec",
    "SecretBoxCodec",
    "FieldCodecError",
    "codec_from_env",
]

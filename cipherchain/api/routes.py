"""
API Routes for the Message Ledger

Command endpoint (append only - no PATCH, no PUT, no DELETE):
- POST /api/blockchain/messages        - Record a message block

Query endpoints:
- GET /api/blockchain/ledger           - Participant view (identity from X-Username)
- GET /api/blockchain/ledger/{username} - Participant view for a named identity
- GET /api/blockchain/chain            - Full chain export
- GET /api/blockchain/tail             - Current tail block
- GET /api/blockchain/validate         - Chain integrity check

Identity is asserted by the authenticating transport in front of this
service; the ledger trusts it.

Handlers are plain functions: FastAPI runs them in its threadpool, so
blocking storage calls never stall the event loop.
"""

from typing import Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..core.chain import (
    AppendConflictError,
    ChainNotInitializedError,
    ChainStore,
    ValidationError,
)
from ..core.validator import ChainValidator
from ..db.store import LockTimeoutError, StorageUnavailableError
from ..observability import get_logger
from ..schemas import Block, MessageReceipt, MessageRequest, ValidationReport

logger = get_logger(__name__)

router = APIRouter(prefix="/api/blockchain", tags=["Ledger"])

T = TypeVar("T")


# ============================================================
# Dependency Injection
# ============================================================

def get_chain_store(request: Request) -> ChainStore:
    """Get chain store from app state."""
    return request.app.state.chain_store


def get_validator(request: Request) -> ChainValidator:
    """Get validator from app state."""
    return request.app.state.validator


def get_participant(x_username: Optional[str] = Header(default=None)) -> str:
    """Identity asserted by the upstream transport."""
    if not x_username:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Username header",
        )
    return x_username


def append_or_raise(chain_store: ChainStore, from_: str, to: str, payload: str) -> Block:
    """
    Append a block, translating ledger errors to HTTP errors.

    A failed append is always surfaced to the sender.
    """
    try:
        return chain_store.append(from_, to, payload)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (AppendConflictError, LockTimeoutError, StorageUnavailableError) as e:
        logger.warning("Append unavailable", error=str(e), sender=from_)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable, retry the message",
        )
    except ChainNotInitializedError:
        logger.exception("Append before genesis block", sender=from_)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Ledger not initialized",
        )


def read_or_raise(read: Callable[..., T], *args) -> T:
    """Run a read against the store, translating storage outages to 503."""
    try:
        return read(*args)
    except (LockTimeoutError, StorageUnavailableError) as e:
        logger.warning("Ledger read unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable",
        )


# ============================================================
# Command Endpoint
# ============================================================

@router.post(
    "/messages",
    response_model=MessageReceipt,
    status_code=status.HTTP_201_CREATED,
)
def record_message(
    message: MessageRequest,
    chain_store: ChainStore = Depends(get_chain_store),
):
    """
    Record a message block.

    The payload is stored as given; the ledger never decrypts it.
    """
    block = append_or_raise(chain_store, message.from_, message.to, message.payload)
    return MessageReceipt(
        index=block.index,
        hash=block.hash,
        prev_hash=block.prev_hash,
        timestamp=block.timestamp,
    )


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/ledger", response_model=list[Block])
def my_ledger(
    participant: str = Depends(get_participant),
    chain_store: ChainStore = Depends(get_chain_store),
):
    """Participant view for the caller."""
    return read_or_raise(chain_store.get_chain_for_participant, participant)


@router.get("/ledger/{username}", response_model=list[Block])
def participant_ledger(
    username: str,
    chain_store: ChainStore = Depends(get_chain_store),
):
    """
    Participant view: the identity's own blocks plus system blocks,
    in ascending index order. Payloads remain ciphertext.
    """
    return read_or_raise(chain_store.get_chain_for_participant, username)


@router.get("/chain", response_model=list[Block])
def full_chain(chain_store: ChainStore = Depends(get_chain_store)):
    """Full chain export, ordered by index."""
    return read_or_raise(chain_store.get_full_chain)


@router.get("/tail", response_model=Block)
def tail(chain_store: ChainStore = Depends(get_chain_store)):
    """Current highest-index block."""
    block = read_or_raise(chain_store.get_tail)
    if block is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chain is empty")
    return block


@router.get(
    "/validate",
    response_model=ValidationReport,
    response_model_exclude_none=True,
)
def validate_chain(validator: ChainValidator = Depends(get_validator)):
    """
    Walk the chain and recompute every hash.

    A broken chain is reported as valid=false with the first offending
    position; it is not an HTTP error.
    """
    return read_or_raise(validator.validate).to_report()

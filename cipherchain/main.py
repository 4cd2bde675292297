"""
CipherChain - Message Ledger Service

Main application entry point.

Every message is a block. Every block is chained.
Nothing is ever rewritten.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cipherchain import __version__
from cipherchain.api.routes import router as ledger_router
from cipherchain.api.transport import ConnectionRegistry, router as transport_router
from cipherchain.core import ChainStore, ChainValidator
from cipherchain.db.config import LedgerConfig
from cipherchain.db.factory import create_block_store
from cipherchain.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def _cors_origins() -> list[str]:
    configured = os.getenv("CIPHERCHAIN_CORS_ORIGINS", "")
    if configured:
        return [origin.strip() for origin in configured.split(",") if origin.strip()]
    return [
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173",
        "http://localhost:5000",
        "http://127.0.0.1:5000",
    ]


def create_app(chain_store: Optional[ChainStore] = None) -> FastAPI:
    """
    Build the application.

    Args:
        chain_store: Pre-built chain store (tests). Built from environment if None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = chain_store
        if store is None:
            store = ChainStore(
                block_store=create_block_store(),
                append_retries=LedgerConfig.from_env().append_retries,
            )

        # Genesis must exist before any append is accepted
        store.initialize()

        app.state.chain_store = store
        app.state.validator = ChainValidator(store)
        app.state.connections = ConnectionRegistry()

        result = app.state.validator.validate()
        if result.valid:
            logger.info("Chain integrity verified OK", block_count=store.block_count)
        else:
            logger.error("Chain integrity check FAILED!", error=result.error)

        logger.info(
            "Application startup complete",
            block_count=store.block_count,
            store_type=type(store.block_store).__name__,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CipherChain",
        description="""
## Encrypted Message Ledger

An append-only, hash-linked record of every message exchange.

- **Append-only**: blocks are never updated or deleted
- **Linked**: every block carries its predecessor's SHA-256 hash
- **Opaque**: payloads are end-to-end ciphertext; the ledger never decrypts
- **Verifiable**: `/api/blockchain/validate` recomputes the whole chain

### Storage Backends

- **InMemoryBlockStore**: Development/testing (default)
- **PostgresBlockStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ledger_router)
    app.include_router(transport_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "cipherchain"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check with chain validation.

        Checks:
        - Service liveness
        - Block store connectivity and genesis presence
        - Chain integrity

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            chain_store=request.app.state.chain_store,
            validator=request.app.state.validator,
        )

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters, gauges, and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()

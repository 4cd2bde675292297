"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (append latency, conflicts, validations)
- Health check utilities

Configuration:
- CIPHERCHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CIPHERCHAIN_LOG_FORMAT: json, text (default: json in production)
- CIPHERCHAIN_PRODUCTION: Enable production mode

Usage:
    from cipherchain.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Block appended", index=block.index, hash=block.hash[:16])
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
participant_var: ContextVar[str] = ContextVar("participant", default="")

PARTICIPANT_HEADER = "X-Username"


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("CIPHERCHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("CIPHERCHAIN_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("CIPHERCHAIN_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "cipherchain.core.chain",
        "message": "Message block #4 created: alice -> bob",
        "request_id": "abc-123",
        "participant": "alice",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        participant = participant_var.get()
        if participant:
            log_data["participant"] = participant

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Chain validated", block_count=12)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        # Move non-standard kwargs to extra
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request
    - Logs request/response with timing
    - Records the asserted participant identity if present
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        participant = request.headers.get(PARTICIPANT_HEADER)
        if participant:
            participant_var.set(participant)

        logger = get_logger("cipherchain.request")
        metrics = get_metrics()
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            metrics.record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            metrics.record_request(duration_ms, success=False)
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.set("")
            participant_var.set("")


# ============================================================
# METRICS
# ============================================================

MAX_SAMPLES = 1000


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    blocks_appended: int = 0
    append_conflicts: int = 0
    append_failures: int = 0
    validations_run: int = 0
    validations_failed: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Gauges
    active_connections: int = 0

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_append(self, latency_ms: float) -> None:
        """Record a committed block."""
        with self._lock:
            self.blocks_appended += 1
            self.append_latencies_ms.append(latency_ms)
            if len(self.append_latencies_ms) > MAX_SAMPLES:
                self.append_latencies_ms = self.append_latencies_ms[-MAX_SAMPLES:]

    def record_append_conflict(self) -> None:
        with self._lock:
            self.append_conflicts += 1

    def record_append_failure(self) -> None:
        with self._lock:
            self.append_failures += 1

    def record_validation(self, valid: bool) -> None:
        with self._lock:
            self.validations_run += 1
            if not valid:
                self.validations_failed += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        """Record a request."""
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > MAX_SAMPLES:
                self.request_latencies_ms = self.request_latencies_ms[-MAX_SAMPLES:]

    def connection_opened(self) -> None:
        with self._lock:
            self.active_connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self.active_connections = max(0, self.active_connections - 1)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            return {
                "blocks_appended": self.blocks_appended,
                "append_conflicts": self.append_conflicts,
                "append_failures": self.append_failures,
                "validations_run": self.validations_run,
                "validations_failed": self.validations_failed,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "active_connections": self.active_connections,
                "append_latency_p50_ms": percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": percentile(self.append_latencies_ms, 0.99),
                "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(chain_store=None, validator=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        chain_store: ChainStore instance
        validator: ChainValidator instance (chain walk is skipped without it)

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if chain_store is not None:
        try:
            head = chain_store.block_store.get_head()
            checks["block_store"] = {
                "status": "healthy",
                "block_count": head.next_index,
                "tail_hash": head.last_hash[:16] + "..." if head.last_hash else None,
            }
            if head.is_empty:
                checks["block_store"]["status"] = "unhealthy"
                checks["block_store"]["error"] = "genesis block missing"
                all_healthy = False
        except Exception as e:
            checks["block_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    # Chain walk (expensive, O(n))
    if validator is not None:
        try:
            result = validator.validate()
            checks["chain_integrity"] = {
                "status": "healthy" if result.valid else "unhealthy",
                "valid": result.valid,
            }
            if not result.valid:
                checks["chain_integrity"]["error"] = result.error
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )

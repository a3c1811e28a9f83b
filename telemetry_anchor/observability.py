"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with pass IDs
- Pipeline metrics (batches, anchoring outcomes, latencies)
- Health check utilities

Configuration:
- TELEMETRY_ANCHOR_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- TELEMETRY_ANCHOR_LOG_FORMAT: json, text (default: json in production)
- TELEMETRY_ANCHOR_PRODUCTION: Enable production mode

Usage:
    from telemetry_anchor.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Batch closed", batch_id=batch.id, message_count=batch.message_count)
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

# Tags every log line emitted inside one reconciler pass or scheduler tick
pass_id_var: ContextVar[str] = ContextVar("pass_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("TELEMETRY_ANCHOR_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level = logging.getLevelName(os.environ.get("TELEMETRY_ANCHOR_LOG_LEVEL", "INFO").upper())
    # getLevelName returns "Level X" for names it does not know
    return level if isinstance(level, int) else logging.INFO


def _use_json_logging() -> bool:
    format_str = os.environ.get("TELEMETRY_ANCHOR_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "process",
    "processName", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "telemetry_anchor.core.reconciler",
        "message": "Batch anchored",
        "pass_id": "3f2a9c1e",
        "batch_id": "uuid-789",
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

        pass_id = pass_id_var.get()
        if pass_id:
            log_data["pass_id"] = pass_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
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
        pass_id = pass_id_var.get()
        if pass_id:
            prefix = f"[{pass_id}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Batch anchored", batch_id=batch_id, signature=sig)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

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

    Returns:
        ContextLogger instance with structured output
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(level: Optional[int] = None) -> None:
    """
    Route all log records to stdout, as JSON in production and text otherwise.

    Call this once at startup. Replaces any handlers already installed on
    the root logger.
    """
    level = level if level is not None else _get_log_level()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Per-request chatter from the RPC and stream clients
    for name in ("httpx", "httpcore", "redis"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextmanager
def pass_context(pass_id: Optional[str] = None) -> Iterator[str]:
    """Bind a pass ID to every log line emitted inside the block."""
    value = pass_id or uuid.uuid4().hex[:8]
    token = pass_id_var.set(value)
    try:
        yield value
    finally:
        pass_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

@dataclass
class PipelineMetrics:
    """
    In-memory counters for the ingestion and anchoring pipeline.

    One instance is created by the service wiring and handed to every
    component that reports into it.
    """

    # Ingestion
    messages_accepted: int = 0
    messages_dropped: int = 0
    batches_closed: int = 0
    batch_persist_failures: int = 0

    # Anchoring
    anchor_attempts: int = 0
    anchor_confirmed: int = 0
    anchor_failed: int = 0
    anchor_retries: int = 0
    claims_lost: int = 0
    last_anchor_success_at: Optional[str] = None
    last_anchor_error: Optional[str] = None
    last_anchor_error_at: Optional[str] = None

    anchor_latencies_ms: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_message(self, accepted: bool) -> None:
        with self._lock:
            if accepted:
                self.messages_accepted += 1
            else:
                self.messages_dropped += 1

    def record_batch_closed(self) -> None:
        with self._lock:
            self.batches_closed += 1

    def record_persist_failure(self) -> None:
        with self._lock:
            self.batch_persist_failures += 1

    def record_claim_lost(self) -> None:
        with self._lock:
            self.claims_lost += 1

    def record_anchor(
        self,
        success: bool,
        latency_ms: Optional[float] = None,
        error: Optional[str] = None,
        retried: bool = False,
        failed: bool = False,
    ) -> None:
        """Record the outcome of one anchoring attempt."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self.anchor_attempts += 1
            if success:
                self.anchor_confirmed += 1
                self.last_anchor_success_at = now
            else:
                self.last_anchor_error = error
                self.last_anchor_error_at = now
                if retried:
                    self.anchor_retries += 1
                if failed:
                    self.anchor_failed += 1
            if latency_ms is not None:
                self.anchor_latencies_ms.append(latency_ms)
                # Keep only last 1000 samples
                if len(self.anchor_latencies_ms) > 1000:
                    self.anchor_latencies_ms = self.anchor_latencies_ms[-1000:]

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            latencies = list(self.anchor_latencies_ms)
            return {
                "messages_accepted": self.messages_accepted,
                "messages_dropped": self.messages_dropped,
                "batches_closed": self.batches_closed,
                "batch_persist_failures": self.batch_persist_failures,
                "anchor_attempts": self.anchor_attempts,
                "anchor_confirmed": self.anchor_confirmed,
                "anchor_failed": self.anchor_failed,
                "anchor_retries": self.anchor_retries,
                "claims_lost": self.claims_lost,
                "last_anchor_success_at": self.last_anchor_success_at,
                "last_anchor_error": self.last_anchor_error,
                "last_anchor_error_at": self.last_anchor_error_at,
                "anchor_latency_p50_ms": percentile(latencies, 0.5),
                "anchor_latency_p95_ms": percentile(latencies, 0.95),
            }


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None, anchoring_client=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: BatchStore instance
        anchoring_client: AnchoringClient instance (None when anchoring is disabled)

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            counts = store.get_status_counts()
            checks["batch_store"] = {
                "status": "healthy",
                "batch_count": sum(counts.values()),
            }
        except Exception as e:
            checks["batch_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if anchoring_client is not None:
        report = anchoring_client.check_health()
        checks["ledger"] = {
            "status": "healthy" if report.healthy else "unhealthy",
            **report.to_dict(),
        }
        if not report.healthy:
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )

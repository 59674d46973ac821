"""
Logging utilities for relay and attestation operations.

Features:
- Structured JSON logging for production, human-readable for dev
- Correlation IDs shared by HTTP requests and relay runs
- Relay step logging with operation ids and timings
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

# Context variable for request / relay-run correlation ID
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

logger = logging.getLogger(__name__)

_EXTRA_FIELDS = (
    "event",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "error",
    "error_type",
    "operation",
)


class OperationType(str, Enum):
    """Relay operations that get their own log lines."""
    ALLOWANCE = "allowance"
    SOURCE_SUBMIT = "source_submit"
    SOURCE_CONFIRM = "source_confirm"
    EVENT_DECODE = "event_decode"
    ATTESTATION = "attestation"
    DESTINATION_SUBMIT = "destination_submit"
    DESTINATION_CONFIRM = "destination_confirm"
    DIRECT_CALL = "direct_call"


class CorrelationIdFilter(logging.Filter):
    """Logging filter that adds correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = request_id_var.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_format: bool = True, level: str = "INFO") -> None:
    """
    Configure logging for the CLI and the attestation service.

    Args:
        json_format: Use JSON format (for production) or human-readable (for dev)
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.addFilter(CorrelationIdFilter())

    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
            )
        )

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def mask_address(address: str) -> str:
    """Mask middle portion of address for privacy."""
    if not address or len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def new_correlation_id(prefix: str = "relay") -> str:
    correlation_id = f"{prefix}_{uuid.uuid4().hex[:16]}"
    request_id_var.set(correlation_id)
    return correlation_id


class RelayLogger:
    """
    Logger for relay runs.

    Each step is wrapped in ``operation`` which logs start, completion and
    failure with an operation id and duration.
    """

    def __init__(self, direction: str, user_id: str, name: str = "gridrelay.relay") -> None:
        self._direction = direction
        self._user = mask_address(user_id)
        self._logger = logging.getLogger(name)

    @asynccontextmanager
    async def operation(
        self,
        operation: OperationType,
        chain_id: Optional[int] = None,
        **metadata: Any,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Log a relay step. Yields a dict the step may add metadata to."""
        operation_id = f"op_{uuid.uuid4().hex[:12]}"
        context: Dict[str, Any] = {
            "operation_id": operation_id,
            "direction": self._direction,
            "user": self._user,
            "chain_id": chain_id,
            **metadata,
        }
        started = time.perf_counter()
        self._logger.debug(
            f"{self._direction} {operation.value} started on chain {chain_id}",
            extra={"operation": context},
        )
        try:
            yield context
        except Exception as e:
            context["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            context["error"] = str(e)
            self._logger.warning(
                f"{self._direction} {operation.value} failed after "
                f"{context['duration_ms']:.0f}ms: {type(e).__name__}: {e}",
                extra={"operation": context},
            )
            raise
        context["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        self._logger.info(
            f"{self._direction} {operation.value} completed in {context['duration_ms']:.0f}ms",
            extra={"operation": context},
        )

    def state_changed(self, old: str, new: str, tx_hash: Optional[str] = None) -> None:
        self._logger.info(
            f"{self._direction} relay for {self._user}: {old} -> {new}"
            + (f" ({tx_hash})" if tx_hash else ""),
        )


__all__ = [
    "OperationType",
    "CorrelationIdFilter",
    "JSONFormatter",
    "RelayLogger",
    "setup_logging",
    "mask_address",
    "new_correlation_id",
    "request_id_var",
]

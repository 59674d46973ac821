"""Unified exception hierarchy for gridrelay.

All gridrelay-specific exceptions inherit from GridRelayException, enabling:
- Consistent classification in the relay orchestrator
- Proper HTTP status code mapping in the attestation service
- Retry decisions driven by the ``retryable`` flag

Usage:
    from gridrelay.exceptions import (
        GridRelayException,
        EventMismatchError,
        ReceiptPendingError,
    )

    try:
        signature = await service.attest_purchase(...)
    except GridRelayException as e:
        return JSONResponse(status_code=e.http_status, content={"error": e.message})

All exceptions have:
- error_code: Machine-readable error code (e.g., "EVENT_MISMATCH")
- http_status: HTTP status code used by the attestation API
- retryable: Whether the same call may succeed if repeated later
- message: Human-readable error message
- details: Optional additional context dictionary
"""
from __future__ import annotations

from typing import Any, Optional


class GridRelayException(Exception):
    """Base exception for all gridrelay errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "GRIDRELAY_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to the attestation API error body."""
        return {"error": self.message}


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigError(GridRelayException):
    """Missing or invalid configuration. Fatal at startup."""

    error_code = "CONFIG_ERROR"
    http_status = 500


class AddressNotConfiguredError(ConfigError):
    """No contract address is configured for the requested chain."""

    error_code = "ADDRESS_NOT_CONFIGURED"

    def __init__(self, contract: str, chain_id: int) -> None:
        super().__init__(
            f"{contract} contract not configured for chain {chain_id}",
            details={"contract": contract, "chain_id": chain_id},
        )


# =============================================================================
# Validation Errors (4xx)
# =============================================================================

class ValidationError(GridRelayException):
    """Rejected request. No signature is produced."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class MissingFieldsError(ValidationError):
    """Required request fields are absent."""

    error_code = "MISSING_FIELDS"

    def __init__(self, fields: Optional[list[str]] = None) -> None:
        super().__init__(
            "Missing required fields",
            details={"fields": fields or []},
        )


class EventMismatchError(ValidationError):
    """Decoded on-chain event does not match the claimed values."""

    error_code = "EVENT_MISMATCH"

    def __init__(self, reason: str = "", details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        if reason:
            details["reason"] = reason
        super().__init__("Event mismatch", details=details)


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(GridRelayException):
    """Receipt or expected log is absent."""

    error_code = "NOT_FOUND"
    http_status = 404
    retryable = True


class ReceiptNotFoundError(NotFoundError):
    """The origin transaction is unknown to the chain."""

    error_code = "RECEIPT_NOT_FOUND"
    http_status = 502

    def __init__(self, tx_hash: str, chain_id: Optional[int] = None) -> None:
        super().__init__(
            f"Transaction receipt not found for {tx_hash}",
            details={"tx_hash": tx_hash, "chain_id": chain_id},
        )


class ReceiptPendingError(NotFoundError):
    """The origin transaction is known but not mined yet."""

    error_code = "RECEIPT_PENDING"
    http_status = 502

    def __init__(self, tx_hash: str, chain_id: Optional[int] = None) -> None:
        super().__init__(
            f"Transaction {tx_hash} is still pending",
            details={"tx_hash": tx_hash, "chain_id": chain_id},
        )


class EventNotFoundError(NotFoundError):
    """No log from the whitelisted contract exists in the receipt."""

    error_code = "EVENT_NOT_FOUND"
    http_status = 404
    retryable = False

    def __init__(self, event_name: str, tx_hash: str = "") -> None:
        super().__init__(
            f"No {event_name} event found",
            details={"event": event_name, "tx_hash": tx_hash},
        )


# =============================================================================
# Network Errors
# =============================================================================

class NetworkError(GridRelayException):
    """RPC or transport failure."""

    error_code = "NETWORK_ERROR"
    http_status = 502
    retryable = True


class RPCError(NetworkError):
    """JSON-RPC error returned by a node."""

    error_code = "RPC_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        self.code = code
        self.data = data
        super().__init__(message, details={"code": code})


class ConfirmationTimeoutError(NetworkError):
    """A transaction did not reach the required confirmations in time."""

    error_code = "CONFIRMATION_TIMEOUT"

    def __init__(self, tx_hash: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Transaction {tx_hash} not confirmed within {timeout_seconds:.0f}s",
            details={"tx_hash": tx_hash, "timeout_seconds": timeout_seconds},
        )


# =============================================================================
# Relay Errors
# =============================================================================

class UserCancelledError(GridRelayException):
    """The wallet owner rejected a signing or submission prompt."""

    error_code = "USER_CANCELLED"
    http_status = 400

    def __init__(self, message: str = "Request rejected in wallet") -> None:
        super().__init__(message)


class ContractRevertError(GridRelayException):
    """A contract call reverted (during simulation or on chain)."""

    error_code = "CONTRACT_REVERT"
    http_status = 400

    def __init__(self, reason: Optional[str] = None, tx_hash: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(
            reason or "An error occurred calling the contract.",
            details={"tx_hash": tx_hash} if tx_hash else None,
        )


class SignatureServiceError(GridRelayException):
    """The attestation call failed or returned a non-2xx status."""

    error_code = "SIGNATURE_SERVICE_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, details={"status_code": status_code})


class SigningFailureError(GridRelayException):
    """The validator key could not sign the commitment."""

    error_code = "SIGNING_FAILURE"
    http_status = 500


class RelayInProgressError(GridRelayException):
    """Another client instance holds the lease for this transfer slot."""

    error_code = "RELAY_IN_PROGRESS"
    http_status = 409
    retryable = True

    def __init__(self, user_id: str, direction: str, expires_at: int) -> None:
        super().__init__(
            f"A {direction.lower()} relay is already running for {user_id}",
            details={"user_id": user_id, "direction": direction, "lease_expires_at": expires_at},
        )


def is_retryable(exc: BaseException) -> bool:
    """Retry decision for the backoff helpers."""
    return isinstance(exc, GridRelayException) and exc.retryable


__all__ = [
    "GridRelayException",
    "ConfigError",
    "AddressNotConfiguredError",
    "ValidationError",
    "MissingFieldsError",
    "EventMismatchError",
    "NotFoundError",
    "ReceiptNotFoundError",
    "ReceiptPendingError",
    "EventNotFoundError",
    "NetworkError",
    "RPCError",
    "ConfirmationTimeoutError",
    "UserCancelledError",
    "ContractRevertError",
    "SignatureServiceError",
    "SigningFailureError",
    "RelayInProgressError",
    "is_retryable",
]

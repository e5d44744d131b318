"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class LicenseFlowException(Exception):
    """Base exception class for the LicenseFlow backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(LicenseFlowException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(LicenseFlowException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ConcurrentUpdateError(DatabaseError):
    """Raised when a guarded update matched no row because another writer got there first."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"Concurrent update detected on {entity} {entity_id}",
            {"entity": entity, "entity_id": entity_id}
        )


class BlockchainError(LicenseFlowException):
    """Raised when the chain explorer cannot be queried."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "BLOCKCHAIN_ERROR", details)


class QueueError(LicenseFlowException):
    """Raised when there's a job queue error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "QUEUE_ERROR", details)


class SchedulerError(LicenseFlowException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(LicenseFlowException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class RetryableValidationError(ValidationError):
    """Raised by a validation job to ask the queue for another attempt."""

    def __init__(self, order_id: str, reason: str, attempt: int):
        super().__init__(
            f"Retryable validation error: {reason}",
            {"order_id": order_id, "reason": reason, "attempt": attempt}
        )
        self.code = "RETRYABLE_VALIDATION_ERROR"


class DuplicatePaymentError(ValidationError):
    """Raised when a transaction already paid for another confirmed order."""

    def __init__(self, order_id: str, tx_hash: str, paid_order_id: str):
        super().__init__(
            f"Transaction {tx_hash} already confirmed order {paid_order_id}",
            {"order_id": order_id, "tx_hash": tx_hash, "paid_order_id": paid_order_id}
        )
        self.code = "DUPLICATE_PAYMENT"


class NotFoundError(LicenseFlowException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class OrderNotFoundError(NotFoundError):
    """Raised when an order is not found."""

    def __init__(self, order_id: str):
        super().__init__(
            f"Order not found: {order_id}",
            {"order_id": order_id}
        )


class LicenseNotFoundError(NotFoundError):
    """Raised when a license is not found."""

    def __init__(self, license_id: str):
        super().__init__(
            f"License not found: {license_id}",
            {"license_id": license_id}
        )

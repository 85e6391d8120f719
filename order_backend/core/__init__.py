"""Core order processing logic."""
from .exceptions import (
    AlreadyRecordedError,
    ConflictError,
    NotFoundError,
    OrderBackendError,
    PaymentNotCompletedError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    "AlreadyRecordedError",
    "ConflictError",
    "NotFoundError",
    "OrderBackendError",
    "PaymentNotCompletedError",
    "PersistenceError",
    "UpstreamError",
    "ValidationError",
]

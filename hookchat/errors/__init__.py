"""Error handling framework for HookChat.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions carrying those codes

Error categories:
- E-1xxx: Data errors
- E-2xxx: Validation errors
- E-3xxx: Dispatch errors
- E-4xxx: System/internal errors
"""

from hookchat.errors.domain import (
    CancelledSendError,
    DecodeError,
    DispatchError,
    HookChatError,
    HttpStatusError,
    InvalidEndpointError,
    NotFoundError,
    NotRetryableError,
    PersistenceError,
    RetryCancelledError,
    TransportError,
    ValidationError,
)
from hookchat.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Exceptions
    "HookChatError",
    "NotFoundError",
    "ValidationError",
    "PersistenceError",
    "NotRetryableError",
    "DispatchError",
    "InvalidEndpointError",
    "TransportError",
    "HttpStatusError",
    "DecodeError",
    "CancelledSendError",
    "RetryCancelledError",
]

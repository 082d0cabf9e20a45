"""Error handling framework for ClawPanel.

This package provides:
- Typed domain exceptions for panel-facing error mapping
- Error code registry with E-XXXX format codes

Error categories:
- E-1xxx: Remote configuration document errors
- E-2xxx: Validation errors
- E-3xxx: Container / remote execution errors
- E-4xxx: System/internal errors
- E-5xxx: Credential errors
"""

from src.errors.domain import (
    ConflictError,
    DomainError,
    DuplicateSlugError,
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    format_error,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "DuplicateSlugError",
    "ValidationError",
    "InvalidStateError",
    "InvalidStateTransition",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "format_error",
]

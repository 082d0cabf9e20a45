"""Error code registry with E-XXXX format codes.

This module defines the error code system for ClawPanel, organizing errors
into categories:
- E-1xxx: Remote configuration document errors
- E-2xxx: Validation errors
- E-3xxx: Container / remote execution errors
- E-4xxx: System/internal errors
- E-5xxx: Credential errors

Each error includes a code, title, message template, and remediation steps.
Job failures record the code of the raising error in Job.error_code.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    CONFIG = "config"  # E-1xxx: Remote configuration document errors
    VALIDATION = "validation"  # E-2xxx: Validation errors
    REMOTE = "remote"  # E-3xxx: Container / remote execution errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    CREDENTIAL = "credential"  # E-5xxx: Credential errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the operator should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action operator should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Configuration document errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.CONFIG,
        title="Configuration Document Unreadable",
        message_template="Configuration document {path} could not be parsed: {detail}",
        remediation="Inspect the file inside the container, fix or remove it, then retry provisioning.",
    ),
    # Validation errors (E-2xxx)
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.VALIDATION,
        title="Invalid State Transition",
        message_template="{details}",
        remediation="Reload the job; it may already have finished.",
    ),
    # Container / remote execution errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.REMOTE,
        title="Remote Command Timed Out",
        message_template="Command timed out after {timeout}s: {command}",
        remediation="Check the host and container are reachable, then retry.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.REMOTE,
        title="Remote Command Failed",
        message_template="Command exited with code {exit_code}: {command}",
        remediation="Inspect the command output in the job step and fix the container state.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.REMOTE,
        title="Host Unreachable",
        message_template="Could not reach container host {host}.",
        remediation="Verify SSH access and that LXD is running on the host.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="Unexpected error: {details}",
        remediation="This is a system error. Retry the operation. Check the panel logs if issue persists.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {details}",
        remediation="Retry the operation. Check database connectivity if issue persists.",
        is_retryable=True,
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Template Error",
        message_template="Error rendering workspace template {template}: {details}",
        remediation="This indicates a packaging problem. Reinstall the panel.",
    ),
    # Credential errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.CREDENTIAL,
        title="Credential Decryption Failed",
        message_template="Stored credential for provider {provider_id} could not be decrypted.",
        remediation="The encryption key may have changed. Re-enter the provider API key.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def format_error(code: str, **context: object) -> str:
    """Render the registry message for a code, tolerating missing context.

    Args:
        code: Error code in E-XXXX format.
        **context: Values substituted into the message template.

    Returns:
        "<code>: <message>" string; unknown codes render as "Unknown error".
    """
    error_def = get_error(code)
    if not error_def:
        return f"{code}: Unknown error"
    try:
        message = error_def.message_template.format(**context)
    except KeyError:
        message = error_def.title
    return f"{code}: {message}"

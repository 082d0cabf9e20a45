"""Typed domain exceptions for panel-facing error mapping.

These exceptions give callers of the provisioning core stronger
contracts than string matching. Panel handlers can catch specific
exception types to return appropriate HTTP status codes.

Usage:
    # In service layer
    raise NotFoundError("Job", job_id)

    # In panel handler
    try:
        job = service.start_job(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""

from enum import Enum


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., duplicate). Maps to HTTP 409."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidStateError(DomainError):
    """Operation not allowed in the resource's current state. Maps to HTTP 409."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class DuplicateSlugError(ConflictError):
    """Instance slug already taken. Maps to HTTP 409."""

    def __init__(self, slug: str) -> None:
        super().__init__(f"Slug '{slug}' already exists")
        self.slug = slug


class InvalidStateTransition(InvalidStateError):
    """Raised when attempting an invalid job or step state transition.

    Attributes:
        resource_type: 'Job' or 'Step'.
        current_state: The current state of the resource.
        attempted_state: The state that was attempted.
        allowed_transitions: List of valid transition targets from current state.
    """

    code = "E-2005"

    def __init__(
        self,
        resource_type: str,
        current_state: Enum,
        attempted_state: Enum,
        allowed_transitions: list[Enum],
    ) -> None:
        self.resource_type = resource_type
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none (terminal)"
        super().__init__(
            f"{resource_type} cannot transition from '{current_state.value}' to "
            f"'{attempted_state.value}'. Allowed transitions: {allowed_str}"
        )

"""Typed domain exceptions for API error mapping.

These exceptions provide stronger API contract guarantees than
string-based error message matching. Routes can catch specific
exception types to return appropriate HTTP status codes.

Usage:
    # In service layer
    raise NotFoundError("Job", job_id)

    # In route handler
    try:
        job = service.cancel_job(job_id, owner)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    error_code = "E-4004"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    error_code = "E-2003"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., terminal job). Maps to HTTP 409."""

    error_code = "E-2002"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    error_code = "E-2001"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NothingToCreateError(ValidationError):
    """Selection resolved to zero creatable segments. Maps to HTTP 400."""

    error_code = "E-1001"

    def __init__(self, selection_ids: list[str]) -> None:
        if selection_ids:
            detail = f"Selection {', '.join(selection_ids)} contains no available segments."
        else:
            detail = "No segments were selected."
        super().__init__(detail)
        self.selection_ids = selection_ids

"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int = 500, code: str | None = None):
        """Initialize exception with message, status code and error code."""
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    code = "BAD_REQUEST"

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ValidationException(BadRequestException):
    """Business validation failure (availability, lifecycle pre-conditions)."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation error"):
        """Initialize with 400 status code."""
        super().__init__(message)


class ConflictException(AppException):
    """Conflict exception."""

    code = "CONFLICT"

    def __init__(self, message: str = "Conflict", code: str | None = None):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409, code=code)


class InvalidTransitionException(ConflictException):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current_status: str, requested_status: str):
        """Initialize with both statuses in the message."""
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Cannot change appointment status from {current_status} to {requested_status}",
            code="INVALID_TRANSITION",
        )


class ServiceUnavailableException(AppException):
    """A required integration is not configured or unreachable."""

    code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str = "Service unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class InternalServerException(AppException):
    """Unexpected server-side failure."""

    def __init__(self, message: str = "An unexpected error occurred"):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500)

"""Custom exception classes for the permission engine."""

from typing import Optional

from fastapi import HTTPException, status


class PermissionEngineError(Exception):
    """Base exception for the permission engine."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "An error occurred", errors: Optional[dict] = None):
        self.message = message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(PermissionEngineError):
    """Raised when input validation fails."""
    pass


class InheritanceError(ValidationError):
    """Raised when a role parent assignment breaks the hierarchy rules."""
    pass


class DependencyError(ValidationError):
    """Raised when a permission set is missing declared dependencies."""

    def __init__(self, messages: list[str]):
        self.messages = list(messages)
        super().__init__(
            "Permission dependencies not satisfied: " + "; ".join(self.messages),
            errors={"dependencies": self.messages},
        )


class ResourceNotFoundError(PermissionEngineError):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ResourceConflictError(PermissionEngineError):
    """Raised when a resource already exists or is still referenced."""

    status_code = status.HTTP_409_CONFLICT


class AuthorizationError(PermissionEngineError):
    """Raised when the caller may not perform a management action."""

    status_code = status.HTTP_403_FORBIDDEN


class StateTransitionError(PermissionEngineError):
    """Raised on a transition out of a terminal change-request state."""
    pass


class ImmutableRecordError(PermissionEngineError):
    """Raised when an append-only record is updated or deleted."""
    pass


class AuditWriteError(PermissionEngineError):
    """Raised when an audit entry could not be written."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class CacheUnavailableError(PermissionEngineError):
    """Raised when a cache invalidation could not be recorded."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# HTTP exception shortcuts
def forbidden(detail: str = "Insufficient permissions") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)

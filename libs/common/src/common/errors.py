"""Exception taxonomy shared by the client services.

Adapters raise these; each service decides which ones it absorbs and which
ones reach its caller.
"""

from __future__ import annotations


class ServiceError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class NetworkError(ServiceError):
    """Transport failure or an unexpected non-2xx response."""


class ParseError(ServiceError):
    """A response body that could not be decoded or validated."""


class NotFoundError(ServiceError):
    pass


class AuthorizationError(ServiceError):
    """Expired, invalid, or insufficient credentials (401/403)."""


class ConflictError(ServiceError):
    pass


class ValidationError(ServiceError):
    pass


def error_for_status(status: int, message: str) -> ServiceError:
    if status in (401, 403):
        return AuthorizationError(message, status=status)
    if status == 404:
        return NotFoundError(message, status=status)
    if status == 409:
        return ConflictError(message, status=status)
    if status in (400, 422):
        return ValidationError(message, status=status)
    return NetworkError(message, status=status)

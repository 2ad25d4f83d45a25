"""Application error taxonomy.

Services raise these; the exception handlers in `api` render them into the
`{success: false, message, errors?}` envelope with the matching status code.
"""

from typing import Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[list[str]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationFailed(AppError):
    status_code = 400
    default_message = "Validation failed"


class InvalidCredentials(AppError):
    status_code = 401
    default_message = "Invalid email or password"


class InvalidToken(AppError):
    status_code = 401
    default_message = "Invalid token"


class TokenExpired(AppError):
    status_code = 401
    default_message = "Token expired"


class UserNotFound(AppError):
    status_code = 401
    default_message = "Invalid token - user not found"


class Forbidden(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Resource already exists"


class InvalidState(AppError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class Full(AppError):
    status_code = 400
    default_message = "Event is full"


class RateLimited(AppError):
    status_code = 429
    default_message = "Too many requests, please try again shortly"


class Timeout(AppError):
    status_code = 504
    default_message = "Database operation timed out"


class Internal(AppError):
    status_code = 500
    default_message = "Internal server error"

"""
Application error hierarchy.

Services raise these; the HTTP layer renders them through the exception
handlers in app.core.middleware and the real-time layer turns them into
`error` events.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str = "Internal server error", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class InvalidRequestError(AppError):
    status_code = 400
    code = "invalid_request"

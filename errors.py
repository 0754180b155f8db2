"""
Application error taxonomy.

Every business error carries:
- type:        error kind (validation_error / not_found / conflict / server_error)
- code:        machine-readable error code (INVALID_ID / USERNAME_TAKEN / ...)
- message:     human readable description, sent to the client as "error"
- detail:      optional extra payload
- http_status: HTTP status code

Services only raise; the handlers registered in main.py format the response.
"""
import functools
import logging

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for all application errors."""

    type = "error"
    code = "UNKNOWN_ERROR"
    http_status = 500

    def __init__(self, message, code=None, detail=None):
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)

    def to_dict(self):
        body = {"error": self.message, "type": self.type, "code": self.code}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ValidationError(AppError):
    """Missing or malformed input."""

    type = "validation_error"
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(AppError):
    type = "not_found"
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(AppError):
    """A uniqueness rule was violated. Reported as a client error."""

    type = "conflict"
    code = "CONFLICT"
    http_status = 400


class IdAllocationError(AppError):
    """
    No unique invoice ID could be allocated within the retry bound.

    This is contention, not bad input, so it is a server-side failure.
    """

    type = "server_error"
    code = "ID_ALLOCATION_FAILED"
    http_status = 500


class StoreError(AppError):
    type = "server_error"
    code = "STORE_ERROR"
    http_status = 500


def store_errors(message):
    """Turn a PyMongoError raised by the wrapped function into a StoreError."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except PyMongoError as exc:
                logger.exception("%s: %s", message, exc)
                raise StoreError(message) from exc

        return wrapper

    return decorator

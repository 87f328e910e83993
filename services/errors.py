"""Typed service failures shared by the ledger, catalog and identity layers."""
from __future__ import annotations


class BorrowServiceError(RuntimeError):
    """Base class for service failures; ``status_code`` is what the API returns."""

    status_code = 400
    default_message = 'Request could not be processed'

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class ValidationError(BorrowServiceError):
    status_code = 400
    default_message = 'Invalid request'


class Unauthorized(BorrowServiceError):
    status_code = 401
    default_message = 'Invalid credentials'


class Forbidden(BorrowServiceError):
    status_code = 403
    default_message = 'You do not own this item'


class NotFound(BorrowServiceError):
    status_code = 404
    default_message = 'Not found'


class Conflict(BorrowServiceError):
    status_code = 409
    default_message = 'Conflict'


class StoreFailure(BorrowServiceError):
    """Persistence failed; the message never carries driver detail."""

    status_code = 500
    default_message = 'Server error'

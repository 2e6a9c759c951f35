"""Request-level errors raised by the service layer."""

from __future__ import annotations


class ServiceError(Exception):
    """A failure that maps directly onto an HTTP status code."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

"""
Service-layer exceptions.

Service functions raise these; ``api.middleware`` turns them into JSON
responses with the matching HTTP status code.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class; maps to HTTP 400."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403


class ConflictError(ServiceError):
    status_code = 409


class RateLimitedError(ServiceError):
    status_code = 429

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after

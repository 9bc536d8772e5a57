"""
Errors raised by the service layer.

Routes translate these into HTTP responses; each carries the status code
it maps to so the translation stays in one place.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class Unauthenticated(ServiceError):
    """Missing, malformed, badly signed or expired credential."""
    status_code = 401


class Forbidden(ServiceError):
    """Authenticated, but the role is read-only."""
    status_code = 403


class ValidationFailed(ServiceError):
    """A required field is missing or below its minimum length."""
    status_code = 400


class CapacityExceeded(ServiceError):
    """The cemetery already holds the configured number of live plots."""
    status_code = 400


class NotFound(ServiceError):
    """Referenced entity is missing or already soft-deleted."""
    status_code = 404

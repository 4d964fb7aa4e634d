"""
Unified base exception classes for all services.

Each service extends ServiceError with its own base (e.g. ReferralServiceError)
so routers can catch one family and turn it into an HTTP error.
"""


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(ServiceError):
    """A referenced user, referral, purchase or withdrawal does not exist."""

    def __init__(self, message: str):
        super().__init__(message, 404)


class InvalidArgumentError(ServiceError):
    """Caller supplied a value outside the accepted domain."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code)

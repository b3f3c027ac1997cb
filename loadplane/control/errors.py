"""
Control plane exceptions.

Each error carries the HTTP-equivalent status code an outer API layer
should map it to:
- ValidationError (400): bad or missing input, never retried
- AuthorizationError (403): principal is neither owner nor admin
- NotFoundError (404): unknown test id
- TransientIOError (503): a channel/store call failed, retried by loops
- FatalLoopError (500): a background loop died
"""

from typing import Optional


class ControlPlaneError(Exception):
    """Base exception for all control plane errors."""

    status_code = 500


class ValidationError(ControlPlaneError):
    """Raised when a request is missing a field or a field is invalid."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class AuthorizationError(ControlPlaneError):
    """Raised when a principal may not modify a scheduled test."""

    status_code = 403

    def __init__(self, test_id: str, user_id: Optional[str]):
        self.test_id = test_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id or '<anonymous>'} is not authorized to modify test {test_id}"
        )


class NotFoundError(ControlPlaneError):
    """Raised when a requested test does not exist."""

    status_code = 404

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"Test not found: {test_id}")


class TransientIOError(ControlPlaneError):
    """Raised when a remote store or message channel call fails."""

    status_code = 503

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed{detail}")


class FatalLoopError(ControlPlaneError):
    """Recorded when an exception escapes a background loop and ends it."""

    status_code = 500

    def __init__(self, loop_name: str, cause: BaseException):
        self.loop_name = loop_name
        self.cause = cause
        super().__init__(f"{loop_name} loop terminated: {cause}")

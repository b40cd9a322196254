"""Error taxonomy for the automation layer.

Exception Hierarchy:
    StudyPlannerError (base)
    ├── AuthenticationError - missing, malformed, unknown, inactive or expired key
    ├── RpcPermissionError - valid key, operation outside the allowlist
    ├── InvalidRequestError - required request fields missing or invalid
    ├── DownstreamError - read RPC execution failed
    ├── StoreError - data store query or write failed
    └── DeliveryError - webhook endpoint unreachable or non-2xx

Each error carries the HTTP status the API layer renders it with.
DeliveryError never reaches the event emitter: the dispatcher records it
in the delivery audit trail instead.
"""

from typing import Any


class StudyPlannerError(Exception):
    """Base exception for all automation errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        status_code: HTTP status used when the error reaches the API layer.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

    def to_response(self) -> dict[str, Any]:
        """Body returned to API clients."""
        return {"error": self.message}


class AuthenticationError(StudyPlannerError):
    """API key could not be authenticated.

    The response body never says which check failed.
    """

    status_code = 401
    public_message = "Invalid or missing API key"

    def __init__(self, reason: str) -> None:
        super().__init__(self.public_message, details={"reason": reason})
        self.reason = reason


class RpcPermissionError(StudyPlannerError):
    """Requested operation is not in the read-only allowlist."""

    status_code = 403

    def __init__(self, rpc_name: str, allowed_functions: list[str]) -> None:
        super().__init__(
            "Access denied. This API key only allows read-only operations.",
            details={"rpc_name": rpc_name},
        )
        self.rpc_name = rpc_name
        self.allowed_functions = allowed_functions

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "allowed_functions": list(self.allowed_functions)}


class InvalidRequestError(StudyPlannerError):
    """Request is missing required fields."""

    status_code = 400


class DownstreamError(StudyPlannerError):
    """Underlying read RPC failed. Not retried."""

    status_code = 500

    def __init__(self, message: str, *, rpc_name: str | None = None) -> None:
        super().__init__(message, details={"rpc_name": rpc_name})
        self.rpc_name = rpc_name


class StoreError(StudyPlannerError):
    """Data store query or write failed."""

    status_code = 500

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message, details={"operation": operation})
        self.operation = operation


class DeliveryError(StudyPlannerError):
    """A single webhook delivery attempt failed.

    Attributes:
        response_status: HTTP status of the attempt, 0 for network failures.
        response_body: Endpoint response body or the exception message.
    """

    def __init__(self, message: str, *, response_status: int = 0, response_body: str = "") -> None:
        super().__init__(message, details={"response_status": response_status})
        self.response_status = response_status
        self.response_body = response_body

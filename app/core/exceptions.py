"""
Domain errors for sharing and delivery.

Each error carries the HTTP status it maps to so routes can simply raise and
let the global handler in ``app.main`` render ``{"detail", "error_code"}``.
Batch operations catch these per item instead of letting them escape.
"""

from typing import Any, Dict, Optional


class FileShareError(Exception):
    """Base class for every error raised by the sharing core"""

    error_code = "FILE_SHARE_ERROR"
    status_code = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "error_code": self.error_code}
        if self.detail:
            body["context"] = self.detail
        return body


class ValidationError(FileShareError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(FileShareError):
    error_code = "NOT_FOUND"
    status_code = 404


class AccessDeniedError(FileShareError):
    error_code = "ACCESS_DENIED"
    status_code = 403


class InvalidTransitionError(FileShareError):
    """A delivery status change that the state machine does not allow"""

    error_code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, delivery_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move delivery {delivery_id} from '{current}' to '{target}'",
            {"delivery_id": delivery_id, "current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class RetryExhaustedError(FileShareError):
    error_code = "RETRY_EXHAUSTED"
    status_code = 409


class TransientError(FileShareError):
    """Infrastructure failure (store unreachable); the caller may try again later"""

    error_code = "SERVICE_UNAVAILABLE"
    status_code = 503


class DirectoryUnavailableError(TransientError):
    error_code = "DIRECTORY_UNAVAILABLE"


class DeliveryAttemptError(FileShareError):
    """Raised by a delivery attempt that could not reach the recipient"""

    error_code = "DELIVERY_FAILED"
    status_code = 502

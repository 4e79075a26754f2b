"""Error taxonomy for the order lifecycle.

Every error carries a stable ``code``, a message that is safe to show to the
caller, and the HTTP status the API layer renders it with. Provider payloads
never end up in ``message``; adapters pass along at most the provider's own
short ``message`` field.
"""

from typing import Any, Dict, Optional


class OrderError(Exception):
    status_code = 500
    code = "order_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OrderError):
    """Missing or malformed input. Never retried."""

    status_code = 400
    code = "validation_error"


class NotFoundError(OrderError):
    status_code = 404
    code = "not_found"


class ConflictError(OrderError):
    """The request is well formed but the current state forbids it."""

    status_code = 409
    code = "conflict"


class AuthenticationError(OrderError):
    status_code = 401
    code = "authentication_required"


class ForbiddenError(OrderError):
    status_code = 403
    code = "forbidden"


class ExternalError(OrderError):
    """Failure talking to the payment gateway or the carrier."""

    status_code = 502
    code = "external_error"

    def __init__(self, message: str, *, provider: str, operation: str, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.operation = operation


class ExternalTransientError(ExternalError):
    """Timeout, connection failure or 5xx. Retried with backoff before surfacing."""

    status_code = 503
    code = "external_unavailable"
    retryable = True


class ExternalAuthError(ExternalError):
    """Credential rejected even after one re-authentication."""

    code = "external_auth_failed"


class ExternalPermanentError(ExternalError):
    """Business rejection (4xx) from the provider. Not retried."""

    code = "external_rejected"

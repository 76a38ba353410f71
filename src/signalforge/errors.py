"""Domain exceptions raised by the pipeline stages.

HTTP routers translate these into status codes; background sweeps log them
per item and move on.
"""
from __future__ import annotations


class SignalForgeError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(SignalForgeError):
    """Malformed, ambiguous or unsupported payload. Never retried."""
    status_code = 400
    code = "validation_error"


class PayloadTooLarge(ValidationError):
    status_code = 413
    code = "payload_too_large"


class AuthenticationError(SignalForgeError):
    status_code = 401
    code = "unauthorized"


class ScopeError(AuthenticationError):
    status_code = 403
    code = "forbidden:missing_scope"


class NotFoundError(SignalForgeError):
    status_code = 404
    code = "not_found"


class DeliveryError(SignalForgeError):
    """Transient destination failure (HTTP error, timeout). Counts toward the attempt ceiling."""
    code = "delivery_error"


class ConfigurationError(SignalForgeError):
    """Destination cannot be called at all; terminal without consuming a retry."""
    code = "configuration_error"

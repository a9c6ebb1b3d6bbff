"""Error taxonomy for the payment and webhook paths.

Every error carries the HTTP status it maps to and a message that is safe to
return to the caller. The exception handler in ``main`` does the mapping.
"""
from typing import Optional


class PaymentError(Exception):
    status_code = 500
    public_message = "Internal payment error"

    def __init__(self, message: Optional[str] = None, *, public_message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class SecurityError(PaymentError):
    status_code = 401
    public_message = "Invalid webhook signature"


class ValidationError(PaymentError):
    status_code = 400
    public_message = "Invalid payload"

    def __init__(self, message: str) -> None:
        # validation messages describe the caller's own input, so they are returned as-is
        super().__init__(message, public_message=message)


class ReconciliationError(PaymentError):
    status_code = 500
    public_message = "Payment record not found for event"


class UnsupportedProvider(PaymentError):
    status_code = 404

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"unsupported payment provider: {provider!r}", public_message="Unsupported payment provider")


class ProviderError(PaymentError):
    status_code = 502
    public_message = "Payment provider request failed"

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ConfigurationError(PaymentError):
    status_code = 500
    public_message = "Payment service misconfigured"


class AuthenticationError(PaymentError):
    status_code = 401
    public_message = "Authentication required"


class PermissionDenied(PaymentError):
    status_code = 403
    public_message = "Not allowed"


class NotFound(PaymentError):
    status_code = 404
    public_message = "Not found"

    def __init__(self, what: str = "Not found") -> None:
        super().__init__(what, public_message=what)

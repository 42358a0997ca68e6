"""
Domain exceptions for the QR payment exchange.

Services raise these; routers convert them to HTTP responses whose detail
carries a stable ``kind`` so clients can tell an expired token from a used one.
"""


class PaymentServiceError(Exception):
    """Base exception for payment exchange errors."""
    kind = "error"
    status_code = 400
    default_message = "Payment could not be processed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(PaymentServiceError):
    """Bad amount, malformed code or unsupported payment method."""
    kind = "validation"
    status_code = 400
    default_message = "Invalid request"


class TokenError(PaymentServiceError):
    """Terminal token failure; never retried."""
    pass


class InvalidToken(TokenError):
    kind = "invalid_token"
    status_code = 404
    default_message = "QR code not found or invalid"


class AlreadyRedeemed(TokenError):
    kind = "already_redeemed"
    status_code = 409
    default_message = "This QR code has already been used"


class Expired(TokenError):
    kind = "expired"
    status_code = 410
    default_message = "QR code expired"


class InsufficientFunds(PaymentServiceError):
    """Payer's wallet (or bonus share of it) cannot cover the amount."""
    kind = "insufficient_funds"
    status_code = 402
    default_message = "Insufficient balance"


class NotAllowed(PaymentServiceError):
    """Actor may not perform this operation on this token."""
    kind = "not_allowed"
    status_code = 403
    default_message = "Operation not allowed"

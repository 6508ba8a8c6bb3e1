"""Domain-specific exceptions for the payment activation workflow."""


class ActivationError(Exception):
    """Base exception for payment activation."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidInput(ActivationError):
    """Raised when a request is missing required fields or carries bad values."""
    pass


class InvalidPayee(InvalidInput):
    """Raised when a phone number cannot be normalized to the 254XXXXXXXXX format."""
    pass


class DuplicateAccount(ActivationError):
    """Raised when an activated account already uses the email."""
    pass


class AuthFailure(ActivationError):
    """Raised when the Daraja OAuth exchange fails."""
    pass


class PushPaymentFailure(ActivationError):
    """Raised when Daraja rejects an STK push request. payload is the raw provider body."""

    def __init__(self, message: str = "", payload=None):
        super().__init__(message)
        self.payload = payload


class UnknownCallback(ActivationError):
    """Raised when a callback refers to no pending activation (late, duplicate or garbled)."""
    pass


class PostPaymentPersistenceFailure(ActivationError):
    """Raised when payment succeeded but the account could not be activated."""
    pass

from decimal import Decimal
from typing import Optional


class PaySyncError(Exception):
    """Base class for errors raised by the payment subsystem."""


class GatewayError(PaySyncError):
    """
    The payment gateway could not be used for the requested operation.

    `status_code` is the HTTP status returned by the gateway, if any.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(GatewayError):
    """Gateway rejected our credentials or the token endpoint was unreachable."""


class SubmissionError(GatewayError):
    """Order submission to the gateway failed. The local order stays pending."""


class QueryError(GatewayError):
    """Transaction status lookup failed or the tracking id is unknown."""


class NotFoundError(PaySyncError):
    """No local record matches the given identifier."""


class ValidationError(PaySyncError):
    """Input was rejected before any state was changed."""


class AmountMismatchError(ValidationError):
    def __init__(self, expected: Decimal, submitted: Decimal):
        super().__init__(
            "Amount mismatch detected. Please refresh and try again."
        )
        self.expected = expected
        self.submitted = submitted

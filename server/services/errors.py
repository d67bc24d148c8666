"""Error taxonomy for the payment flow.

Every error that may reach a client is a :class:`PaymentError` with a short,
stable ``message`` and the HTTP status it maps to. Internal detail goes to the
log, never into ``message``.
"""


class PaymentError(Exception):
    status_code = 500
    default_message = "Payment request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(PaymentError):
    status_code = 401
    default_message = "User not authenticated"


class InvalidRequest(PaymentError):
    status_code = 400
    default_message = "Missing required fields"


class NotFound(PaymentError):
    status_code = 404
    default_message = "Payment not found"


class ProcessorError(PaymentError):
    status_code = 502
    default_message = "Payment processor error"


class ConversionError(PaymentError):
    status_code = 502
    default_message = "Currency conversion unavailable"


class PersistenceError(PaymentError):
    status_code = 500
    default_message = "Could not save payment"


class ConversionDegraded(Exception):
    """Live rate lookup failed; the converter answers with a fallback rate.

    Raised and handled inside the converter only. It never aborts a payment.
    """

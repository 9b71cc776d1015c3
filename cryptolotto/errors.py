class LottoError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str = None, **context):
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)


class ValidationError(LottoError):
    status_code = 400
    message = "Invalid request"


class CapacityExceeded(ValidationError):
    message = "Not enough tickets available"


class MalformedSignature(ValidationError):
    message = "Invalid transaction signature"


class WebhookVerificationError(ValidationError):
    message = "Webhook signature verification failed"


class PaymentNotCompleted(ValidationError):
    message = "Payment not completed"


class ReferenceConflict(ValidationError):
    message = "Payment reference already used for another purchase"


class NotFoundError(LottoError):
    status_code = 404
    message = "Not found"


class NoActiveRound(NotFoundError):
    message = "No active lottery round"


class RoundNotFound(NotFoundError):
    message = "Lottery round not found"


class RoundConflict(LottoError):
    status_code = 409
    message = "Lottery round state changed concurrently"


class ExternalProviderError(LottoError):
    status_code = 502
    message = "Payment provider request failed"


class StoreError(LottoError):
    status_code = 503
    message = "Ledger store unavailable"


class StatsUnavailable(StoreError):
    message = "Statistics unavailable"


class Unauthenticated(LottoError):
    status_code = 401
    message = "Authentication required"


class Forbidden(LottoError):
    status_code = 403
    message = "Admin access required"

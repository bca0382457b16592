"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class PaymentValidationError(DomainException):
    """Payment attributes rejected at creation time"""

    pass


class ScheduleValidationError(DomainException):
    """Payment schedule attributes are inconsistent"""

    pass


class PaymentNotFoundError(DomainException):
    """Referenced payment does not exist"""

    pass


class ScheduleInactiveError(DomainException):
    """Schedule is deactivated and produces no further payments"""

    pass


class IllegalTransitionError(DomainException):
    """Requested status change is not a valid path through the state machine"""

    def __init__(self, payment_id, from_status: str, to_status: str):
        super().__init__(f"Payment {payment_id}: illegal transition {from_status} -> {to_status}")
        self.payment_id = payment_id
        self.from_status = from_status
        self.to_status = to_status


class ReconciliationConflictError(DomainException):
    """Gateway outcome contradicts what the ledger already recorded"""

    pass


class ConcurrencyConflictError(DomainException):
    """Optimistic status check failed; the caller should retry the operation"""

    pass


class RetryNotAllowedError(DomainException):
    """Payment is not eligible for another charge attempt"""

    pass


class GatewayError(DomainException):
    """Payment gateway returned an error or is unavailable"""

    retryable = False

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class GatewayUnavailableError(GatewayError):
    """Network failure, timeout or 5xx from the gateway"""

    retryable = True


class GatewayRateLimitedError(GatewayError):
    """Gateway throttled the request"""

    retryable = True


class GatewayDeclinedError(GatewayError):
    """Definitive decline; a new attempt needs action from the payer"""

    pass


class GatewayRequestError(GatewayError):
    """Gateway rejected the request as invalid"""

    pass


class WebhookSignatureError(DomainException):
    """Webhook payload signature is missing, malformed or does not match"""

    pass


class DuplicatePaymentError(DomainException):
    """A live payment already holds this idempotency key"""

    pass


class PaymentMethodError(DomainException):
    """Payment method change rejected for the payer"""

    pass

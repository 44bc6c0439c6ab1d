from enum import Enum


class ErrorKind(Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    PROCESSOR_UNAVAILABLE = "processor_unavailable"
    AUTHENTICATION_FAILED = "authentication_failed"
    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    INVALID_CARD = "invalid_card"
    INVALID_WEBHOOK_SIGNATURE = "invalid_webhook_signature"
    MALFORMED_WEBHOOK = "malformed_webhook"
    IDEMPOTENCY_KEY_CONFLICT = "idempotency_key_conflict"
    IDEMPOTENCY_KEY_IN_PROGRESS = "idempotency_key_in_progress"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_REQUEST = "invalid_request"
    REFUND_EXCEEDS_ORIGINAL = "refund_exceeds_original"
    MANDATE_CANCELLED = "mandate_cancelled"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    UNKNOWN_PROCESSOR_ERROR = "unknown_processor_error"


# Kinds that a repeat of the same request may resolve.
TRANSIENT_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.TIMEOUT,
    ErrorKind.PROCESSOR_UNAVAILABLE,
})

# Business rejections: surfaced to the donor immediately, never retried.
DECLINE_KINDS = frozenset({
    ErrorKind.CARD_DECLINED,
    ErrorKind.INSUFFICIENT_FUNDS,
    ErrorKind.EXPIRED_CARD,
    ErrorKind.INVALID_CARD,
})

_USER_MESSAGES = {
    ErrorKind.NETWORK_ERROR: "A network error occurred. Please try again.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.PROCESSOR_UNAVAILABLE: "A temporary error occurred. Please try again.",
    ErrorKind.AUTHENTICATION_FAILED: "Payment system configuration error. Please contact support.",
    ErrorKind.CARD_DECLINED: "Your card was declined. Please try a different payment method.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds. Please try a different payment method.",
    ErrorKind.EXPIRED_CARD: "Your card has expired. Please use a different payment method.",
    ErrorKind.INVALID_CARD: "Invalid card details. Please check and try again.",
    ErrorKind.IDEMPOTENCY_KEY_IN_PROGRESS: "Your donation is still being processed. Please wait a moment.",
    ErrorKind.INVALID_AMOUNT: "Invalid donation amount.",
    ErrorKind.INVALID_REQUEST: "Some donation details are invalid. Please check and try again.",
    ErrorKind.REFUND_EXCEEDS_ORIGINAL: "The refund amount exceeds the original donation.",
    ErrorKind.MANDATE_CANCELLED: "This recurring donation has already been cancelled.",
    ErrorKind.UNSUPPORTED_OPERATION: "This change is not available for your payment method.",
    ErrorKind.UNKNOWN_PROCESSOR_ERROR: "An unexpected error occurred. Please try again or contact support.",
}


class PaymentError(Exception):
    """A classified payment adapter failure.

    Messages carry processor reference ids only; never card data or raw
    webhook payloads.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        processor_code: str | None = None,
        processor_message: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.processor_code = processor_code
        self.processor_message = processor_message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def is_decline(self) -> bool:
        return self.kind in DECLINE_KINDS

    @property
    def user_message(self) -> str | None:
        """Donor-facing text. Signature and integration errors have none."""
        return _USER_MESSAGES.get(self.kind)

    def __repr__(self) -> str:
        return f"PaymentError({self.kind.value!r}, {self.message!r}, processor_code={self.processor_code!r})"

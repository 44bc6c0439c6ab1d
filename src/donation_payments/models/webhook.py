from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Processor(Enum):
    STRIPE = "stripe"
    ADYEN = "adyen"
    PAYPAL = "paypal"
    MOCK = "mock"

    @classmethod
    def parse(cls, value: "str | Processor") -> "Processor":
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown payment processor: {value!r}") from None


class WebhookEventType(Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_DISPUTED = "payment.disputed"
    MANDATE_CREATED = "mandate.created"
    MANDATE_UPDATED = "mandate.updated"
    MANDATE_CANCELLED = "mandate.cancelled"
    MANDATE_FAILED = "mandate.failed"
    PAYOUT_PAID = "payout.paid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class WebhookPayload:
    payment_reference: str | None = None
    mandate_reference: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    status: str | None = None
    failure_reason: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    processor: Processor
    external_event_id: str
    event_type: WebhookEventType
    payload: WebhookPayload
    occurred_at: datetime
    raw_reference: str  # sha256 of the raw body; the body itself is never kept here

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.processor.value, self.external_event_id)

from .audit import AuditEntry, DispatchOutcome
from .mandate import EffectiveTiming, Frequency, MandateSchedule, MandateStatus, RecurringMandateResult
from .payment import (
    FeeCalculation,
    FeeSchedule,
    PaymentConfirmationResult,
    PaymentIntentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
)
from .webhook import Processor, WebhookEvent, WebhookEventType, WebhookPayload

__all__ = [
    "AuditEntry", "DispatchOutcome",
    "EffectiveTiming", "Frequency", "MandateSchedule", "MandateStatus", "RecurringMandateResult",
    "FeeCalculation", "FeeSchedule", "PaymentConfirmationResult", "PaymentIntentResult", "PaymentStatus",
    "RefundResult", "RefundStatus",
    "Processor", "WebhookEvent", "WebhookEventType", "WebhookPayload",
]

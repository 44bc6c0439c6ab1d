from donation_payments.webhooks.audit import AuditLog
from donation_payments.webhooks.dedup import DedupIndex, DeliveryInProgress
from donation_payments.webhooks.dispatcher import DispatchResult, WebhookDispatcher
from donation_payments.webhooks.handlers import DonationRepository, GiftNotFound, GiftStateHandler
from donation_payments.webhooks.replay import DeadLetter, DeadLetterQueue, WebhookReplayManager

__all__ = [
    "AuditLog",
    "DeadLetter",
    "DeadLetterQueue",
    "DedupIndex",
    "DeliveryInProgress",
    "DispatchResult",
    "DonationRepository",
    "GiftNotFound",
    "GiftStateHandler",
    "WebhookDispatcher",
    "WebhookReplayManager",
]

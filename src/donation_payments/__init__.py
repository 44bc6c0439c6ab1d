from donation_payments.adapters import AdyenAdapter, MockAdapter, PaymentAdapter, PayPalAdapter, StripeAdapter
from donation_payments.config import Settings
from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.fees import FeeCalculator
from donation_payments.idempotency import IdempotencyStore
from donation_payments.registry import AdapterRegistry
from donation_payments.retry import RetryPolicy
from donation_payments.webhooks import GiftStateHandler, WebhookDispatcher

__version__ = "0.1.0"

__all__ = [
    "AdapterRegistry",
    "AdyenAdapter",
    "ErrorKind",
    "FeeCalculator",
    "GiftStateHandler",
    "IdempotencyStore",
    "MockAdapter",
    "PayPalAdapter",
    "PaymentAdapter",
    "PaymentError",
    "RetryPolicy",
    "Settings",
    "StripeAdapter",
    "WebhookDispatcher",
]

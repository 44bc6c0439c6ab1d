from donation_payments.adapters.adyen import AdyenAdapter
from donation_payments.adapters.base import PaymentAdapter
from donation_payments.adapters.mock import MockAdapter
from donation_payments.adapters.paypal import PayPalAdapter
from donation_payments.adapters.stripe import StripeAdapter

__all__ = [
    "AdyenAdapter",
    "MockAdapter",
    "PayPalAdapter",
    "PaymentAdapter",
    "StripeAdapter",
]

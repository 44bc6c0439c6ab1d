import logging
import threading
from datetime import timedelta

from donation_payments.adapters.adyen import AdyenAdapter
from donation_payments.adapters.base import PaymentAdapter
from donation_payments.adapters.mock import MockAdapter
from donation_payments.adapters.paypal import PayPalAdapter
from donation_payments.adapters.stripe import StripeAdapter
from donation_payments.config import Settings
from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.idempotency import IdempotencyStore
from donation_payments.models.webhook import Processor
from donation_payments.retry import RetryPolicy

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Holds one configured adapter per processor."""

    def __init__(self, adapters: list[PaymentAdapter] | None = None):
        self._adapters: dict[Processor, PaymentAdapter] = {}
        self._lock = threading.Lock()
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentAdapter) -> PaymentAdapter:
        with self._lock:
            if adapter.processor in self._adapters:
                logger.info("replacing %s adapter", adapter.name)
            self._adapters[adapter.processor] = adapter
        return adapter

    def get(self, processor: "Processor | str") -> PaymentAdapter:
        try:
            key = Processor.parse(processor)
        except ValueError:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"unknown payment processor: {processor!r}") from None
        with self._lock:
            adapter = self._adapters.get(key)
        if adapter is None:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"{key.value} is not configured")
        return adapter

    def __contains__(self, processor) -> bool:
        try:
            key = Processor.parse(processor)
        except ValueError:
            return False
        with self._lock:
            return key in self._adapters

    @property
    def processors(self) -> list[Processor]:
        with self._lock:
            return list(self._adapters)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        idempotency: IdempotencyStore | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics=None,
        session=None,
    ) -> "AdapterRegistry":
        """Build adapters for every processor whose API key is present.

        All adapters share one idempotency store and retry policy. A
        configured processor with a missing webhook secret fails here rather
        than on the first webhook.
        """
        idempotency = idempotency or IdempotencyStore(
            ttl=timedelta(seconds=settings.IDEMPOTENCY_TTL_SECONDS),
            wait_timeout=settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS,
        )
        retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.PAYMENT_RETRY_MAX_ATTEMPTS,
            initial_delay=settings.PAYMENT_RETRY_INITIAL_DELAY_SECONDS,
            max_delay=settings.PAYMENT_RETRY_MAX_DELAY_SECONDS,
            multiplier=settings.PAYMENT_RETRY_MULTIPLIER,
            deadline=settings.PAYMENT_RETRY_DEADLINE_SECONDS,
        )
        shared = {
            "idempotency": idempotency,
            "retry_policy": retry_policy,
            "metrics": metrics,
        }
        network = {
            "timeout_seconds": settings.PAYMENT_REQUEST_TIMEOUT_SECONDS,
            "session": session,
        }

        registry = cls()
        if settings.stripe_configured:
            registry.register(StripeAdapter(
                api_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                product_id=settings.STRIPE_PRODUCT_ID,
                test_mode=settings.STRIPE_TEST_MODE,
                **network,
                **shared,
            ))
        if settings.adyen_configured:
            registry.register(AdyenAdapter(
                api_key=settings.ADYEN_API_KEY,
                webhook_secret=settings.ADYEN_WEBHOOK_SECRET,
                merchant_account=settings.ADYEN_MERCHANT_ACCOUNT,
                test_mode=settings.ADYEN_TEST_MODE,
                **network,
                **shared,
            ))
        if settings.paypal_configured:
            registry.register(PayPalAdapter(
                client_id=settings.PAYPAL_CLIENT_ID,
                client_secret=settings.PAYPAL_CLIENT_SECRET,
                webhook_id=settings.PAYPAL_WEBHOOK_ID,
                product_id=settings.PAYPAL_PRODUCT_ID,
                legacy_hmac=settings.PAYPAL_WEBHOOK_LEGACY_HMAC,
                test_mode=settings.PAYPAL_TEST_MODE,
                **network,
                **shared,
            ))
        if settings.ENABLE_MOCK_PROCESSOR:
            registry.register(MockAdapter(webhook_secret=settings.MOCK_WEBHOOK_SECRET, **shared))

        logger.info("payment processors configured: %s", ", ".join(p.value for p in registry.processors) or "none")
        return registry

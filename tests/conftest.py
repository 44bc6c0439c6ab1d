import pytest

from donation_payments.adapters.adyen import AdyenAdapter
from donation_payments.adapters.mock import MockAdapter
from donation_payments.adapters.paypal import PayPalAdapter
from donation_payments.adapters.stripe import StripeAdapter
from donation_payments.idempotency import IdempotencyStore
from donation_payments.observability.alerting import AlertManager
from donation_payments.observability.metrics import MetricsCollector
from donation_payments.receiver.server import WebhookReceiverServer
from donation_payments.registry import AdapterRegistry
from donation_payments.retry import RetryPolicy
from donation_payments.sandbox.processor_server import SandboxProcessorServer
from donation_payments.sandbox.repository import InMemoryDonationRepository
from donation_payments.utils.factories import WebhookFactory
from donation_payments.webhooks.audit import AuditLog
from donation_payments.webhooks.dispatcher import WebhookDispatcher
from donation_payments.webhooks.handlers import GiftStateHandler
from donation_payments.webhooks.replay import WebhookReplayManager


STRIPE_WEBHOOK_SECRET = "whsec_test_secret_for_hmac"
ADYEN_HMAC_KEY = "44782DEF547AAA06C910C43932B1EB0C71FC68D9D0C057550C48EC2ACF6BA056"
PAYPAL_WEBHOOK_SECRET = "paypal-legacy-webhook-secret"
MOCK_WEBHOOK_SECRET = "mock-webhook-secret"

# Nothing listens here; webhook-only adapters never call their API.
UNUSED_API_URL = "http://127.0.0.1:9"


@pytest.fixture
def stripe_secret():
    return STRIPE_WEBHOOK_SECRET


@pytest.fixture
def adyen_hmac_key():
    return ADYEN_HMAC_KEY


@pytest.fixture
def paypal_secret():
    return PAYPAL_WEBHOOK_SECRET


@pytest.fixture
def mock_secret():
    return MOCK_WEBHOOK_SECRET


@pytest.fixture
def fast_retry():
    """Default retry schedule with the sleeps scaled to zero."""
    return RetryPolicy(delay_factor=0)


@pytest.fixture
def idempotency():
    return IdempotencyStore()


@pytest.fixture
def metrics():
    return MetricsCollector(window_seconds=300)


@pytest.fixture
def alert_manager(metrics):
    return AlertManager(metrics=metrics, threshold=0.10)


@pytest.fixture
def mock_adapter(fast_retry, idempotency):
    return MockAdapter(
        webhook_secret=MOCK_WEBHOOK_SECRET,
        retry_policy=fast_retry,
        idempotency=idempotency,
    )


@pytest.fixture
def sandbox():
    server = SandboxProcessorServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def stripe_adapter(sandbox, fast_retry, idempotency):
    return StripeAdapter(
        api_key="sk_test_123",
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        base_url=sandbox.url,
        timeout_seconds=2,
        retry_policy=fast_retry,
        idempotency=idempotency,
    )


@pytest.fixture
def adyen_adapter(sandbox, fast_retry, idempotency):
    return AdyenAdapter(
        api_key="AQE_test_key",
        webhook_secret=ADYEN_HMAC_KEY,
        merchant_account="DonationsECOM",
        base_url=sandbox.url,
        timeout_seconds=2,
        retry_policy=fast_retry,
        idempotency=idempotency,
    )


@pytest.fixture
def paypal_adapter(sandbox, fast_retry, idempotency):
    return PayPalAdapter(
        client_id="paypal-client-id",
        client_secret="paypal-client-secret",
        webhook_id="WH-TEST-1234",
        base_url=sandbox.url,
        timeout_seconds=2,
        retry_policy=fast_retry,
        idempotency=idempotency,
    )


@pytest.fixture
def webhook_registry(mock_adapter, fast_retry):
    """Every processor configured for inbound webhooks only."""
    return AdapterRegistry([
        StripeAdapter(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET, base_url=UNUSED_API_URL),
        AdyenAdapter(
            api_key="AQE_test_key",
            webhook_secret=ADYEN_HMAC_KEY,
            merchant_account="DonationsECOM",
            base_url=UNUSED_API_URL,
        ),
        PayPalAdapter(
            client_id="paypal-client-id",
            client_secret="paypal-client-secret",
            legacy_hmac=True,
            webhook_secret=PAYPAL_WEBHOOK_SECRET,
            base_url=UNUSED_API_URL,
            retry_policy=fast_retry,
        ),
        mock_adapter,
    ])


@pytest.fixture
def repository():
    return InMemoryDonationRepository()


@pytest.fixture
def dispatcher(webhook_registry, repository, metrics):
    return WebhookDispatcher(
        webhook_registry,
        GiftStateHandler(repository),
        audit=AuditLog(sink=repository.append_audit_entry),
        metrics=metrics,
        wait_timeout=5,
    )


@pytest.fixture
def replay_manager(dispatcher):
    return WebhookReplayManager(dispatcher)


@pytest.fixture
def receiver(dispatcher):
    server = WebhookReceiverServer(dispatcher)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def webhook_factory():
    return WebhookFactory

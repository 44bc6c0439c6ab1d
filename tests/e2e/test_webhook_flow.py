"""
End-to-end webhook delivery: signed bodies posted over HTTP to the receiver,
verified, deduplicated and applied to the in-memory donation records.
"""

import http.client
import time
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urlsplit

import pytest
import requests

from donation_payments.adapters.paypal import PayPalAdapter
from donation_payments.observability.alerting import AlertManager
from donation_payments.receiver.server import WebhookReceiverServer
from donation_payments.registry import AdapterRegistry
from donation_payments.sandbox.repository import InMemoryDonationRepository
from donation_payments.webhooks.dispatcher import WebhookDispatcher
from donation_payments.webhooks.handlers import GiftStateHandler

pytestmark = pytest.mark.e2e


def post(receiver, webhook, processor=None):
    return requests.post(
        receiver.url_for(processor or webhook.processor),
        data=webhook.body,
        headers=webhook.headers,
        timeout=10,
    )


class TestValidDeliveries:
    def test_stripe_success(self, receiver, repository, stripe_secret, webhook_factory):
        gift = repository.add_gift("stripe", "pi_e2e_1")
        webhook = webhook_factory.stripe(secret=stripe_secret, payment_intent_id="pi_e2e_1")

        response = post(receiver, webhook)

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event_id": webhook.event_id}
        assert repository.gift_status(gift["id"]) == "success"

    def test_adyen_authorisation(self, receiver, repository, adyen_hmac_key, webhook_factory):
        gift = repository.add_gift("adyen", "PSP_E2E_1")
        webhook = webhook_factory.adyen(hmac_key=adyen_hmac_key, psp_reference="PSP_E2E_1")

        response = post(receiver, webhook)

        assert response.status_code == 200
        assert response.json()["event_id"] == "PSP_E2E_1:AUTHORISATION:true"
        assert repository.gift_status(gift["id"]) == "success"

    def test_adyen_refused_authorisation(self, receiver, repository, adyen_hmac_key, webhook_factory):
        gift = repository.add_gift("adyen", "PSP_E2E_2")
        webhook = webhook_factory.adyen(
            hmac_key=adyen_hmac_key, psp_reference="PSP_E2E_2", success=False, reason="Refused",
        )

        assert post(receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "failed"
        assert repository.gifts[gift["id"]]["failure_reason"] == "Refused"

    def test_paypal_legacy_hmac(self, receiver, repository, paypal_secret, webhook_factory):
        gift = repository.add_gift("paypal", "CAP_E2E_1")
        webhook = webhook_factory.paypal(secret=paypal_secret, capture_id="CAP_E2E_1")

        assert post(receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "success"

    def test_mock_processor(self, receiver, repository, mock_secret, webhook_factory):
        gift = repository.add_gift("mock", "mock_pi_e2e")
        webhook = webhook_factory.mock(secret=mock_secret, payment_reference="mock_pi_e2e")

        assert post(receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "success"

    def test_refund_after_success(self, receiver, repository, stripe_secret, webhook_factory):
        gift = repository.add_gift("stripe", "pi_e2e_2", status="success")
        webhook = webhook_factory.stripe(
            "charge.refunded",
            secret=stripe_secret,
            obj={"id": "ch_1", "object": "charge", "payment_intent": "pi_e2e_2", "amount": 5175,
                 "amount_refunded": 5175, "currency": "usd"},
        )

        assert post(receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "refunded"

    def test_unknown_event_type_is_acknowledged(self, receiver, repository, stripe_secret, webhook_factory):
        webhook = webhook_factory.stripe("customer.tax_id.created", secret=stripe_secret)

        response = post(receiver, webhook)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert repository.status_updates == []


class TestPayPalCaptureFlow:
    """Gift recorded against the order, settled by the capture webhook."""

    def test_capture_webhook_settles_gift_keyed_by_order(
        self, receiver, repository, sandbox, paypal_adapter, paypal_secret, webhook_factory,
    ):
        sandbox.respond("POST", "/v1/oauth2/token", {"access_token": "A21AA-token", "expires_in": 32400})
        sandbox.respond("POST", "/v2/checkout/orders", {"id": "ORDER_E2E_1", "status": "CREATED"})
        sandbox.respond("POST", "/v2/checkout/orders/ORDER_E2E_1/capture", {
            "id": "ORDER_E2E_1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{
                "id": "CAP_E2E_9", "status": "COMPLETED", "amount": {"currency_code": "USD", "value": "51.99"},
            }]}}],
        })
        order = paypal_adapter.create_payment_intent(5000, "USD", "donor@example.org", idempotency_key="gift-e2e")
        gift = repository.add_gift("paypal", order.payment_intent_id)

        capture = paypal_adapter.confirm_payment(order.payment_intent_id)
        webhook = webhook_factory.paypal(
            secret=paypal_secret, capture_id=capture.transaction_id, order_id=order.payment_intent_id,
        )
        response = post(receiver, webhook)

        assert capture.transaction_id == "CAP_E2E_9"
        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event_id": webhook.event_id}
        assert repository.gift_status(gift["id"]) == "success"

    def test_capture_without_known_order_is_redelivered(self, receiver, repository, paypal_secret, webhook_factory):
        webhook = webhook_factory.paypal(secret=paypal_secret, capture_id="CAP_E2E_10", order_id="ORDER_UNKNOWN")

        response = post(receiver, webhook)

        assert response.status_code == 500
        assert repository.status_updates == []

class TestRejectedDeliveries:
    def test_invalid_stripe_signature(self, receiver, repository, webhook_factory):
        gift = repository.add_gift("stripe", "pi_e2e_3")
        webhook = webhook_factory.stripe(secret="whsec_someone_else", payment_intent_id="pi_e2e_3")

        response = post(receiver, webhook)

        assert response.status_code == 401
        assert response.json()["status"] == "rejected"
        assert repository.gift_status(gift["id"]) == "pending"

    def test_tampered_adyen_amount(self, receiver, repository, adyen_hmac_key, webhook_factory):
        gift = repository.add_gift("adyen", "PSP_E2E_3")
        webhook = webhook_factory.adyen(hmac_key=adyen_hmac_key, psp_reference="PSP_E2E_3", amount=5125)
        tampered = webhook.body.replace(b'"value":5125', b'"value":1')
        assert tampered != webhook.body

        response = requests.post(receiver.url_for("adyen"), data=tampered, headers=webhook.headers, timeout=10)

        assert response.status_code == 401
        assert repository.gift_status(gift["id"]) == "pending"

    def test_stale_stripe_timestamp(self, receiver, stripe_secret, webhook_factory):
        webhook = webhook_factory.stripe(secret=stripe_secret, timestamp=int(time.time()) - 3600)
        assert post(receiver, webhook).status_code == 401

    def test_signed_for_another_processor(self, receiver, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        assert post(receiver, webhook, processor="stripe").status_code == 401

    def test_unknown_processor(self, receiver, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        response = post(receiver, webhook, processor="venmo")

        assert response.status_code == 400
        assert "unknown payment processor" in response.json()["detail"]

    def test_missing_processor(self, receiver):
        response = requests.post(f"{receiver.base_url}/webhooks/payment", data=b"{}", timeout=10)
        assert response.status_code == 400

    def test_wrong_path(self, receiver):
        response = requests.post(f"{receiver.base_url}/webhooks/other?processor=stripe", data=b"{}", timeout=10)
        assert response.status_code == 404

    @pytest.mark.parametrize("length", ["abc", "-5"])
    def test_invalid_content_length(self, receiver, repository, length):
        parts = urlsplit(receiver.base_url)
        connection = http.client.HTTPConnection(parts.hostname, parts.port, timeout=10)
        try:
            connection.putrequest("POST", "/webhooks/payment?processor=stripe")
            connection.putheader("Content-Length", length)
            connection.endheaders()
            response = connection.getresponse()
            assert response.status == 400
            assert b"invalid Content-Length" in response.read()
        finally:
            connection.close()
        assert repository.audit_entries == []

    def test_rejections_are_audited(self, receiver, repository, webhook_factory):
        webhook = webhook_factory.stripe(secret="whsec_someone_else")
        post(receiver, webhook)

        (entry,) = repository.audit_entries
        assert entry.outcome.value == "rejected"
        assert entry.processor == "stripe"


class TestRedelivery:
    def test_redelivery_is_applied_once(self, receiver, repository, stripe_secret, webhook_factory):
        gift = repository.add_gift("stripe", "pi_e2e_4")
        webhook = webhook_factory.stripe(secret=stripe_secret, payment_intent_id="pi_e2e_4")

        first = post(receiver, webhook)
        second = post(receiver, webhook)

        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert repository.status_updates == [(gift["id"], "success")]

    def test_concurrent_redelivery_is_applied_once(self, webhook_registry, mock_secret, webhook_factory):
        class SlowRepository(InMemoryDonationRepository):
            def update_gift_status(self, *args, **kwargs):
                time.sleep(0.3)
                super().update_gift_status(*args, **kwargs)

        repository = SlowRepository()
        gift = repository.add_gift("mock", "mock_pi_race")
        dispatcher = WebhookDispatcher(webhook_registry, GiftStateHandler(repository), wait_timeout=5)
        server = WebhookReceiverServer(dispatcher)
        server.start()
        try:
            webhook = webhook_factory.mock(secret=mock_secret, payment_reference="mock_pi_race")
            with ThreadPoolExecutor(max_workers=5) as pool:
                responses = list(pool.map(lambda _: post(server, webhook), range(5)))
        finally:
            server.stop()

        assert [r.status_code for r in responses] == [200] * 5
        assert sorted(r.json()["status"] for r in responses) == ["duplicate"] * 4 + ["processed"]
        assert repository.status_updates == [(gift["id"], "success")]

    def test_out_of_order_pending_after_success(self, receiver, repository, stripe_secret, webhook_factory):
        gift = repository.add_gift("stripe", "pi_e2e_5")
        succeeded = webhook_factory.stripe(secret=stripe_secret, payment_intent_id="pi_e2e_5")
        processing = webhook_factory.stripe(
            "payment_intent.processing", secret=stripe_secret, payment_intent_id="pi_e2e_5", status="processing",
        )

        assert post(receiver, succeeded).status_code == 200
        assert post(receiver, processing).status_code == 200
        assert repository.gift_status(gift["id"]) == "success"


class TestHandlerFailure:
    def test_failed_delivery_is_dead_lettered_and_replayed(
        self, receiver, repository, dispatcher, replay_manager, stripe_secret, webhook_factory,
    ):
        webhook = webhook_factory.stripe(secret=stripe_secret, payment_intent_id="pi_e2e_late")

        response = post(receiver, webhook)

        assert response.status_code == 500
        assert response.json() == {"status": "failed", "event_id": webhook.event_id}
        assert len(dispatcher.dead_letters) == 1

        gift = repository.add_gift("stripe", "pi_e2e_late")
        results = replay_manager.replay_failed()

        assert [r.outcome.value for r in results.values()] == ["processed"]
        assert repository.gift_status(gift["id"]) == "success"
        assert len(dispatcher.dead_letters) == 0

        # the processor's own retry arrives after the replay
        assert post(receiver, webhook).json()["status"] == "duplicate"

    def test_processor_retry_succeeds_once_record_exists(self, receiver, repository, dispatcher, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret, payment_reference="mock_pi_late")
        assert post(receiver, webhook).status_code == 500

        gift = repository.add_gift("mock", "mock_pi_late")
        assert post(receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "success"
        assert len(dispatcher.dead_letters) == 0


class TestObservability:
    def test_failure_rate_alert(self, receiver, metrics, stripe_secret, webhook_factory):
        alerts = []
        alert_manager = AlertManager(metrics=metrics, threshold=0.10, label="webhook.stripe", callback=alerts.append)

        post(receiver, webhook_factory.stripe("customer.tax_id.created", secret=stripe_secret))
        post(receiver, webhook_factory.stripe(secret="whsec_someone_else"))

        assert metrics.failure_rate("webhook.stripe") == 0.5
        alert = alert_manager.check()
        assert alert is not None
        assert alert["failed"] == 1
        assert alerts == [alert]

    def test_security_log_has_no_payload(self, receiver, webhook_factory, caplog):
        caplog.set_level("WARNING", logger="donation_payments.security")
        webhook = webhook_factory.stripe(secret="whsec_someone_else", payment_intent_id="pi_private_ref")

        post(receiver, webhook)

        assert "rejected stripe webhook" in caplog.text
        assert "pi_private_ref" not in caplog.text
        assert webhook.headers["Stripe-Signature"] not in caplog.text


class TestPayPalVerificationPostback:
    @pytest.fixture
    def paypal_receiver(self, sandbox, fast_retry, repository):
        sandbox.respond("POST", "/v1/oauth2/token", {"access_token": "A21AA-token", "expires_in": 32400})
        adapter = PayPalAdapter(
            client_id="paypal-client-id",
            client_secret="paypal-client-secret",
            webhook_id="WH-TEST-1234",
            base_url=sandbox.url,
            timeout_seconds=2,
            retry_policy=fast_retry,
        )
        dispatcher = WebhookDispatcher(AdapterRegistry([adapter]), GiftStateHandler(repository), wait_timeout=5)
        server = WebhookReceiverServer(dispatcher)
        server.start()
        yield server
        server.stop()

    def test_verified_by_paypal(self, paypal_receiver, sandbox, repository, webhook_factory):
        sandbox.respond("POST", "/v1/notifications/verify-webhook-signature", {"verification_status": "SUCCESS"})
        gift = repository.add_gift("paypal", "CAP_E2E_2")
        webhook = webhook_factory.paypal(capture_id="CAP_E2E_2")

        assert post(paypal_receiver, webhook).status_code == 200
        assert repository.gift_status(gift["id"]) == "success"

    def test_rejected_by_paypal(self, paypal_receiver, sandbox, repository, webhook_factory):
        sandbox.respond("POST", "/v1/notifications/verify-webhook-signature", {"verification_status": "FAILURE"})
        gift = repository.add_gift("paypal", "CAP_E2E_3")

        assert post(paypal_receiver, webhook_factory.paypal(capture_id="CAP_E2E_3")).status_code == 401
        assert repository.gift_status(gift["id"]) == "pending"

    def test_verification_outage_asks_paypal_to_redeliver(self, paypal_receiver, sandbox, webhook_factory):
        sandbox.respond("POST", "/v1/notifications/verify-webhook-signature", {}, status=503)

        response = post(paypal_receiver, webhook_factory.paypal())

        assert response.status_code == 503
        assert response.json()["status"] == "failed"

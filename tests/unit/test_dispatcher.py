import logging

import pytest

from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.models.audit import DispatchOutcome
from donation_payments.config import Settings
from donation_payments.registry import AdapterRegistry
from donation_payments.webhooks.audit import AuditLog
from donation_payments.webhooks.dispatcher import WebhookDispatcher
from donation_payments.webhooks.replay import WebhookReplayManager


class RecordingHandler:
    def __init__(self, fail_with=None):
        self.events = []
        self.fail_with = fail_with

    def __call__(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append(event)


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def mock_dispatcher(mock_adapter, handler, metrics):
    return WebhookDispatcher(AdapterRegistry([mock_adapter]), handler, metrics=metrics, wait_timeout=1)


class TestDispatch:
    @pytest.mark.unit
    def test_valid_webhook_is_processed(self, mock_dispatcher, handler, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret, payment_reference="mock_pi_1")
        result = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.status_code == 200
        assert result.outcome is DispatchOutcome.PROCESSED
        assert result.body == {"status": "processed", "event_id": webhook.event_id}
        assert [e.payload.payment_reference for e in handler.events] == ["mock_pi_1"]

    @pytest.mark.unit
    def test_lowercase_headers(self, mock_dispatcher, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        headers = {k.lower(): v for k, v in webhook.headers.items()}
        assert mock_dispatcher.dispatch("mock", webhook.body, headers).status_code == 200

    @pytest.mark.unit
    def test_processor_name_is_case_insensitive(self, mock_dispatcher, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        assert mock_dispatcher.dispatch("MOCK", webhook.body, webhook.headers).status_code == 200

    @pytest.mark.unit
    def test_invalid_signature_is_rejected(self, mock_dispatcher, handler, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret).tampered()
        result = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.status_code == 401
        assert result.outcome is DispatchOutcome.REJECTED
        assert handler.events == []

    @pytest.mark.unit
    def test_missing_signature_is_rejected(self, mock_dispatcher, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        assert mock_dispatcher.dispatch("mock", webhook.body, {}).status_code == 401

    @pytest.mark.unit
    def test_rejection_logs_digest_not_body(self, mock_dispatcher, mock_secret, webhook_factory, caplog):
        caplog.set_level(logging.WARNING, logger="donation_payments.security")
        webhook = webhook_factory.mock(secret="wrong-secret", payment_reference="mock_pi_secretive")
        mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert "security" in caplog.text
        assert "mock_pi_secretive" not in caplog.text
        assert webhook.headers["X-Mock-Signature"] not in caplog.text

    @pytest.mark.unit
    @pytest.mark.parametrize("processor", ["venmo", "", "stripe"])
    def test_unknown_or_unconfigured_processor(self, mock_dispatcher, processor):
        result = mock_dispatcher.dispatch(processor, b"{}", {})
        assert result.status_code == 400
        assert result.outcome is DispatchOutcome.REJECTED

    @pytest.mark.unit
    def test_signed_but_malformed_body(self, mock_dispatcher, mock_adapter):
        body = b'{"type": "payment.succeeded"}'
        result = mock_dispatcher.dispatch("mock", body, {"X-Mock-Signature": mock_adapter.sign(body)})
        assert result.status_code == 400
        assert result.outcome is DispatchOutcome.MALFORMED

    @pytest.mark.unit
    def test_redelivery_is_acknowledged_once(self, mock_dispatcher, handler, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        first = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)
        second = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert first.outcome is DispatchOutcome.PROCESSED
        assert second.status_code == 200
        assert second.outcome is DispatchOutcome.DUPLICATE
        assert len(handler.events) == 1

    @pytest.mark.unit
    def test_unknown_event_type_is_acknowledged(self, mock_dispatcher, handler, mock_secret, webhook_factory):
        webhook = webhook_factory.mock("charge.weird", secret=mock_secret)
        result = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.status_code == 200
        assert result.outcome is DispatchOutcome.IGNORED
        assert handler.events == []
        assert mock_dispatcher.dispatch("mock", webhook.body, webhook.headers).outcome is DispatchOutcome.DUPLICATE

    @pytest.mark.unit
    def test_verification_outage_asks_for_redelivery(self, mock_dispatcher, mock_adapter, mock_secret, webhook_factory, monkeypatch):
        def unavailable(*args, **kwargs):
            raise PaymentError(ErrorKind.PROCESSOR_UNAVAILABLE, "verification api down")

        monkeypatch.setattr(mock_adapter, "verify_webhook_signature", unavailable)
        webhook = webhook_factory.mock(secret=mock_secret)
        result = mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.status_code == 503
        assert result.outcome is DispatchOutcome.FAILED

    @pytest.mark.unit
    def test_verification_misconfiguration_propagates(self, mock_dispatcher, mock_adapter, mock_secret, webhook_factory, monkeypatch):
        def misconfigured(*args, **kwargs):
            raise PaymentError(ErrorKind.AUTHENTICATION_FAILED, "bad credentials")

        monkeypatch.setattr(mock_adapter, "verify_webhook_signature", misconfigured)
        webhook = webhook_factory.mock(secret=mock_secret)
        with pytest.raises(PaymentError):
            mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)


class TestHandlerFailure:
    @pytest.mark.unit
    def test_failure_returns_500_and_dead_letters(self, mock_adapter, mock_secret, webhook_factory):
        handler = RecordingHandler(fail_with=RuntimeError("database unavailable"))
        dispatcher = WebhookDispatcher(AdapterRegistry([mock_adapter]), handler, wait_timeout=1)
        webhook = webhook_factory.mock(secret=mock_secret)

        result = dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.status_code == 500
        assert result.outcome is DispatchOutcome.FAILED
        assert "detail" not in result.body
        assert not dispatcher.dedup.is_processed(("mock", webhook.event_id))
        (letter,) = dispatcher.dead_letters.list()
        assert letter.external_event_id == webhook.event_id
        assert letter.raw_body == webhook.body

    @pytest.mark.unit
    def test_redelivery_after_fix_succeeds_and_clears_dead_letter(self, mock_adapter, mock_secret, webhook_factory):
        handler = RecordingHandler(fail_with=RuntimeError("database unavailable"))
        dispatcher = WebhookDispatcher(AdapterRegistry([mock_adapter]), handler, wait_timeout=1)
        webhook = webhook_factory.mock(secret=mock_secret)

        dispatcher.dispatch("mock", webhook.body, webhook.headers)
        dispatcher.dispatch("mock", webhook.body, webhook.headers)
        assert dispatcher.dead_letters.list()[0].attempts == 2

        handler.fail_with = None
        result = dispatcher.dispatch("mock", webhook.body, webhook.headers)

        assert result.outcome is DispatchOutcome.PROCESSED
        assert len(dispatcher.dead_letters) == 0
        assert len(handler.events) == 1

    @pytest.mark.unit
    def test_replay_processes_dead_letter(self, mock_adapter, mock_secret, webhook_factory):
        handler = RecordingHandler(fail_with=RuntimeError("database unavailable"))
        dispatcher = WebhookDispatcher(AdapterRegistry([mock_adapter]), handler, wait_timeout=1)
        replay = WebhookReplayManager(dispatcher)
        webhook = webhook_factory.mock(secret=mock_secret)
        dispatcher.dispatch("mock", webhook.body, webhook.headers)

        handler.fail_with = None
        (letter,) = dispatcher.dead_letters.list()
        result = replay.replay_event(letter.letter_id)

        assert result.outcome is DispatchOutcome.PROCESSED
        assert len(dispatcher.dead_letters) == 0
        assert replay.replay_failed() == {}

    @pytest.mark.unit
    def test_replay_unknown_letter(self, replay_manager):
        with pytest.raises(ValueError, match="not found"):
            replay_manager.replay_event("missing")


class TestAuditAndMetrics:
    @pytest.mark.unit
    def test_every_delivery_is_audited(self, mock_dispatcher, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)
        mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)
        mock_dispatcher.dispatch("mock", webhook.tampered().body, webhook.headers)

        audit = mock_dispatcher.audit
        outcomes = [entry.outcome for entry in audit.get_entries()]
        assert outcomes == [DispatchOutcome.PROCESSED, DispatchOutcome.DUPLICATE, DispatchOutcome.REJECTED]
        assert len(audit.get_entries(external_event_id=webhook.event_id)) == 2
        assert [e.outcome for e in audit.get_failed_entries()] == [DispatchOutcome.REJECTED]

    @pytest.mark.unit
    def test_metrics_labelled_by_processor(self, mock_dispatcher, metrics, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        mock_dispatcher.dispatch("mock", webhook.body, webhook.headers)
        mock_dispatcher.dispatch("mock", webhook.tampered().body, webhook.headers)

        assert metrics.counts_by_label()["webhook.mock"] == {"success": 1, "failure": 1}

    @pytest.mark.unit
    def test_audit_sink_receives_entries(self, dispatcher, repository, mock_secret, webhook_factory):
        webhook = webhook_factory.mock(secret=mock_secret)
        dispatcher.dispatch("mock", webhook.body, webhook.headers)

        (entry,) = repository.audit_entries
        assert entry.processor == "mock"
        # no gift exists for the reference, so the delivery fails and will be redelivered
        assert entry.outcome is DispatchOutcome.FAILED
        assert entry.detail == "GiftNotFound"

    @pytest.mark.unit
    def test_audit_log_keeps_newest_entries(self):
        audit = AuditLog(max_entries=2)
        for outcome in (DispatchOutcome.PROCESSED, DispatchOutcome.DUPLICATE, DispatchOutcome.REJECTED):
            audit.record("mock", outcome)

        assert [e.outcome for e in audit.get_entries()] == [DispatchOutcome.DUPLICATE, DispatchOutcome.REJECTED]
        assert audit.count(DispatchOutcome.PROCESSED) == 0

    @pytest.mark.unit
    def test_trimmed_entries_still_reach_sink(self):
        seen = []
        audit = AuditLog(sink=seen.append, max_entries=1)
        audit.record("mock", DispatchOutcome.PROCESSED)
        audit.record("mock", DispatchOutcome.FAILED)

        assert len(audit.get_entries()) == 1
        assert [e.outcome for e in seen] == [DispatchOutcome.PROCESSED, DispatchOutcome.FAILED]


class TestFromSettings:
    @pytest.mark.unit
    def test_wait_timeout_comes_from_settings(self, mock_adapter, handler):
        settings = Settings(_env_file=None, WEBHOOK_WAIT_TIMEOUT_SECONDS=7)
        dispatcher = WebhookDispatcher.from_settings(settings, AdapterRegistry([mock_adapter]), handler)

        assert dispatcher.wait_timeout == 7

    @pytest.mark.unit
    def test_explicit_wait_timeout_wins(self, mock_adapter, handler):
        settings = Settings(_env_file=None, WEBHOOK_WAIT_TIMEOUT_SECONDS=7)
        dispatcher = WebhookDispatcher.from_settings(settings, AdapterRegistry([mock_adapter]), handler, wait_timeout=1)

        assert dispatcher.wait_timeout == 1

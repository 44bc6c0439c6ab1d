import pytest

from donation_payments.observability.metrics import MetricsCollector


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestFailureRate:
    """Tests for MetricsCollector.failure_rate()."""

    @pytest.mark.unit
    def test_empty_window_is_zero(self, metrics):
        assert metrics.failure_rate() == 0.0

    @pytest.mark.unit
    def test_mixed_outcomes(self, metrics):
        metrics.record_success()
        metrics.record_success()
        metrics.record_success()
        metrics.record_failure()
        assert metrics.failure_rate() == 0.25
        assert metrics.total_in_window() == 4
        assert metrics.failure_count_in_window() == 1
        assert metrics.success_count_in_window() == 3

    @pytest.mark.unit
    def test_rate_per_label(self, metrics):
        metrics.record_failure("webhook.stripe")
        metrics.record_success("webhook.paypal")
        metrics.record_success("webhook.paypal")

        assert metrics.failure_rate("webhook.stripe") == 1.0
        assert metrics.failure_rate("webhook.paypal") == 0.0
        assert metrics.failure_rate() == pytest.approx(1 / 3)

    @pytest.mark.unit
    def test_counts_by_label(self, metrics):
        metrics.record_success("stripe.create_payment_intent")
        metrics.record_failure("stripe.create_payment_intent")
        metrics.record_success("webhook.adyen")
        metrics.record_success()

        assert metrics.counts_by_label() == {
            "stripe.create_payment_intent": {"success": 1, "failure": 1},
            "webhook.adyen": {"success": 1, "failure": 0},
        }


class TestRollingWindow:
    @pytest.mark.unit
    def test_old_samples_leave_the_window(self):
        clock = ManualClock()
        metrics = MetricsCollector(window_seconds=60, clock=clock)
        metrics.record_failure()
        clock.now += 30
        metrics.record_success()

        assert metrics.failure_rate() == 0.5

        clock.now += 31
        assert metrics.failure_rate() == 0.0
        assert metrics.total_in_window() == 1

    @pytest.mark.unit
    def test_reset(self, metrics):
        metrics.record_failure()
        metrics.reset()
        assert metrics.total_in_window() == 0

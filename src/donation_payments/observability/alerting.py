import logging

from donation_payments.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class AlertManager:
    """Fires once when the failure rate of a metric crosses its threshold."""

    def __init__(
        self,
        metrics: MetricsCollector,
        threshold: float = 0.10,
        callback=None,
        label: str | None = None,
        min_samples: int = 1,
        alert_type: str = "webhook_failure_rate",
    ):
        self.metrics = metrics
        self.threshold = threshold
        self.callback = callback
        self.label = label
        self.min_samples = min_samples
        self.alert_type = alert_type
        self._fired = False
        self._alerts: list[dict] = []

    def check(self) -> dict | None:
        """Return a new alert dict when the threshold is first crossed, else None."""
        total = self.metrics.total_in_window(self.label)
        if total == 0 or total < self.min_samples:
            return None

        rate = self.metrics.failure_rate(self.label)
        failures = self.metrics.failure_count_in_window(self.label)

        if rate <= self.threshold:
            # back under the threshold: the next crossing alerts again
            self._fired = False
            return None
        if self._fired:
            return None

        scope = self.label or "all processors"
        alert = {
            "type": self.alert_type,
            "label": self.label,
            "failure_rate": rate,
            "threshold": self.threshold,
            "total": total,
            "failed": failures,
            "message": (
                f"Failure rate {rate:.1%} for {scope} exceeds "
                f"threshold {self.threshold:.1%} ({failures}/{total} failed)"
            ),
        }
        self._fired = True
        self._alerts.append(alert)
        logger.error(alert["message"])

        if self.callback:
            self.callback(alert)

        return alert

    def get_alerts(self) -> list[dict]:
        return list(self._alerts)

    def reset(self) -> None:
        self._fired = False
        self._alerts.clear()

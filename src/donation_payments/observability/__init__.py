from donation_payments.observability.alerting import AlertManager
from donation_payments.observability.metrics import MetricsCollector

__all__ = ["AlertManager", "MetricsCollector"]

import threading
import time
from collections import Counter
from collections.abc import Callable


class MetricsCollector:
    """Rolling-window success/failure counts, optionally labelled.

    Labels are free-form (``"stripe.create_payment_intent"``,
    ``"webhook.paypal"``); the failure rate covers every label unless one is
    given.
    """

    def __init__(self, window_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._window_seconds = window_seconds
        self._clock = clock
        self._successes: list[tuple[float, str | None]] = []
        self._failures: list[tuple[float, str | None]] = []
        self._lock = threading.Lock()

    def record_success(self, label: str | None = None) -> None:
        with self._lock:
            self._successes.append((self._clock(), label))

    def record_failure(self, label: str | None = None) -> None:
        with self._lock:
            self._failures.append((self._clock(), label))

    def _window(self, data: list[tuple[float, str | None]], label: str | None) -> list[tuple[float, str | None]]:
        cutoff = self._clock() - self._window_seconds
        # drop expired samples in place so long-running processes stay bounded
        data[:] = [sample for sample in data if sample[0] >= cutoff]
        if label is None:
            return data
        return [sample for sample in data if sample[1] == label]

    def failure_rate(self, label: str | None = None) -> float:
        """Failure rate in the current rolling window (0.0 to 1.0)."""
        with self._lock:
            successes = len(self._window(self._successes, label))
            failures = len(self._window(self._failures, label))
        total = successes + failures
        if total == 0:
            return 0.0
        return failures / total

    def total_in_window(self, label: str | None = None) -> int:
        with self._lock:
            return len(self._window(self._successes, label)) + len(self._window(self._failures, label))

    def failure_count_in_window(self, label: str | None = None) -> int:
        with self._lock:
            return len(self._window(self._failures, label))

    def success_count_in_window(self, label: str | None = None) -> int:
        with self._lock:
            return len(self._window(self._successes, label))

    def counts_by_label(self) -> dict[str, dict[str, int]]:
        with self._lock:
            successes = Counter(label for _, label in self._window(self._successes, None))
            failures = Counter(label for _, label in self._window(self._failures, None))
        labels = {label for label in successes | failures if label is not None}
        return {
            label: {"success": successes[label], "failure": failures[label]}
            for label in sorted(labels)
        }

    def reset(self) -> None:
        with self._lock:
            self._successes.clear()
            self._failures.clear()

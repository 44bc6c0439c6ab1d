import contextvars
import logging
import time
from collections.abc import Callable
from typing import TypeVar

from donation_payments.errors import ErrorKind, PaymentError

T = TypeVar("T")

logger = logging.getLogger(__name__)

# (absolute deadline, clock) of the innermost RetryPolicy.execute on this thread
_budget: contextvars.ContextVar[tuple[float, Callable[[], float]] | None] = contextvars.ContextVar(
    "retry_budget", default=None,
)


def remaining_budget() -> float | None:
    """Seconds left before the running retry deadline, or None outside one."""
    budget = _budget.get()
    if budget is None:
        return None
    deadline_at, clock = budget
    return deadline_at - clock()


class RetryPolicy:
    """Exponential-backoff retries for transient processor failures.

    ``deadline`` bounds the whole call, attempts included: HTTP calls made
    inside ``execute`` see the remaining budget through ``remaining_budget``
    and shorten their timeouts to fit.
    """

    DEFAULT_MAX_ATTEMPTS = 3
    DEFAULT_INITIAL_DELAY = 1.0
    DEFAULT_MAX_DELAY = 4.0
    DEFAULT_MULTIPLIER = 2.0
    DEFAULT_DEADLINE = 30.0

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        deadline: float | None = DEFAULT_DEADLINE,
        delay_factor: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.deadline = deadline
        self.delay_factor = delay_factor
        self._sleep = sleep
        self._clock = clock

    def should_retry(self, error: BaseException) -> bool:
        """Only transient classifications are retried.

        Declines, signature failures and caller errors cannot change on a
        repeat and are surfaced immediately.
        """
        return isinstance(error, PaymentError) and error.retryable

    def next_delay(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt (1-indexed)."""
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def has_attempts_remaining(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def execute(self, operation: Callable[[], T], *, description: str = "processor call") -> T:
        """Run ``operation`` until it succeeds, fails permanently, or retries run out.

        The operation must reuse the same idempotency key on every attempt.
        """
        started = self._clock()
        token = None
        if self.deadline is not None:
            deadline_at = started + self.deadline
            outer = _budget.get()
            # a nested execute never outlives the one around it
            if outer is None or outer[1] is not self._clock or outer[0] > deadline_at:
                token = _budget.set((deadline_at, self._clock))
        try:
            return self._attempts(operation, description, started)
        finally:
            if token is not None:
                _budget.reset(token)

    def _attempts(self, operation: Callable[[], T], description: str, started: float) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except PaymentError as exc:
                if not self.should_retry(exc):
                    raise
                if not self.has_attempts_remaining(attempt):
                    logger.warning("%s failed after %d attempts: %s", description, attempt, exc.kind.value)
                    raise

                delay = self.next_delay(attempt) * self.delay_factor
                if self.deadline is not None and self._clock() - started + delay >= self.deadline:
                    logger.warning("%s exceeded its %.0fs deadline after %d attempts", description, self.deadline, attempt)
                    raise

                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs",
                    description, attempt, self.max_attempts, exc.kind.value, delay,
                )
                if delay > 0:
                    self._sleep(delay)


def check_budget(description: str) -> float | None:
    """Remaining budget for one more call; raises TIMEOUT once it is spent."""
    remaining = remaining_budget()
    if remaining is not None and remaining <= 0:
        raise PaymentError(ErrorKind.TIMEOUT, f"{description} skipped: retry deadline reached")
    return remaining

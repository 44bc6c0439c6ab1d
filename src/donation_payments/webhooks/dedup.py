import logging
import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from donation_payments.claims import Claim, ClaimTable
from donation_payments.models.audit import DispatchOutcome

logger = logging.getLogger(__name__)


class DeliveryInProgress(Exception):
    """Another delivery of the same event is still being handled."""

    def __init__(self, key: Hashable):
        super().__init__(f"delivery of {key} is still in progress")
        self.key = key


@dataclass(frozen=True)
class DedupEntry:
    key: Hashable
    outcome: DispatchOutcome
    committed_at: datetime


class DedupIndex:
    """Remembers which webhook events were handled, keyed by (processor, event id).

    ``begin`` atomically either reports a committed duplicate, claims the key
    for the caller, or waits for a delivery already in flight. An entry is
    committed only after the handler succeeds; a released claim lets the next
    delivery try again.
    """

    def __init__(
        self,
        retention: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.retention = retention
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._committed: dict[Hashable, DedupEntry] = {}
        self._claims = ClaimTable()
        self._lock = threading.Lock()

    def begin(self, key: Hashable, wait_timeout: float | None = None) -> Claim | None:
        """Claim ``key``; return None if it was already committed.

        Raises DeliveryInProgress if a concurrent delivery holds the key for
        longer than ``wait_timeout``.
        """
        while True:
            with self._lock:
                if key in self._committed:
                    return None
                claim, is_owner = self._claims.claim(key)
            if is_owner:
                return claim

            logger.info("delivery of %s in flight, waiting for its outcome", key)
            if not claim.wait(wait_timeout):
                raise DeliveryInProgress(key)
            # the other delivery finished: committed, or released for a retry

    def commit(self, claim: Claim, outcome: DispatchOutcome = DispatchOutcome.PROCESSED) -> DedupEntry:
        entry = DedupEntry(key=claim.key, outcome=outcome, committed_at=self._clock())
        with self._lock:
            self._committed[claim.key] = entry
            self._claims.resolve(claim, result=entry)
        return entry

    def release(self, claim: Claim, error: BaseException | None = None) -> None:
        with self._lock:
            self._claims.resolve(claim, error=error)

    def is_processed(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._committed

    def get(self, key: Hashable) -> DedupEntry | None:
        with self._lock:
            return self._committed.get(key)

    def in_flight(self, key: Hashable) -> bool:
        return self._claims.in_flight(key)

    def purge_expired(self) -> int:
        if self.retention is None:
            return 0
        cutoff = self._clock() - self.retention
        with self._lock:
            stale = [key for key, entry in self._committed.items() if entry.committed_at < cutoff]
            for key in stale:
                del self._committed[key]
        if stale:
            logger.info("purged %d dedup entries older than %s", len(stale), self.retention)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._committed)

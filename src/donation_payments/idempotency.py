import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from donation_payments.claims import ClaimTable
from donation_payments.errors import ErrorKind, PaymentError

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    fingerprint: str | None
    result: Any
    created_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class RecordStore(Protocol):
    """Persistence collaborator holding completed idempotency records."""

    def get(self, key: str) -> IdempotencyRecord | None: ...

    def put(self, record: IdempotencyRecord) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class InMemoryRecordStore:
    def __init__(self):
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> IdempotencyRecord | None:
        with self._lock:
            return self._records.get(key)

    def put(self, record: IdempotencyRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._records)


class IdempotencyStore:
    """Runs each side-effecting operation at most once per idempotency key.

    The first caller for a key claims it and runs the operation; concurrent
    callers with the same key block until the owner finishes and then share
    its result (or its exception). Only successful results are stored, so a
    failed operation may be attempted again by a later call.
    """

    def __init__(
        self,
        records: RecordStore | None = None,
        ttl: timedelta = DEFAULT_TTL,
        wait_timeout: float | None = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.records = records if records is not None else InMemoryRecordStore()
        self.ttl = ttl
        self.wait_timeout = wait_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._claims = ClaimTable()
        self._lock = threading.Lock()
        self._operations_run = 0

    @property
    def operations_run(self) -> int:
        return self._operations_run

    def get(self, key: str) -> IdempotencyRecord | None:
        with self._lock:
            return self._live_record(key)

    def get_or_compute(self, key: str, operation: Callable[[], Any], *, fingerprint: str | None = None) -> Any:
        if not key:
            raise PaymentError(ErrorKind.INVALID_REQUEST, "an idempotency key is required")

        with self._lock:
            record = self._live_record(key)
            if record is not None:
                self._check_fingerprint(key, record.fingerprint, fingerprint)
                logger.debug("idempotency hit for key %s", key)
                return record.result
            claim, owner = self._claims.claim(key, fingerprint)
            if owner:
                self._operations_run += 1

        if not owner:
            self._check_fingerprint(key, claim.token, fingerprint)
            logger.debug("waiting on in-flight operation for key %s", key)
            if not claim.wait(self.wait_timeout):
                raise PaymentError(
                    ErrorKind.IDEMPOTENCY_KEY_IN_PROGRESS,
                    f"operation for idempotency key {key} is still in progress",
                )
            if claim.error is not None:
                raise claim.error
            return claim.result

        try:
            result = operation()
        except BaseException as exc:
            self._claims.resolve(claim, error=exc)
            raise

        now = self._clock()
        with self._lock:
            self.records.put(IdempotencyRecord(
                key=key,
                fingerprint=fingerprint,
                result=result,
                created_at=now,
                expires_at=now + self.ttl,
            ))
            self._claims.resolve(claim, result=result)
        return result

    def purge_expired(self) -> int:
        now = self._clock()
        purged = 0
        with self._lock:
            for key in self.records.keys():
                record = self.records.get(key)
                if record is not None and record.expired(now):
                    self.records.delete(key)
                    purged += 1
        if purged:
            logger.info("purged %d expired idempotency records", purged)
        return purged

    def _live_record(self, key: str) -> IdempotencyRecord | None:
        record = self.records.get(key)
        if record is None:
            return None
        if record.expired(self._clock()):
            self.records.delete(key)
            return None
        return record

    @staticmethod
    def _check_fingerprint(key: str, stored: str | None, requested: str | None) -> None:
        if stored is not None and requested is not None and stored != requested:
            logger.error("idempotency key %s reused with different parameters", key)
            raise PaymentError(
                ErrorKind.IDEMPOTENCY_KEY_CONFLICT,
                f"idempotency key {key} was already used with different parameters",
            )

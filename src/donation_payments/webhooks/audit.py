import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from donation_payments.models.audit import AuditEntry, DispatchOutcome
from donation_payments.models.webhook import WebhookEvent

logger = logging.getLogger(__name__)


class AuditLog:
    """Thread-safe record of every webhook delivery and its outcome.

    Entries never carry payload contents. An optional ``sink`` receives each
    entry as it is appended (e.g. a repository's ``append_audit_entry``); a
    failing sink is logged and does not change the delivery outcome. Only the
    newest ``max_entries`` stay in memory; the sink is the durable trail.
    """

    DEFAULT_MAX_ENTRIES = 10_000

    def __init__(
        self,
        sink: Callable[[AuditEntry], None] | None = None,
        max_entries: int | None = DEFAULT_MAX_ENTRIES,
    ):
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self.sink = sink

    def record(
        self,
        processor: str,
        outcome: DispatchOutcome,
        event: WebhookEvent | None = None,
        detail: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            entry_id=uuid.uuid4().hex,
            processor=processor,
            external_event_id=event.external_event_id if event else None,
            event_type=event.event_type.value if event else None,
            outcome=outcome,
            timestamp=datetime.now(timezone.utc),
            detail=detail,
        )
        with self._lock:
            self._entries.append(entry)
        if self.sink is not None:
            try:
                self.sink(entry)
            except Exception:
                logger.exception("audit sink failed for entry %s", entry.entry_id)
        return entry

    def get_entries(
        self,
        external_event_id: str | None = None,
        outcome: DispatchOutcome | None = None,
    ) -> list[AuditEntry]:
        with self._lock:
            entries = list(self._entries)
        if external_event_id is not None:
            entries = [e for e in entries if e.external_event_id == external_event_id]
        if outcome is not None:
            entries = [e for e in entries if e.outcome is outcome]
        return entries

    def get_failed_entries(self) -> list[AuditEntry]:
        with self._lock:
            return [e for e in self._entries if not e.outcome.is_success]

    def count(self, outcome: DispatchOutcome) -> int:
        with self._lock:
            return sum(1 for e in self._entries if e.outcome is outcome)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class DispatchOutcome(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self in (DispatchOutcome.PROCESSED, DispatchOutcome.DUPLICATE, DispatchOutcome.IGNORED)


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    processor: str
    external_event_id: str | None
    event_type: str | None
    outcome: DispatchOutcome
    timestamp: datetime
    detail: str | None = None

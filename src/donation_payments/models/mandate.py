import calendar
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from donation_payments.models.payment import frozen_metadata


class Frequency(Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "annually": 12}[self.value]


class MandateStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EffectiveTiming(Enum):
    """When a mandate change should apply; forwarded to the processor as-is."""

    IMMEDIATELY = "immediately"
    NEXT_CYCLE = "next_cycle"


@dataclass(frozen=True)
class RecurringMandateResult:
    mandate_id: str
    status: MandateStatus
    # None only for token-only processors when no schedule was supplied
    amount_minor: int | None
    currency: str | None
    frequency: Frequency | None
    next_charge_date: date | None
    cancel_at: date | None = None
    metadata: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", frozen_metadata(self.metadata))

    @property
    def is_terminal(self) -> bool:
        return self.status is MandateStatus.CANCELLED


@dataclass(frozen=True)
class MandateSchedule:
    """Schedule terms the platform keeps when the processor only stores a token."""

    amount_minor: int
    currency: str
    frequency: Frequency
    next_charge_date: date | None


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_charge_date(frequency: Frequency, start: date) -> date:
    return add_months(start, frequency.months)

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType


class PaymentStatus(Enum):
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefundStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def frozen_metadata(metadata: Mapping | None) -> Mapping:
    """Read-only snapshot; results are shared by every replay of an idempotency key."""
    return MappingProxyType(dict(metadata or {}))


@dataclass(frozen=True)
class PaymentIntentResult:
    payment_intent_id: str
    status: PaymentStatus
    amount_minor: int  # charged amount, includes a donor-covered fee
    currency: str
    processor_fee_minor: int | None = None
    net_amount_minor: int | None = None
    client_secret: str | None = None
    metadata: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", frozen_metadata(self.metadata))


@dataclass(frozen=True)
class PaymentConfirmationResult:
    payment_intent_id: str
    transaction_id: str  # capture/charge id carried by later webhooks
    status: PaymentStatus
    amount_minor: int
    currency: str
    receipt_url: str | None = None
    metadata: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", frozen_metadata(self.metadata))


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: RefundStatus
    amount_minor: int
    currency: str
    payment_intent_id: str


@dataclass(frozen=True)
class FeeSchedule:
    percentage: Decimal  # Decimal("0.029") for 2.9%
    fixed_minor: int


@dataclass(frozen=True)
class FeeCalculation:
    percentage: Decimal
    fixed_minor: int
    percentage_component_minor: int
    fee_minor: int
    total_charge_minor: int
    donor_covers_fee: bool

"""
State updates driven by verified webhook events.

The payment layer does not own gift or recurring-plan records. It reaches
them through ``DonationRepository``, implemented by the data layer.
``GiftStateHandler`` maps canonical events onto that repository and refuses
to move a record backwards (a late ``payment.pending`` never overwrites a
succeeded gift, nothing reactivates a cancelled plan).
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from donation_payments.models.audit import AuditEntry
from donation_payments.models.mandate import MandateStatus
from donation_payments.models.webhook import WebhookEvent, WebhookEventType

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[WebhookEvent], None]


class DonationRepository(Protocol):
    def find_gift_by_processor_ref(self, processor: str, processor_ref: str) -> dict[str, Any] | None: ...

    def update_gift_status(self, gift_id: str, status: str, *, occurred_at: datetime, reason: str | None = None) -> None: ...

    def find_or_create_recurring_plan(
        self,
        processor: str,
        mandate_ref: str,
        *,
        amount_minor: int | None,
        currency: str | None,
    ) -> dict[str, Any]: ...

    def update_recurring_plan_status(self, plan_id: str, status: str, *, occurred_at: datetime) -> None: ...

    def append_audit_entry(self, entry: AuditEntry) -> None: ...


class GiftNotFound(LookupError):
    """No gift matches the event's payment reference (yet)."""


GIFT_PENDING = "pending"
GIFT_SUCCESS = "success"
GIFT_FAILED = "failed"
GIFT_REFUNDED = "refunded"
GIFT_DISPUTED = "disputed"

_GIFT_STATUS = {
    WebhookEventType.PAYMENT_PENDING: GIFT_PENDING,
    WebhookEventType.PAYMENT_SUCCEEDED: GIFT_SUCCESS,
    WebhookEventType.PAYMENT_FAILED: GIFT_FAILED,
    WebhookEventType.PAYMENT_REFUNDED: GIFT_REFUNDED,
    WebhookEventType.PAYMENT_DISPUTED: GIFT_DISPUTED,
}

_GIFT_RANK = {
    GIFT_PENDING: 0,
    GIFT_SUCCESS: 1,
    GIFT_FAILED: 1,
    GIFT_REFUNDED: 2,
    GIFT_DISPUTED: 2,
}

_PAUSED_STATUSES = {"paused", "suspended"}
_CANCELLED_STATUSES = {"canceled", "cancelled", "expired"}


class GiftStateHandler:
    """Default webhook handler: applies canonical events to gifts and plans."""

    def __init__(self, repository: DonationRepository):
        self.repository = repository

    def __call__(self, event: WebhookEvent) -> None:
        if event.event_type in _GIFT_STATUS:
            self._apply_payment(event)
        elif event.event_type.value.startswith("mandate."):
            self._apply_mandate(event)
        elif event.event_type is WebhookEventType.PAYOUT_PAID:
            logger.info("payout %s paid (%s)", event.payload.payment_reference, event.processor.value)
        else:
            logger.debug("no state change for %s", event.event_type.value)

    def _apply_payment(self, event: WebhookEvent) -> None:
        reference = event.payload.payment_reference
        if not reference:
            logger.warning("%s event %s has no payment reference", event.processor.value, event.external_event_id)
            return

        gift = self.repository.find_gift_by_processor_ref(event.processor.value, reference)
        order_id = event.payload.metadata.get("order_id")
        if gift is None and order_id and order_id != reference:
            # capture events name the capture; the gift may still be keyed by its order
            gift = self.repository.find_gift_by_processor_ref(event.processor.value, order_id)
        if gift is None:
            # the gift row may not be written yet; failing lets the processor redeliver
            raise GiftNotFound(f"no gift for {event.processor.value} reference {reference}")

        new_status = _GIFT_STATUS[event.event_type]
        current = gift.get("status")
        if current is not None and _GIFT_RANK.get(new_status, 0) < _GIFT_RANK.get(current, 0):
            logger.info(
                "ignoring %s for gift %s: already %s",
                event.event_type.value, gift["id"], current,
            )
            return

        self.repository.update_gift_status(
            gift["id"],
            new_status,
            occurred_at=event.occurred_at,
            reason=event.payload.failure_reason,
        )
        logger.info("gift %s -> %s", gift["id"], new_status)

    def _apply_mandate(self, event: WebhookEvent) -> None:
        reference = event.payload.mandate_reference
        if not reference:
            logger.warning("%s event %s has no mandate reference", event.processor.value, event.external_event_id)
            return

        plan = self.repository.find_or_create_recurring_plan(
            event.processor.value,
            reference,
            amount_minor=event.payload.amount_minor,
            currency=event.payload.currency,
        )
        new_status = self._plan_status(event)
        current = plan.get("status")
        if current == MandateStatus.CANCELLED.value and new_status is not MandateStatus.CANCELLED:
            logger.info("ignoring %s for cancelled plan %s", event.event_type.value, plan["id"])
            return
        if current == new_status.value:
            return

        self.repository.update_recurring_plan_status(plan["id"], new_status.value, occurred_at=event.occurred_at)
        logger.info("recurring plan %s -> %s", plan["id"], new_status.value)

    @staticmethod
    def _plan_status(event: WebhookEvent) -> MandateStatus:
        if event.event_type is WebhookEventType.MANDATE_CANCELLED:
            return MandateStatus.CANCELLED
        if event.event_type is WebhookEventType.MANDATE_FAILED:
            return MandateStatus.FAILED
        status = (event.payload.status or "").lower()
        if status in _PAUSED_STATUSES:
            return MandateStatus.PAUSED
        if status in _CANCELLED_STATUSES:
            return MandateStatus.CANCELLED
        return MandateStatus.ACTIVE

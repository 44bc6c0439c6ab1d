"""
In-memory processor for tests and local development.

Every simulated processor call is recorded (operation + idempotency key), and
failures can be scripted per call so retry and idempotency behaviour can be
observed without a network.
"""

import itertools
import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from donation_payments.adapters.base import (
    ConfirmRequest,
    MandateChanges,
    MandateRequest,
    PaymentAdapter,
    PaymentIntentRequest,
    RefundRequest,
)
from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.models.mandate import MandateStatus, RecurringMandateResult, next_charge_date
from donation_payments.models.payment import (
    FeeCalculation,
    PaymentConfirmationResult,
    PaymentIntentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
)
from donation_payments.models.webhook import Processor, WebhookEvent, WebhookEventType, WebhookPayload
from donation_payments.utils.crypto import constant_time_equals, hmac_sha256_hex


@dataclass(frozen=True)
class MockCall:
    operation: str
    idempotency_key: str | None
    sequence: int


class MockAdapter(PaymentAdapter):
    processor = Processor.MOCK
    signature_header = "X-Mock-Signature"

    def __init__(
        self,
        *,
        api_key: str = "mock_api_key",
        webhook_secret: str = "mock_webhook_secret",
        failures: list[ErrorKind] | None = None,
        always_fail: ErrorKind | None = None,
        call_delay: float = 0.0,
        intent_status: PaymentStatus = PaymentStatus.PENDING,
        **kwargs,
    ):
        super().__init__(api_key=api_key, webhook_secret=webhook_secret, **kwargs)
        self.always_fail = always_fail
        self.call_delay = call_delay
        self.intent_status = intent_status
        self.calls: list[MockCall] = []
        self._failures: deque[ErrorKind] = deque(failures or [])
        self._intents: dict[str, PaymentIntentResult] = {}
        self._mandates: dict[str, RecurringMandateResult] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def fail_next(self, *kinds: ErrorKind) -> "MockAdapter":
        with self._lock:
            self._failures.extend(kinds)
        return self

    def call_count(self, operation: str | None = None) -> int:
        with self._lock:
            if operation is None:
                return len(self.calls)
            return sum(1 for c in self.calls if c.operation == operation)

    def keys_for(self, operation: str) -> list[str | None]:
        with self._lock:
            return [c.idempotency_key for c in self.calls if c.operation == operation]

    def _simulate(self, operation: str, idempotency_key: str | None = None) -> None:
        with self._lock:
            self.calls.append(MockCall(operation, idempotency_key, next(self._sequence)))
            failure = self._failures.popleft() if self._failures else self.always_fail
        if self.call_delay:
            time.sleep(self.call_delay)
        if failure is not None:
            raise PaymentError(failure, f"mock processor failure on {operation}", processor_code=failure.value)

    # processor hooks

    def _create_payment_intent(self, request: PaymentIntentRequest, fees: FeeCalculation) -> PaymentIntentResult:
        self._simulate("create_payment_intent", request.idempotency_key)
        intent_id = f"mock_pi_{uuid.uuid4().hex[:16]}"
        intent = PaymentIntentResult(
            payment_intent_id=intent_id,
            status=self.intent_status,
            amount_minor=fees.total_charge_minor,
            currency=request.currency,
            processor_fee_minor=fees.fee_minor,
            net_amount_minor=fees.total_charge_minor - fees.fee_minor,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            metadata=dict(request.metadata),
        )
        with self._lock:
            self._intents[intent_id] = intent
        return intent

    def _confirm_payment(self, request: ConfirmRequest) -> PaymentConfirmationResult:
        self._simulate("confirm_payment", request.idempotency_key)
        with self._lock:
            intent = self._intents.get(request.payment_intent_id)
        if intent is None:
            raise PaymentError(
                ErrorKind.INVALID_REQUEST,
                f"no such payment intent: {request.payment_intent_id}",
                processor_code="resource_missing",
            )
        transaction_id = f"mock_ch_{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._intents[intent.payment_intent_id] = replace(intent, status=PaymentStatus.SUCCEEDED)
        return PaymentConfirmationResult(
            payment_intent_id=intent.payment_intent_id,
            transaction_id=transaction_id,
            status=PaymentStatus.SUCCEEDED,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            receipt_url=f"https://mock-processor.invalid/receipts/{transaction_id}",
        )

    def _refund(self, request: RefundRequest) -> RefundResult:
        self._simulate("refund_payment", request.idempotency_key)
        return RefundResult(
            refund_id=f"mock_re_{uuid.uuid4().hex[:16]}",
            status=RefundStatus.SUCCEEDED,
            amount_minor=request.amount_minor,
            currency=request.currency,
            payment_intent_id=request.payment_intent_id,
        )

    def _create_mandate(self, request: MandateRequest, fees: FeeCalculation) -> RecurringMandateResult:
        self._simulate("create_recurring_mandate", request.idempotency_key)
        mandate = RecurringMandateResult(
            mandate_id=f"mock_sub_{uuid.uuid4().hex[:16]}",
            status=MandateStatus.ACTIVE,
            amount_minor=fees.total_charge_minor,
            currency=request.currency,
            frequency=request.frequency,
            next_charge_date=request.start_date,
            metadata=dict(request.metadata),
        )
        with self._lock:
            self._mandates[mandate.mandate_id] = mandate
        return mandate

    def _get_mandate(self, mandate_id: str) -> RecurringMandateResult:
        self._simulate("get_recurring_mandate")
        with self._lock:
            mandate = self._mandates.get(mandate_id)
        if mandate is None:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"no such mandate: {mandate_id}", processor_code="resource_missing")
        return mandate

    def _store(self, mandate: RecurringMandateResult) -> RecurringMandateResult:
        with self._lock:
            self._mandates[mandate.mandate_id] = mandate
        return mandate

    def _update_mandate(self, current: RecurringMandateResult, changes: MandateChanges) -> RecurringMandateResult:
        self._simulate("update_recurring_mandate")
        return self._store(replace(
            current,
            amount_minor=changes.amount_minor if changes.amount_minor is not None else current.amount_minor,
            metadata={**current.metadata, **changes.metadata, "effective": changes.timing.value},
        ))

    def _pause_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        self._simulate("pause_recurring_mandate")
        return self._store(replace(current, status=MandateStatus.PAUSED))

    def _resume_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        self._simulate("resume_recurring_mandate")
        return self._store(replace(current, status=MandateStatus.ACTIVE))

    def _cancel_mandate(self, current: RecurringMandateResult, reason: str | None, immediately: bool) -> RecurringMandateResult:
        self._simulate("cancel_recurring_mandate")
        if immediately:
            return self._store(replace(current, status=MandateStatus.CANCELLED, next_charge_date=None))
        period_end = current.next_charge_date or next_charge_date(current.frequency, self._today())
        return self._store(replace(current, cancel_at=period_end))

    # webhooks

    def sign(self, raw_payload: bytes | str, secret: str | None = None) -> str:
        return hmac_sha256_hex(secret or self.webhook_secret, self._decode(raw_payload))

    def verify_webhook_signature(self, raw_payload: bytes | str, signature_header: str | None, secret: str | None = None) -> bool:
        if not signature_header:
            return False
        return constant_time_equals(self.sign(raw_payload, secret), signature_header.strip())

    def _parse_event(self, document: dict, raw_reference: str) -> WebhookEvent:
        data = document.get("data") or {}
        try:
            event_type = WebhookEventType(document.get("type"))
        except ValueError:
            event_type = WebhookEventType.UNKNOWN
        created = document.get("created")
        occurred_at = datetime.fromisoformat(created) if created else datetime.now(timezone.utc)
        return WebhookEvent(
            processor=self.processor,
            external_event_id=str(document["id"]),
            event_type=event_type,
            payload=WebhookPayload(
                payment_reference=data.get("payment_reference"),
                mandate_reference=data.get("mandate_reference"),
                amount_minor=data.get("amount"),
                currency=data.get("currency"),
                status=data.get("status"),
                failure_reason=data.get("failure_reason"),
                metadata=dict(data.get("metadata") or {}),
            ),
            occurred_at=occurred_at,
            raw_reference=raw_reference,
        )

    @staticmethod
    def build_event(event_id: str, event_type: str, **data) -> bytes:
        """Serialize a mock webhook body."""
        return json.dumps({
            "id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }).encode("utf-8")

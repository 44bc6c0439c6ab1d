"""
Payment adapter contract shared by every processor integration.

Subclasses implement the processor calls (``_create_payment_intent`` and
friends) plus webhook verification/parsing. The public methods here own the
cross-cutting rules: input validation, the idempotent short-circuit, retries
with a stable idempotency key, and the terminal-state rule for mandates.

No card data flows through this layer: processors receive tokens and
reference ids only, and nothing here logs a raw webhook body.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.fees import FEE_SCHEDULES, FeeCalculator
from donation_payments.http import header_value
from donation_payments.idempotency import IdempotencyStore
from donation_payments.models.mandate import (
    EffectiveTiming,
    Frequency,
    MandateStatus,
    RecurringMandateResult,
)
from donation_payments.models.money import normalize_currency
from donation_payments.models.payment import (
    FeeCalculation,
    PaymentConfirmationResult,
    PaymentIntentResult,
    RefundResult,
)
from donation_payments.models.webhook import Processor, WebhookEvent
from donation_payments.retry import RetryPolicy
from donation_payments.utils.crypto import fingerprint, sha256_hex
from donation_payments.utils.masking import mask_email


@dataclass(frozen=True)
class PaymentIntentRequest:
    amount_minor: int
    currency: str
    donor_email: str
    donor_covers_fee: bool
    metadata: dict
    idempotency_key: str


@dataclass(frozen=True)
class ConfirmRequest:
    payment_intent_id: str
    details: dict
    idempotency_key: str


@dataclass(frozen=True)
class MandateRequest:
    amount_minor: int
    currency: str
    frequency: Frequency
    donor_email: str
    start_date: date
    donor_covers_fee: bool
    payment_method_token: str | None
    metadata: dict
    idempotency_key: str


@dataclass(frozen=True)
class MandateChanges:
    amount_minor: int | None = None
    payment_method_token: str | None = None
    metadata: dict = field(default_factory=dict)
    timing: EffectiveTiming = EffectiveTiming.IMMEDIATELY


@dataclass(frozen=True)
class RefundRequest:
    payment_intent_id: str
    amount_minor: int
    original_amount_minor: int
    currency: str
    reason: str | None
    idempotency_key: str


class PaymentAdapter(ABC):
    """One instance per processor."""

    processor: Processor
    signature_header: str

    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        test_mode: bool = True,
        idempotency: IdempotencyStore | None = None,
        retry_policy: RetryPolicy | None = None,
        logger: logging.Logger | None = None,
        metrics=None,
        today: Callable[[], date] | None = None,
    ):
        if not api_key:
            raise ValueError(f"missing API key for {self.processor.value} adapter")
        if not webhook_secret:
            raise ValueError(f"missing webhook secret for {self.processor.value} adapter")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.test_mode = test_mode
        self.idempotency = idempotency or IdempotencyStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger or logging.getLogger(f"donation_payments.adapters.{self.processor.value}")
        self.metrics = metrics
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    @property
    def name(self) -> str:
        return self.processor.value

    @property
    def fee_schedule(self):
        return FEE_SCHEDULES[self.processor]

    def calculate_fees(self, amount_minor: int, donor_covers_fee: bool = False) -> FeeCalculation:
        return FeeCalculator.calculate(amount_minor, self.fee_schedule, donor_covers_fee)

    # ------------------------------------------------------------------
    # One-time payments
    # ------------------------------------------------------------------

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        donor_email: str,
        *,
        donor_covers_fee: bool = False,
        metadata: dict | None = None,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        fees = self.calculate_fees(amount_minor, donor_covers_fee)
        request = PaymentIntentRequest(
            amount_minor=amount_minor,
            currency=self._currency(currency),
            donor_email=self._email(donor_email),
            donor_covers_fee=donor_covers_fee,
            metadata=dict(metadata or {}),
            idempotency_key=self._require_key(idempotency_key),
        )

        result = self._run_idempotent(
            "create_payment_intent",
            request,
            lambda: self._create_payment_intent(request, fees),
        )
        self.logger.info(
            "payment intent %s %s for %s (%d %s)",
            result.payment_intent_id, result.status.value, mask_email(request.donor_email),
            result.amount_minor, result.currency,
        )
        return result

    def confirm_payment(
        self,
        payment_intent_id: str,
        *,
        details: dict | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentConfirmationResult:
        """Complete a one-time gift and return the processor's transaction id.

        Later webhooks for the gift reference that transaction id, so callers
        should store it next to the payment intent id. The key defaults to one
        derived from the intent, which makes a repeated confirm a replay.
        """
        if not payment_intent_id:
            raise PaymentError(ErrorKind.INVALID_REQUEST, "a payment intent id is required to confirm a payment")
        request = ConfirmRequest(
            payment_intent_id=payment_intent_id,
            details=dict(details or {}),
            idempotency_key=self._require_key(idempotency_key or f"{payment_intent_id}:confirm"),
        )
        result = self._run_idempotent("confirm_payment", request, lambda: self._confirm_payment(request))
        self.logger.info(
            "payment intent %s confirmed as %s (%s)",
            payment_intent_id, result.transaction_id, result.status.value,
        )
        return result

    def refund_payment(
        self,
        payment_intent_id: str,
        *,
        original_amount_minor: int,
        currency: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        idempotency_key: str,
    ) -> RefundResult:
        if not payment_intent_id:
            raise PaymentError(ErrorKind.INVALID_REQUEST, "a payment intent id is required for refunds")
        if not isinstance(original_amount_minor, int) or original_amount_minor <= 0:
            raise PaymentError(ErrorKind.INVALID_AMOUNT, "original amount must be a positive integer")
        amount = original_amount_minor if amount_minor is None else amount_minor
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise PaymentError(ErrorKind.INVALID_AMOUNT, "refund amount must be a positive integer")
        if amount > original_amount_minor:
            raise PaymentError(
                ErrorKind.REFUND_EXCEEDS_ORIGINAL,
                f"refund of {amount} exceeds original charge of {original_amount_minor} on {payment_intent_id}",
            )

        request = RefundRequest(
            payment_intent_id=payment_intent_id,
            amount_minor=amount,
            original_amount_minor=original_amount_minor,
            currency=self._currency(currency),
            reason=reason,
            idempotency_key=self._require_key(idempotency_key),
        )
        result = self._run_idempotent("refund_payment", request, lambda: self._refund(request))
        self.logger.info("refund %s %s for %s (%d)", result.refund_id, result.status.value, payment_intent_id, amount)
        return result

    # ------------------------------------------------------------------
    # Recurring mandates
    # ------------------------------------------------------------------

    def create_recurring_mandate(
        self,
        amount_minor: int,
        currency: str,
        frequency: Frequency | str,
        donor_email: str,
        *,
        start_date: date | None = None,
        donor_covers_fee: bool = False,
        payment_method_token: str | None = None,
        metadata: dict | None = None,
        idempotency_key: str,
    ) -> RecurringMandateResult:
        fees = self.calculate_fees(amount_minor, donor_covers_fee)
        today = self._today()
        if start_date is not None and start_date < today:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"start date {start_date.isoformat()} is in the past")

        request = MandateRequest(
            amount_minor=amount_minor,
            currency=self._currency(currency),
            frequency=self._frequency(frequency),
            donor_email=self._email(donor_email),
            start_date=start_date or today,
            donor_covers_fee=donor_covers_fee,
            payment_method_token=payment_method_token,
            metadata=dict(metadata or {}),
            idempotency_key=self._require_key(idempotency_key),
        )
        result = self._run_idempotent(
            "create_recurring_mandate",
            request,
            lambda: self._create_mandate(request, fees),
        )
        self.logger.info(
            "mandate %s %s for %s (%d %s %s)",
            result.mandate_id, result.status.value, mask_email(request.donor_email),
            result.amount_minor, result.currency, result.frequency.value,
        )
        return result

    def get_recurring_mandate(self, mandate_id: str) -> RecurringMandateResult:
        if not mandate_id:
            raise PaymentError(ErrorKind.INVALID_REQUEST, "a mandate id is required")
        return self._retry(lambda: self._get_mandate(mandate_id), f"{self.name} get mandate")

    def update_recurring_mandate(
        self,
        mandate_id: str,
        *,
        amount_minor: int | None = None,
        payment_method_token: str | None = None,
        metadata: dict | None = None,
        timing: EffectiveTiming = EffectiveTiming.IMMEDIATELY,
    ) -> RecurringMandateResult:
        if amount_minor is not None:
            FeeCalculator.calculate(amount_minor, self.fee_schedule)  # validates the amount
        changes = MandateChanges(
            amount_minor=amount_minor,
            payment_method_token=payment_method_token,
            metadata=dict(metadata or {}),
            timing=EffectiveTiming(timing),
        )
        current = self._mutable_mandate(mandate_id, "update")
        result = self._retry(lambda: self._update_mandate(current, changes), f"{self.name} update mandate")
        self.logger.info("mandate %s updated (%s)", mandate_id, changes.timing.value)
        return result

    def pause_recurring_mandate(self, mandate_id: str) -> RecurringMandateResult:
        current = self._mutable_mandate(mandate_id, "pause")
        if current.status is MandateStatus.PAUSED:
            return current
        result = self._retry(lambda: self._pause_mandate(current), f"{self.name} pause mandate")
        self.logger.info("mandate %s paused", mandate_id)
        return result

    def resume_recurring_mandate(self, mandate_id: str) -> RecurringMandateResult:
        current = self._mutable_mandate(mandate_id, "resume")
        if current.status is MandateStatus.ACTIVE:
            return current
        result = self._retry(lambda: self._resume_mandate(current), f"{self.name} resume mandate")
        self.logger.info("mandate %s resumed", mandate_id)
        return result

    def cancel_recurring_mandate(
        self,
        mandate_id: str,
        *,
        reason: str | None = None,
        immediately: bool = True,
    ) -> RecurringMandateResult:
        current = self.get_recurring_mandate(mandate_id)
        if current.is_terminal:
            self.logger.info("mandate %s already cancelled", mandate_id)
            return current
        result = self._retry(
            lambda: self._cancel_mandate(current, reason, immediately),
            f"{self.name} cancel mandate",
        )
        self.logger.info("mandate %s cancelled (immediately=%s)", mandate_id, immediately)
        return result

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def signature_from_headers(self, headers: Mapping[str, str]) -> str | None:
        return header_value(headers, self.signature_header)

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes | str, signature_header: str | None, secret: str | None = None) -> bool:
        """Return True only for an authentic payload; compare in constant time."""

    def parse_webhook_event(self, raw_payload: bytes | str) -> WebhookEvent:
        """Normalize a verified webhook body into a WebhookEvent."""
        raw = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload
        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            raise PaymentError(ErrorKind.MALFORMED_WEBHOOK, f"{self.name} webhook body is not valid JSON") from None
        if not isinstance(document, dict):
            raise PaymentError(ErrorKind.MALFORMED_WEBHOOK, f"{self.name} webhook body is not an object")
        try:
            return self._parse_event(document, sha256_hex(raw))
        except PaymentError:
            raise
        except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
            raise PaymentError(
                ErrorKind.MALFORMED_WEBHOOK,
                f"{self.name} webhook is missing required fields ({type(e).__name__})",
            ) from None

    # ------------------------------------------------------------------
    # Processor hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _create_payment_intent(self, request: PaymentIntentRequest, fees: FeeCalculation) -> PaymentIntentResult: ...

    @abstractmethod
    def _confirm_payment(self, request: ConfirmRequest) -> PaymentConfirmationResult: ...

    @abstractmethod
    def _refund(self, request: RefundRequest) -> RefundResult: ...

    @abstractmethod
    def _create_mandate(self, request: MandateRequest, fees: FeeCalculation) -> RecurringMandateResult: ...

    @abstractmethod
    def _get_mandate(self, mandate_id: str) -> RecurringMandateResult: ...

    @abstractmethod
    def _update_mandate(self, current: RecurringMandateResult, changes: MandateChanges) -> RecurringMandateResult: ...

    @abstractmethod
    def _cancel_mandate(self, current: RecurringMandateResult, reason: str | None, immediately: bool) -> RecurringMandateResult: ...

    def _pause_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        raise PaymentError(ErrorKind.UNSUPPORTED_OPERATION, f"{self.name} does not support pausing mandates")

    def _resume_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        raise PaymentError(ErrorKind.UNSUPPORTED_OPERATION, f"{self.name} does not support resuming mandates")

    @abstractmethod
    def _parse_event(self, document: dict, raw_reference: str) -> WebhookEvent: ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_idempotent(self, operation: str, request, call):
        digest = fingerprint(operation, {"processor": self.name, **asdict(request)})
        description = f"{self.name} {operation}"
        try:
            result = self.idempotency.get_or_compute(
                request.idempotency_key,
                lambda: self.retry_policy.execute(call, description=description),
                fingerprint=digest,
            )
        except PaymentError as exc:
            self.logger.warning(
                "%s failed [%s] key=%s processor_code=%s",
                description, exc.kind.value, request.idempotency_key, exc.processor_code,
            )
            self._record_metric(operation, success=False)
            raise
        self._record_metric(operation, success=True)
        return result

    def _retry(self, call, description: str):
        try:
            return self.retry_policy.execute(call, description=description)
        except PaymentError as exc:
            self.logger.warning("%s failed [%s] processor_code=%s", description, exc.kind.value, exc.processor_code)
            raise

    def _mutable_mandate(self, mandate_id: str, action: str) -> RecurringMandateResult:
        current = self.get_recurring_mandate(mandate_id)
        if current.is_terminal:
            raise PaymentError(ErrorKind.MANDATE_CANCELLED, f"cannot {action} cancelled mandate {mandate_id}")
        return current

    def _record_metric(self, operation: str, success: bool) -> None:
        if self.metrics is None:
            return
        label = f"{self.name}.{operation}"
        if success:
            self.metrics.record_success(label)
        else:
            self.metrics.record_failure(label)

    @staticmethod
    def _require_key(idempotency_key: str) -> str:
        if not idempotency_key or not str(idempotency_key).strip():
            raise PaymentError(ErrorKind.INVALID_REQUEST, "an idempotency key is required")
        return str(idempotency_key)

    @staticmethod
    def _currency(currency: str) -> str:
        try:
            return normalize_currency(currency)
        except ValueError:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"invalid currency {currency!r}") from None

    @staticmethod
    def _email(email: str) -> str:
        if not email or "@" not in email:
            raise PaymentError(ErrorKind.INVALID_REQUEST, "a valid donor email is required")
        return email.strip()

    @staticmethod
    def _frequency(frequency: Frequency | str) -> Frequency:
        try:
            return Frequency(frequency)
        except ValueError:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"unsupported frequency {frequency!r}") from None

    @staticmethod
    def _decode(raw_payload: bytes | str) -> bytes:
        return raw_payload.encode("utf-8") if isinstance(raw_payload, str) else bytes(raw_payload)

"""
Stripe adapter.

Form-encoded REST calls authenticated with the secret key; payment intents
for one-time gifts and subscriptions with inline prices for mandates.
Webhooks carry ``Stripe-Signature: t=<unix ts>,v1=<hex hmac>`` computed over
``"<ts>.<raw body>"``.

Fee structure: 2.9% + 30 minor units.
"""

import time
from collections.abc import Callable
from datetime import date, datetime, timezone

from donation_payments.adapters.base import (
    ConfirmRequest,
    MandateChanges,
    MandateRequest,
    PaymentAdapter,
    PaymentIntentRequest,
    RefundRequest,
)
from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.http import ProcessorClient
from donation_payments.models.mandate import (
    EffectiveTiming,
    Frequency,
    MandateStatus,
    RecurringMandateResult,
)
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

API_BASE = "https://api.stripe.com/v1"
DEFAULT_TOLERANCE_SECONDS = 300

_INTENT_STATUS = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "canceled": PaymentStatus.FAILED,
}

_SUBSCRIPTION_STATUS = {
    "active": MandateStatus.ACTIVE,
    "trialing": MandateStatus.ACTIVE,
    "past_due": MandateStatus.ACTIVE,
    "incomplete": MandateStatus.ACTIVE,
    "paused": MandateStatus.PAUSED,
    "canceled": MandateStatus.CANCELLED,
    "incomplete_expired": MandateStatus.FAILED,
    "unpaid": MandateStatus.FAILED,
}

_REFUND_STATUS = {
    "succeeded": RefundStatus.SUCCEEDED,
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
}

_EVENT_TYPES = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.processing": WebhookEventType.PAYMENT_PENDING,
    "payment_intent.requires_action": WebhookEventType.PAYMENT_PENDING,
    "charge.refunded": WebhookEventType.PAYMENT_REFUNDED,
    "charge.dispute.created": WebhookEventType.PAYMENT_DISPUTED,
    "customer.subscription.created": WebhookEventType.MANDATE_CREATED,
    "customer.subscription.updated": WebhookEventType.MANDATE_UPDATED,
    "customer.subscription.paused": WebhookEventType.MANDATE_UPDATED,
    "customer.subscription.resumed": WebhookEventType.MANDATE_UPDATED,
    "customer.subscription.deleted": WebhookEventType.MANDATE_CANCELLED,
    "invoice.payment_failed": WebhookEventType.MANDATE_FAILED,
    "payout.paid": WebhookEventType.PAYOUT_PAID,
}

_DECLINE_CODES = {
    "insufficient_funds": ErrorKind.INSUFFICIENT_FUNDS,
    "expired_card": ErrorKind.EXPIRED_CARD,
    "incorrect_number": ErrorKind.INVALID_CARD,
    "invalid_number": ErrorKind.INVALID_CARD,
    "incorrect_cvc": ErrorKind.INVALID_CARD,
    "invalid_cvc": ErrorKind.INVALID_CARD,
    "invalid_expiry_month": ErrorKind.INVALID_CARD,
    "invalid_expiry_year": ErrorKind.INVALID_CARD,
    "invalid_card_type": ErrorKind.INVALID_CARD,
}

_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def classify_stripe_error(status_code: int, body: dict) -> PaymentError:
    error = body.get("error") or {}
    code = error.get("code") or ""
    decline_code = error.get("decline_code") or ""
    error_type = error.get("type") or ""

    if status_code in (401, 403) or error_type == "authentication_error":
        kind = ErrorKind.AUTHENTICATION_FAILED
    elif error_type == "idempotency_error":
        kind = ErrorKind.IDEMPOTENCY_KEY_CONFLICT
    elif code in _DECLINE_CODES:
        kind = _DECLINE_CODES[code]
    elif code == "card_declined" or error_type == "card_error":
        kind = _DECLINE_CODES.get(decline_code, ErrorKind.CARD_DECLINED)
    elif code == "amount_too_small" or code == "amount_too_large":
        kind = ErrorKind.INVALID_AMOUNT
    elif error_type == "invalid_request_error":
        kind = ErrorKind.INVALID_REQUEST
    else:
        kind = ErrorKind.UNKNOWN_PROCESSOR_ERROR

    return PaymentError(
        kind,
        f"stripe rejected the request ({code or error_type or status_code})",
        processor_code=decline_code or code or error_type or None,
        processor_message=error.get("message"),
        status_code=status_code,
    )


def _flatten(prefix: str, values: dict) -> dict:
    return {f"{prefix}[{key}]": str(value) for key, value in values.items()}


def _to_date(timestamp: int | None) -> date | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).date()


class StripeAdapter(PaymentAdapter):
    processor = Processor.STRIPE
    signature_header = "Stripe-Signature"

    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        product_id: str = "recurring_donation",
        base_url: str = API_BASE,
        timeout_seconds: float = 10,
        session=None,
        signature_tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        super().__init__(api_key=api_key, webhook_secret=webhook_secret, **kwargs)
        self.product_id = product_id
        self.signature_tolerance = signature_tolerance
        self._clock = clock
        self.client = ProcessorClient(
            base_url,
            name="stripe",
            timeout_seconds=timeout_seconds,
            session=session,
            classifier=classify_stripe_error,
        )

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    # one-time payments

    def _create_payment_intent(self, request: PaymentIntentRequest, fees: FeeCalculation) -> PaymentIntentResult:
        data = {
            "amount": str(fees.total_charge_minor),
            "currency": request.currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "metadata[donor_covers_fee]": "true" if request.donor_covers_fee else "false",
            "metadata[original_amount]": str(request.amount_minor),
            "metadata[fee_amount]": str(fees.fee_minor),
            **_flatten("metadata", request.metadata),
        }
        intent = self.client.request(
            "POST", "/payment_intents", headers=self._headers(request.idempotency_key), data=data,
        )
        return PaymentIntentResult(
            payment_intent_id=intent["id"],
            status=_INTENT_STATUS.get(intent.get("status"), PaymentStatus.FAILED),
            amount_minor=int(intent.get("amount", fees.total_charge_minor)),
            currency=request.currency,
            processor_fee_minor=fees.fee_minor,
            net_amount_minor=fees.total_charge_minor - fees.fee_minor,
            client_secret=intent.get("client_secret"),
            metadata=dict(intent.get("metadata") or {}),
        )

    def _confirm_payment(self, request: ConfirmRequest) -> PaymentConfirmationResult:
        path = f"/payment_intents/{request.payment_intent_id}"
        if request.details.get("payment_method"):
            data = {"payment_method": str(request.details["payment_method"]), "expand[]": "latest_charge"}
            if request.details.get("return_url"):
                data["return_url"] = str(request.details["return_url"])
            intent = self.client.request(
                "POST", f"{path}/confirm", headers=self._headers(request.idempotency_key), data=data,
            )
        else:
            # confirmed client-side; read back the outcome
            intent = self.client.request("GET", path, headers=self._headers(), params={"expand[]": "latest_charge"})

        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            charge_id, receipt_url = charge.get("id"), charge.get("receipt_url")
        else:
            charge_id, receipt_url = charge, None
        return PaymentConfirmationResult(
            payment_intent_id=intent["id"],
            transaction_id=charge_id or intent["id"],
            status=_INTENT_STATUS.get(intent.get("status"), PaymentStatus.FAILED),
            amount_minor=int(intent.get("amount", 0)),
            currency=(intent.get("currency") or "usd").upper(),
            receipt_url=receipt_url,
            metadata=dict(intent.get("metadata") or {}),
        )

    def _refund(self, request: RefundRequest) -> RefundResult:
        data = {
            "payment_intent": request.payment_intent_id,
            "amount": str(request.amount_minor),
        }
        if request.reason:
            if request.reason in _REFUND_REASONS:
                data["reason"] = request.reason
            data["metadata[reason]"] = request.reason
        refund = self.client.request("POST", "/refunds", headers=self._headers(request.idempotency_key), data=data)
        return RefundResult(
            refund_id=refund["id"],
            status=_REFUND_STATUS.get(refund.get("status"), RefundStatus.FAILED),
            amount_minor=int(refund.get("amount", request.amount_minor)),
            currency=(refund.get("currency") or request.currency).upper(),
            payment_intent_id=refund.get("payment_intent") or request.payment_intent_id,
        )

    # recurring

    def _price_data(self, amount_minor: int, currency: str, frequency: Frequency, product: str) -> dict:
        interval, count = ("year", 1) if frequency is Frequency.ANNUALLY else ("month", frequency.months)
        return {
            "items[0][price_data][currency]": currency.lower(),
            "items[0][price_data][unit_amount]": str(amount_minor),
            "items[0][price_data][product]": product,
            "items[0][price_data][recurring][interval]": interval,
            "items[0][price_data][recurring][interval_count]": str(count),
        }

    def _create_mandate(self, request: MandateRequest, fees: FeeCalculation) -> RecurringMandateResult:
        customer_data = {"email": request.donor_email}
        if request.payment_method_token:
            customer_data["payment_method"] = request.payment_method_token
            customer_data["invoice_settings[default_payment_method]"] = request.payment_method_token
        customer = self.client.request(
            "POST", "/customers",
            headers=self._headers(f"{request.idempotency_key}:customer"),
            data=customer_data,
        )

        data = {
            "customer": customer["id"],
            **self._price_data(fees.total_charge_minor, request.currency, request.frequency, self.product_id),
            "metadata[donor_covers_fee]": "true" if request.donor_covers_fee else "false",
            "metadata[original_amount]": str(request.amount_minor),
            "metadata[fee_amount]": str(fees.fee_minor),
            **_flatten("metadata", request.metadata),
        }
        if request.payment_method_token:
            data["default_payment_method"] = request.payment_method_token
        if request.start_date > self._today():
            anchor = datetime(request.start_date.year, request.start_date.month, request.start_date.day, tzinfo=timezone.utc)
            data["billing_cycle_anchor"] = str(int(anchor.timestamp()))
            data["proration_behavior"] = "none"

        subscription = self.client.request(
            "POST", "/subscriptions", headers=self._headers(request.idempotency_key), data=data,
        )
        return self._to_mandate(subscription)

    def _get_mandate(self, mandate_id: str) -> RecurringMandateResult:
        return self._to_mandate(self.client.request("GET", f"/subscriptions/{mandate_id}", headers=self._headers()))

    def _update_mandate(self, current: RecurringMandateResult, changes: MandateChanges) -> RecurringMandateResult:
        data = {
            "proration_behavior": "create_prorations" if changes.timing is EffectiveTiming.IMMEDIATELY else "none",
            **_flatten("metadata", changes.metadata),
        }
        if changes.amount_minor is not None:
            data["items[0][id]"] = current.metadata.get("subscription_item_id", "")
            data.update(self._price_data(
                changes.amount_minor,
                current.currency,
                current.frequency,
                current.metadata.get("product") or self.product_id,
            ))
        if changes.payment_method_token:
            data["default_payment_method"] = changes.payment_method_token
        subscription = self.client.request(
            "POST", f"/subscriptions/{current.mandate_id}", headers=self._headers(), data=data,
        )
        return self._to_mandate(subscription)

    def _pause_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        subscription = self.client.request(
            "POST", f"/subscriptions/{current.mandate_id}",
            headers=self._headers(),
            data={"pause_collection[behavior]": "void"},
        )
        return self._to_mandate(subscription)

    def _resume_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        subscription = self.client.request(
            "POST", f"/subscriptions/{current.mandate_id}",
            headers=self._headers(),
            data={"pause_collection": ""},
        )
        return self._to_mandate(subscription)

    def _cancel_mandate(self, current: RecurringMandateResult, reason: str | None, immediately: bool) -> RecurringMandateResult:
        if immediately:
            data = {"cancellation_details[comment]": reason} if reason else None
            subscription = self.client.request(
                "DELETE", f"/subscriptions/{current.mandate_id}", headers=self._headers(), data=data,
            )
        else:
            data = {"cancel_at_period_end": "true"}
            if reason:
                data["cancellation_details[comment]"] = reason
            subscription = self.client.request(
                "POST", f"/subscriptions/{current.mandate_id}", headers=self._headers(), data=data,
            )
        return self._to_mandate(subscription)

    def _to_mandate(self, subscription: dict) -> RecurringMandateResult:
        item = ((subscription.get("items") or {}).get("data") or [{}])[0]
        price = item.get("price") or {}
        recurring = price.get("recurring") or {}
        status = _SUBSCRIPTION_STATUS.get(subscription.get("status"), MandateStatus.FAILED)
        if status is MandateStatus.ACTIVE and subscription.get("pause_collection"):
            status = MandateStatus.PAUSED

        if recurring.get("interval") == "year":
            frequency = Frequency.ANNUALLY
        elif int(recurring.get("interval_count") or 1) == 3:
            frequency = Frequency.QUARTERLY
        else:
            frequency = Frequency.MONTHLY

        metadata = dict(subscription.get("metadata") or {})
        if item.get("id"):
            metadata["subscription_item_id"] = item["id"]
        if price.get("product"):
            metadata["product"] = price["product"]

        return RecurringMandateResult(
            mandate_id=subscription["id"],
            status=status,
            amount_minor=int(price.get("unit_amount") or 0),
            currency=(price.get("currency") or "usd").upper(),
            frequency=frequency,
            next_charge_date=None if status is MandateStatus.CANCELLED else _to_date(subscription.get("current_period_end")),
            cancel_at=_to_date(subscription.get("cancel_at")),
            metadata=metadata,
        )

    # webhooks

    def sign(self, raw_payload: bytes | str, timestamp: int | None = None, secret: str | None = None) -> str:
        """Produce a Stripe-Signature header value for a payload."""
        timestamp = int(self._clock()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode("utf-8") + self._decode(raw_payload)
        return f"t={timestamp},v1={hmac_sha256_hex(secret or self.webhook_secret, signed)}"

    def verify_webhook_signature(self, raw_payload: bytes | str, signature_header: str | None, secret: str | None = None) -> bool:
        if not signature_header:
            return False

        timestamp = None
        candidates = []
        for element in signature_header.split(","):
            prefix, _, value = element.strip().partition("=")
            if prefix == "t":
                timestamp = value
            elif prefix == "v1" and value:
                candidates.append(value)
        if not timestamp or not candidates or not timestamp.isdigit():
            return False
        if abs(self._clock() - int(timestamp)) > self.signature_tolerance:
            self.logger.warning("stripe webhook timestamp outside the %ds tolerance", self.signature_tolerance)
            return False

        signed = f"{timestamp}.".encode("utf-8") + self._decode(raw_payload)
        expected = hmac_sha256_hex(secret or self.webhook_secret, signed)
        matches = [constant_time_equals(expected, candidate) for candidate in candidates]
        return any(matches)

    def _parse_event(self, document: dict, raw_reference: str) -> WebhookEvent:
        obj = document["data"]["object"]
        event_type = _EVENT_TYPES.get(document.get("type"), WebhookEventType.UNKNOWN)
        kind = obj.get("object")
        currency = obj.get("currency")

        payment_reference = None
        mandate_reference = None
        amount = obj.get("amount")
        failure_reason = None

        if kind == "payment_intent":
            payment_reference = obj["id"]
            failure_reason = (obj.get("last_payment_error") or {}).get("code")
        elif kind == "charge":
            payment_reference = obj.get("payment_intent") or obj["id"]
            if event_type is WebhookEventType.PAYMENT_REFUNDED:
                amount = obj.get("amount_refunded", amount)
            failure_reason = obj.get("failure_code")
        elif kind == "dispute":
            payment_reference = obj.get("payment_intent") or obj.get("charge")
            failure_reason = obj.get("reason")
        elif kind == "subscription":
            mandate_reference = obj["id"]
            item = ((obj.get("items") or {}).get("data") or [{}])[0]
            price = item.get("price") or {}
            amount = price.get("unit_amount")
            currency = price.get("currency", currency)
        elif kind == "invoice":
            mandate_reference = obj.get("subscription")
            payment_reference = obj.get("payment_intent")
            amount = obj.get("amount_due")
        else:
            payment_reference = obj.get("id")

        return WebhookEvent(
            processor=self.processor,
            external_event_id=document["id"],
            event_type=event_type,
            payload=WebhookPayload(
                payment_reference=payment_reference,
                mandate_reference=mandate_reference,
                amount_minor=int(amount) if amount is not None else None,
                currency=currency.upper() if currency else None,
                status=obj.get("status"),
                failure_reason=failure_reason,
                metadata=dict(obj.get("metadata") or {}),
            ),
            occurred_at=datetime.fromtimestamp(int(document["created"]), tz=timezone.utc),
            raw_reference=raw_reference,
        )

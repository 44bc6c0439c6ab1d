"""
PayPal adapter.

JSON REST with an OAuth2 client-credentials bearer token (cached until 90% of
its lifetime). Amounts travel as decimal strings. One-time gifts are orders,
captured once the donor approves them; capture webhooks name the capture id
and carry the order id in ``related_ids``. Recurring gifts are a per-donor
billing plan plus a subscription.

Webhooks are verified by posting the transmission headers back to PayPal's
``verify-webhook-signature`` endpoint, which validates the certificate chain.
An HMAC-over-body shortcut exists only behind ``legacy_hmac``.

Fee structure: 2.99% + 49 minor units.
"""

import json
import threading
import time
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
from donation_payments.http import ProcessorClient, header_value
from donation_payments.models.mandate import Frequency, MandateStatus, RecurringMandateResult
from donation_payments.models.money import decimal_string_to_minor, minor_to_decimal_string
from donation_payments.models.payment import (
    FeeCalculation,
    PaymentConfirmationResult,
    PaymentIntentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
)
from donation_payments.models.webhook import Processor, WebhookEvent, WebhookEventType, WebhookPayload
from donation_payments.utils.crypto import constant_time_equals, hmac_sha256_base64

SANDBOX_BASE = "https://api-m.sandbox.paypal.com"
LIVE_BASE = "https://api-m.paypal.com"

TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}

_ORDER_STATUS = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "CREATED": PaymentStatus.REQUIRES_ACTION,
    "PAYER_ACTION_REQUIRED": PaymentStatus.REQUIRES_ACTION,
    "APPROVED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "VOIDED": PaymentStatus.FAILED,
}

_SUBSCRIPTION_STATUS = {
    "APPROVAL_PENDING": MandateStatus.ACTIVE,
    "APPROVED": MandateStatus.ACTIVE,
    "ACTIVE": MandateStatus.ACTIVE,
    "SUSPENDED": MandateStatus.PAUSED,
    "CANCELLED": MandateStatus.CANCELLED,
    "EXPIRED": MandateStatus.CANCELLED,
}

_CAPTURE_STATUS = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "PENDING": PaymentStatus.PENDING,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
}

_REFUND_STATUS = {
    "COMPLETED": RefundStatus.SUCCEEDED,
    "PENDING": RefundStatus.PENDING,
}

_EVENT_TYPES = {
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.PENDING": WebhookEventType.PAYMENT_PENDING,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.PAYMENT_REFUNDED,
    "CUSTOMER.DISPUTE.CREATED": WebhookEventType.PAYMENT_DISPUTED,
    "BILLING.SUBSCRIPTION.CREATED": WebhookEventType.MANDATE_CREATED,
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookEventType.MANDATE_UPDATED,
    "BILLING.SUBSCRIPTION.UPDATED": WebhookEventType.MANDATE_UPDATED,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookEventType.MANDATE_UPDATED,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookEventType.MANDATE_CANCELLED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": WebhookEventType.MANDATE_FAILED,
    "PAYMENT.PAYOUTSBATCH.SUCCESS": WebhookEventType.PAYOUT_PAID,
}

_ISSUES = {
    "AUTHENTICATION_FAILURE": ErrorKind.AUTHENTICATION_FAILED,
    "INSTRUMENT_DECLINED": ErrorKind.CARD_DECLINED,
    "TRANSACTION_REFUSED": ErrorKind.CARD_DECLINED,
    "INSUFFICIENT_FUNDS": ErrorKind.INSUFFICIENT_FUNDS,
    "CARD_EXPIRED": ErrorKind.EXPIRED_CARD,
    "INVALID_CARD_NUMBER": ErrorKind.INVALID_CARD,
    "RESOURCE_NOT_FOUND": ErrorKind.INVALID_REQUEST,
    "INVALID_REQUEST": ErrorKind.INVALID_REQUEST,
    "UNPROCESSABLE_ENTITY": ErrorKind.INVALID_REQUEST,
    "ORDER_NOT_APPROVED": ErrorKind.INVALID_REQUEST,
    "ORDER_ALREADY_CAPTURED": ErrorKind.INVALID_REQUEST,
    "REFUND_AMOUNT_EXCEEDED": ErrorKind.REFUND_EXCEEDS_ORIGINAL,
    "SUBSCRIPTION_STATUS_INVALID": ErrorKind.INVALID_REQUEST,
}


def classify_paypal_error(status_code: int, body: dict) -> PaymentError:
    details = (body.get("details") or [{}])[0]
    issue = details.get("issue") or body.get("name") or body.get("error") or ""
    if status_code == 401 or body.get("error") == "invalid_client":
        kind = ErrorKind.AUTHENTICATION_FAILED
    elif issue in _ISSUES:
        kind = _ISSUES[issue]
    elif body.get("name") in _ISSUES:
        kind = _ISSUES[body["name"]]
    elif status_code in (400, 404, 422):
        kind = ErrorKind.INVALID_REQUEST
    else:
        kind = ErrorKind.UNKNOWN_PROCESSOR_ERROR
    return PaymentError(
        kind,
        f"paypal rejected the request ({issue or status_code})",
        processor_code=issue or None,
        processor_message=details.get("description") or body.get("message"),
        status_code=status_code,
    )


def _link(document: dict, *rels: str) -> str | None:
    for link in document.get("links") or []:
        if link.get("rel") in rels:
            return link.get("href")
    return None


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class PayPalAdapter(PaymentAdapter):
    processor = Processor.PAYPAL
    signature_header = "PAYPAL-TRANSMISSION-SIG"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        webhook_id: str | None = None,
        product_id: str = "DONATION",
        legacy_hmac: bool = False,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 10,
        session=None,
        clock=time.monotonic,
        **kwargs,
    ):
        super().__init__(api_key=client_id, webhook_secret=webhook_secret or client_secret, **kwargs)
        if not client_secret:
            raise ValueError("missing client secret for paypal adapter")
        if not legacy_hmac and not webhook_id:
            raise ValueError("a webhook id is required to verify paypal webhooks")
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.product_id = product_id
        self.legacy_hmac = legacy_hmac
        self.client = ProcessorClient(
            base_url or (SANDBOX_BASE if self.test_mode else LIVE_BASE),
            name="paypal",
            timeout_seconds=timeout_seconds,
            session=session,
            classifier=classify_paypal_error,
        )
        self._clock = clock
        self._token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()
        if legacy_hmac:
            self.logger.warning("paypal webhooks verified with the legacy HMAC shortcut; certificate validation is off")

    # auth

    def access_token(self) -> str:
        with self._token_lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token
            body = self.client.request(
                "POST", "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.api_key, self.client_secret),
            )
            self._token = body["access_token"]
            self._token_expiry = self._clock() + float(body.get("expires_in", 0)) * 0.9
            return self._token

    def _headers(self, request_id: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _money(self, amount_minor: int, currency: str) -> dict:
        return {"currency_code": currency, "value": minor_to_decimal_string(amount_minor, currency)}

    # one-time payments

    def _create_payment_intent(self, request: PaymentIntentRequest, fees: FeeCalculation) -> PaymentIntentResult:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": request.idempotency_key,
                "custom_id": request.idempotency_key,
                "description": "Donation",
                "amount": self._money(fees.total_charge_minor, request.currency),
            }],
            "payer": {"email_address": request.donor_email},
            "application_context": {"shipping_preference": "NO_SHIPPING", "user_action": "PAY_NOW"},
        }
        order = self.client.request(
            "POST", "/v2/checkout/orders", headers=self._headers(request.idempotency_key), json=body,
        )
        return PaymentIntentResult(
            payment_intent_id=order["id"],
            status=_ORDER_STATUS.get(order.get("status"), PaymentStatus.PENDING),
            amount_minor=fees.total_charge_minor,
            currency=request.currency,
            processor_fee_minor=fees.fee_minor,
            net_amount_minor=fees.total_charge_minor - fees.fee_minor,
            client_secret=_link(order, "approve", "payer-action"),
            metadata=dict(request.metadata),
        )

    def _confirm_payment(self, request: ConfirmRequest) -> PaymentConfirmationResult:
        order = self.client.request(
            "POST", f"/v2/checkout/orders/{request.payment_intent_id}/capture",
            headers=self._headers(request.idempotency_key),
            json={},
        )
        units = order.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or []
        if not captures:
            raise PaymentError(
                ErrorKind.UNKNOWN_PROCESSOR_ERROR,
                f"paypal returned no capture for order {request.payment_intent_id}",
            )
        capture = captures[0]
        amount = capture.get("amount") or {}
        currency = amount.get("currency_code", "USD")
        return PaymentConfirmationResult(
            payment_intent_id=order.get("id", request.payment_intent_id),
            transaction_id=capture["id"],
            status=_CAPTURE_STATUS.get(capture.get("status"), PaymentStatus.PENDING),
            amount_minor=decimal_string_to_minor(amount["value"], currency) if "value" in amount else 0,
            currency=currency,
            metadata={"order_id": order.get("id", request.payment_intent_id)},
        )

    def _refund(self, request: RefundRequest) -> RefundResult:
        body = {"amount": self._money(request.amount_minor, request.currency)}
        if request.reason:
            body["note_to_payer"] = request.reason[:255]
        refund = self.client.request(
            "POST", f"/v2/payments/captures/{request.payment_intent_id}/refund",
            headers=self._headers(request.idempotency_key),
            json=body,
        )
        amount = refund.get("amount") or {}
        return RefundResult(
            refund_id=refund["id"],
            status=_REFUND_STATUS.get(refund.get("status"), RefundStatus.FAILED),
            amount_minor=decimal_string_to_minor(amount["value"], request.currency) if "value" in amount else request.amount_minor,
            currency=request.currency,
            payment_intent_id=request.payment_intent_id,
        )

    # recurring

    @staticmethod
    def _billing_frequency(frequency: Frequency) -> dict:
        if frequency is Frequency.ANNUALLY:
            return {"interval_unit": "YEAR", "interval_count": 1}
        return {"interval_unit": "MONTH", "interval_count": frequency.months}

    def _create_mandate(self, request: MandateRequest, fees: FeeCalculation) -> RecurringMandateResult:
        plan_body = {
            "product_id": self.product_id,
            "name": f"Recurring donation ({request.frequency.value})",
            "status": "ACTIVE",
            "billing_cycles": [{
                "frequency": self._billing_frequency(request.frequency),
                "tenure_type": "REGULAR",
                "sequence": 1,
                "total_cycles": 0,
                "pricing_scheme": {"fixed_price": self._money(fees.total_charge_minor, request.currency)},
            }],
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee_failure_action": "CANCEL",
                "payment_failure_threshold": 3,
            },
        }
        # the minimal create response omits billing_cycles
        plan = {
            **plan_body,
            **self.client.request(
                "POST", "/v1/billing/plans",
                headers=self._headers(f"{request.idempotency_key}:plan"),
                json=plan_body,
            ),
        }

        body = {
            "plan_id": plan["id"],
            "custom_id": request.idempotency_key,
            "subscriber": {"email_address": request.donor_email},
            "application_context": {
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
            },
        }
        if request.start_date > self._today():
            body["start_time"] = f"{request.start_date.isoformat()}T00:00:00Z"
        subscription = self.client.request(
            "POST", "/v1/billing/subscriptions", headers=self._headers(request.idempotency_key), json=body,
        )
        if not subscription.get("plan_id"):
            subscription = {**subscription, "plan_id": plan["id"]}
        approval_url = _link(subscription, "approve")
        return self._to_mandate(
            subscription, plan,
            fallback_start=request.start_date,
            extra_metadata={"approval_url": approval_url} if approval_url else None,
        )

    def _get_mandate(self, mandate_id: str) -> RecurringMandateResult:
        subscription = self.client.request("GET", f"/v1/billing/subscriptions/{mandate_id}", headers=self._headers())
        plan = self.client.request("GET", f"/v1/billing/plans/{subscription['plan_id']}", headers=self._headers())
        return self._to_mandate(subscription, plan)

    def _update_mandate(self, current: RecurringMandateResult, changes: MandateChanges) -> RecurringMandateResult:
        if changes.payment_method_token:
            raise PaymentError(
                ErrorKind.UNSUPPORTED_OPERATION,
                "paypal payers change their funding source in PayPal, not through the API",
            )
        if changes.amount_minor is not None:
            # each mandate owns its plan, so repricing the plan reprices only this donor
            self.client.request(
                "POST", f"/v1/billing/plans/{current.metadata['plan_id']}/update-pricing-schemes",
                headers=self._headers(),
                json={"pricing_schemes": [{
                    "billing_cycle_sequence": 1,
                    "pricing_scheme": {"fixed_price": self._money(changes.amount_minor, current.currency)},
                }]},
            )
        if changes.metadata:
            self.logger.debug("paypal subscriptions carry no metadata; ignoring %s", sorted(changes.metadata))
        return self._get_mandate(current.mandate_id)

    def _pause_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        self.client.request(
            "POST", f"/v1/billing/subscriptions/{current.mandate_id}/suspend",
            headers=self._headers(), json={"reason": "Paused by donor"},
        )
        return self._get_mandate(current.mandate_id)

    def _resume_mandate(self, current: RecurringMandateResult) -> RecurringMandateResult:
        self.client.request(
            "POST", f"/v1/billing/subscriptions/{current.mandate_id}/activate",
            headers=self._headers(), json={"reason": "Resumed by donor"},
        )
        return self._get_mandate(current.mandate_id)

    def _cancel_mandate(self, current: RecurringMandateResult, reason: str | None, immediately: bool) -> RecurringMandateResult:
        if not immediately:
            raise PaymentError(ErrorKind.UNSUPPORTED_OPERATION, "paypal cannot schedule a cancellation")
        self.client.request(
            "POST", f"/v1/billing/subscriptions/{current.mandate_id}/cancel",
            headers=self._headers(), json={"reason": (reason or "Cancelled by donor")[:128]},
        )
        return self._get_mandate(current.mandate_id)

    def _to_mandate(
        self,
        subscription: dict,
        plan: dict,
        fallback_start: date | None = None,
        extra_metadata: dict | None = None,
    ) -> RecurringMandateResult:
        cycle = (plan.get("billing_cycles") or [{}])[0]
        price = ((cycle.get("pricing_scheme") or {}).get("fixed_price")) or {}
        interval = cycle.get("frequency") or {}
        if interval.get("interval_unit") == "YEAR":
            frequency = Frequency.ANNUALLY
        elif int(interval.get("interval_count") or 1) == 3:
            frequency = Frequency.QUARTERLY
        else:
            frequency = Frequency.MONTHLY

        currency = price.get("currency_code", "USD")
        status = _SUBSCRIPTION_STATUS.get(subscription.get("status"), MandateStatus.FAILED)
        next_billing = _parse_time((subscription.get("billing_info") or {}).get("next_billing_time"))
        if status is MandateStatus.CANCELLED:
            next_charge = None
        elif next_billing is not None:
            next_charge = next_billing.date()
        else:
            start = _parse_time(subscription.get("start_time"))
            next_charge = start.date() if start else fallback_start

        return RecurringMandateResult(
            mandate_id=subscription["id"],
            status=status,
            amount_minor=decimal_string_to_minor(price["value"], currency) if "value" in price else 0,
            currency=currency,
            frequency=frequency,
            next_charge_date=next_charge,
            metadata={"plan_id": subscription.get("plan_id") or plan.get("id"), **(extra_metadata or {})},
        )

    # webhooks

    def signature_from_headers(self, headers) -> str | None:
        """Pack the transmission headers PayPal needs for verification."""
        values = {name: header_value(headers, header) for name, header in TRANSMISSION_HEADERS.items()}
        if not values["transmission_sig"]:
            return None
        return json.dumps(values, sort_keys=True)

    def sign(self, raw_payload: bytes | str, secret: str | None = None) -> str:
        """Legacy HMAC signature over the raw body."""
        key = (secret or self.webhook_secret).encode("utf-8")
        return hmac_sha256_base64(key, self._decode(raw_payload))

    def verify_webhook_signature(self, raw_payload: bytes | str, signature_header: str | None, secret: str | None = None) -> bool:
        if not signature_header:
            return False
        try:
            transmission = json.loads(signature_header)
        except ValueError:
            transmission = {"transmission_sig": signature_header}
        if not isinstance(transmission, dict) or not transmission.get("transmission_sig"):
            return False

        if self.legacy_hmac:
            return constant_time_equals(self.sign(raw_payload, secret), str(transmission["transmission_sig"]))

        if any(not transmission.get(name) for name in TRANSMISSION_HEADERS):
            return False
        try:
            event = json.loads(self._decode(raw_payload))
        except (UnicodeDecodeError, ValueError):
            return False

        body = {name: transmission[name] for name in TRANSMISSION_HEADERS}
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event
        try:
            response = self._retry(
                lambda: self.client.request(
                    "POST", "/v1/notifications/verify-webhook-signature", headers=self._headers(), json=body,
                ),
                "paypal verify webhook",
            )
        except PaymentError as exc:
            if exc.retryable:
                raise
            self.logger.error("paypal webhook verification call rejected [%s]", exc.kind.value)
            return False
        return response.get("verification_status") == "SUCCESS"

    def _parse_event(self, document: dict, raw_reference: str) -> WebhookEvent:
        resource = document["resource"]
        event_type = _EVENT_TYPES.get(document.get("event_type"), WebhookEventType.UNKNOWN)
        amount = resource.get("amount") or {}
        currency = amount.get("currency_code")
        value = amount.get("value") or amount.get("total")
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        is_subscription = document.get("event_type", "").startswith("BILLING.SUBSCRIPTION.")

        if is_subscription:
            payment_reference = None
            mandate_reference = resource["id"]
            if event_type is WebhookEventType.MANDATE_FAILED:
                last_failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
                amount = last_failed.get("amount") or {}
                currency = amount.get("currency_code")
                value = amount.get("value")
        else:
            payment_reference = resource.get("id")
            mandate_reference = resource.get("billing_agreement_id")
        if event_type is WebhookEventType.PAYMENT_DISPUTED:
            transactions = resource.get("disputed_transactions") or [{}]
            payment_reference = transactions[0].get("seller_transaction_id") or resource.get("dispute_id")
            dispute_amount = resource.get("dispute_amount") or {}
            currency = dispute_amount.get("currency_code", currency)
            value = dispute_amount.get("value", value)

        status_details = resource.get("status_details") or {}
        return WebhookEvent(
            processor=self.processor,
            external_event_id=document["id"],
            event_type=event_type,
            payload=WebhookPayload(
                payment_reference=payment_reference,
                mandate_reference=mandate_reference,
                amount_minor=decimal_string_to_minor(value, currency) if value and currency else None,
                currency=currency.upper() if currency else None,
                status=resource.get("status"),
                failure_reason=status_details.get("reason"),
                metadata={"order_id": related["order_id"]} if related.get("order_id") else {},
            ),
            occurred_at=_parse_time(document.get("create_time")) or datetime.now(timezone.utc),
            raw_reference=raw_reference,
        )

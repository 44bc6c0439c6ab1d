"""
Adyen adapter.

JSON Checkout API authenticated with ``X-API-Key``. Recurring gifts use
tokenized (stored) payment methods: Adyen keeps the token, the platform runs
the schedule, so mandate updates and pauses are not available here. A
mandate is ``shopperReference:storedPaymentMethodId``; its status comes from
Adyen's stored-token list, its schedule terms from the optional
``schedule_lookup`` (the platform's recurring-plan records).

Standard notifications are signed per item: HMAC-SHA256 with the hex-decoded
key over ``pspReference:originalReference:merchantAccountCode:
merchantReference:value:currency:eventCode:success``, base64 encoded, in
``additionalData.hmacSignature``.

Fee structure: 2.5% + 25 minor units.
"""

import json
from collections.abc import Callable
from dataclasses import replace
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
from donation_payments.http import ProcessorClient
from donation_payments.models.mandate import (
    MandateSchedule,
    MandateStatus,
    RecurringMandateResult,
    next_charge_date,
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
from donation_payments.utils.crypto import constant_time_equals, hmac_sha256_base64, sha256_hex

TEST_BASE = "https://checkout-test.adyen.com/v71"
LIVE_BASE = "https://checkout-live.adyen.com/v71"

_RESULT_STATUS = {
    "Authorised": PaymentStatus.SUCCEEDED,
    "Pending": PaymentStatus.PENDING,
    "Received": PaymentStatus.PENDING,
    "RedirectShopper": PaymentStatus.REQUIRES_ACTION,
    "IdentifyShopper": PaymentStatus.REQUIRES_ACTION,
    "ChallengeShopper": PaymentStatus.REQUIRES_ACTION,
    "PresentToShopper": PaymentStatus.REQUIRES_ACTION,
    "Cancelled": PaymentStatus.FAILED,
}

# API errorCode values
_ERROR_CODES = {
    "010": ErrorKind.CARD_DECLINED,
    "100": ErrorKind.INSUFFICIENT_FUNDS,
    "101": ErrorKind.EXPIRED_CARD,
    "103": ErrorKind.INVALID_CARD,
    "803": ErrorKind.AUTHENTICATION_FAILED,
}

# refusalReasonCode values on an HTTP 200 "Refused"
_REFUSAL_REASONS = {
    "2": ErrorKind.CARD_DECLINED,
    "5": ErrorKind.CARD_DECLINED,
    "6": ErrorKind.EXPIRED_CARD,
    "8": ErrorKind.INVALID_CARD,
    "12": ErrorKind.INSUFFICIENT_FUNDS,
    "24": ErrorKind.INVALID_CARD,
}

_EVENT_CODES = {
    "AUTHORISATION": WebhookEventType.PAYMENT_SUCCEEDED,
    "PENDING": WebhookEventType.PAYMENT_PENDING,
    "REFUND": WebhookEventType.PAYMENT_REFUNDED,
    "CANCEL_OR_REFUND": WebhookEventType.PAYMENT_REFUNDED,
    "REFUND_FAILED": WebhookEventType.PAYMENT_FAILED,
    "CHARGEBACK": WebhookEventType.PAYMENT_DISPUTED,
    "NOTIFICATION_OF_CHARGEBACK": WebhookEventType.PAYMENT_DISPUTED,
    "RECURRING_CONTRACT": WebhookEventType.MANDATE_CREATED,
    "DISABLE_RECURRING": WebhookEventType.MANDATE_CANCELLED,
    "PAYOUT_THIRDPARTY": WebhookEventType.PAYOUT_PAID,
}

_SIGNED_FIELDS = (
    "pspReference",
    "originalReference",
    "merchantAccountCode",
    "merchantReference",
)


def classify_adyen_error(status_code: int, body: dict) -> PaymentError:
    code = str(body.get("errorCode") or "")
    if status_code in (401, 403):
        kind = ErrorKind.AUTHENTICATION_FAILED
    elif code in _ERROR_CODES:
        kind = _ERROR_CODES[code]
    elif status_code in (400, 404, 422) or body.get("errorType") == "validation":
        kind = ErrorKind.INVALID_REQUEST
    else:
        kind = ErrorKind.UNKNOWN_PROCESSOR_ERROR
    return PaymentError(
        kind,
        f"adyen rejected the request ({code or status_code})",
        processor_code=code or None,
        processor_message=body.get("message"),
        status_code=status_code,
    )


def refusal_error(response: dict) -> PaymentError:
    reason_code = str(response.get("refusalReasonCode") or "")
    return PaymentError(
        _REFUSAL_REASONS.get(reason_code, ErrorKind.CARD_DECLINED),
        f"adyen refused payment {response.get('pspReference')}",
        processor_code=reason_code or None,
        processor_message=response.get("refusalReason"),
    )


def signing_string(item: dict) -> str:
    amount = item.get("amount") or {}
    values = [str(item.get(name) or "") for name in _SIGNED_FIELDS]
    values += [
        str(amount.get("value", "")),
        str(amount.get("currency", "")),
        str(item.get("eventCode") or ""),
        str(item.get("success") or ""),
    ]
    return ":".join(values)


def shopper_reference(email: str) -> str:
    """Stable, non-identifying shopper reference for a donor."""
    return f"donor_{sha256_hex(email.strip().lower().encode('utf-8'))[:24]}"


class AdyenAdapter(PaymentAdapter):
    processor = Processor.ADYEN
    signature_header = "HmacSignature"

    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        merchant_account: str,
        base_url: str | None = None,
        timeout_seconds: float = 10,
        session=None,
        schedule_lookup: Callable[[str], MandateSchedule | None] | None = None,
        **kwargs,
    ):
        super().__init__(api_key=api_key, webhook_secret=webhook_secret, **kwargs)
        if not merchant_account:
            raise ValueError("missing merchant account for adyen adapter")
        self.merchant_account = merchant_account
        self.schedule_lookup = schedule_lookup
        self.client = ProcessorClient(
            base_url or (TEST_BASE if self.test_mode else LIVE_BASE),
            name="adyen",
            timeout_seconds=timeout_seconds,
            session=session,
            classifier=classify_adyen_error,
        )

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"X-API-Key": self.api_key}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _authorise(self, body: dict, idempotency_key: str) -> dict:
        response = self.client.request("POST", "/payments", headers=self._headers(idempotency_key), json=body)
        result_code = response.get("resultCode")
        if result_code == "Refused":
            raise refusal_error(response)
        if result_code == "Error":
            raise PaymentError(
                ErrorKind.UNKNOWN_PROCESSOR_ERROR,
                f"adyen returned an error result for {response.get('pspReference')}",
                processor_message=response.get("refusalReason"),
            )
        return response

    def _create_payment_intent(self, request: PaymentIntentRequest, fees: FeeCalculation) -> PaymentIntentResult:
        body = {
            "amount": {"value": fees.total_charge_minor, "currency": request.currency},
            "reference": request.idempotency_key,
            "merchantAccount": self.merchant_account,
            "shopperEmail": request.donor_email,
            "metadata": {
                **{k: str(v) for k, v in request.metadata.items()},
                "donorCoversFee": "true" if request.donor_covers_fee else "false",
                "originalAmount": str(request.amount_minor),
                "feeAmount": str(fees.fee_minor),
            },
        }
        response = self._authorise(body, request.idempotency_key)
        action = response.get("action") or {}
        return PaymentIntentResult(
            payment_intent_id=response["pspReference"],
            status=_RESULT_STATUS.get(response.get("resultCode"), PaymentStatus.FAILED),
            amount_minor=fees.total_charge_minor,
            currency=request.currency,
            processor_fee_minor=fees.fee_minor,
            net_amount_minor=fees.total_charge_minor - fees.fee_minor,
            client_secret=action.get("url"),
            metadata={"merchant_reference": response.get("merchantReference", request.idempotency_key)},
        )

    def _refund(self, request: RefundRequest) -> RefundResult:
        body = {
            "merchantAccount": self.merchant_account,
            "reference": request.idempotency_key,
            "amount": {"value": request.amount_minor, "currency": request.currency},
        }
        if request.reason:
            body["merchantRefundReason"] = request.reason
        response = self.client.request(
            "POST", f"/payments/{request.payment_intent_id}/refunds",
            headers=self._headers(request.idempotency_key),
            json=body,
        )
        # Adyen confirms refunds asynchronously through a REFUND notification.
        return RefundResult(
            refund_id=response["pspReference"],
            status=RefundStatus.PENDING if response.get("status") == "received" else RefundStatus.FAILED,
            amount_minor=request.amount_minor,
            currency=request.currency,
            payment_intent_id=request.payment_intent_id,
        )

    def _confirm_payment(self, request: ConfirmRequest) -> PaymentConfirmationResult:
        # Adyen authorises at creation; only redirect and 3DS flows have a second step
        if not request.details:
            raise PaymentError(
                ErrorKind.INVALID_REQUEST,
                f"adyen payment {request.payment_intent_id} needs the redirect details to be confirmed",
            )
        response = self.client.request(
            "POST", "/payments/details",
            headers=self._headers(request.idempotency_key),
            json={"details": request.details},
        )
        if response.get("resultCode") == "Refused":
            raise refusal_error(response)
        amount = response.get("amount") or {}
        return PaymentConfirmationResult(
            payment_intent_id=request.payment_intent_id,
            transaction_id=response.get("pspReference") or request.payment_intent_id,
            status=_RESULT_STATUS.get(response.get("resultCode"), PaymentStatus.FAILED),
            amount_minor=int(amount.get("value", 0)),
            currency=amount.get("currency", "USD"),
            metadata={"merchant_reference": response["merchantReference"]} if response.get("merchantReference") else {},
        )

    def _create_mandate(self, request: MandateRequest, fees: FeeCalculation) -> RecurringMandateResult:
        shopper = shopper_reference(request.donor_email)
        deferred = request.start_date > self._today()
        body = {
            # zero-value authorisation tokenizes without charging when the first gift is deferred
            "amount": {"value": 0 if deferred else fees.total_charge_minor, "currency": request.currency},
            "reference": request.idempotency_key,
            "merchantAccount": self.merchant_account,
            "shopperEmail": request.donor_email,
            "shopperReference": shopper,
            "shopperInteraction": "Ecommerce",
            "recurringProcessingModel": "Subscription",
            "storePaymentMethod": True,
            "metadata": {
                **{k: str(v) for k, v in request.metadata.items()},
                "frequency": request.frequency.value,
                "donorCoversFee": "true" if request.donor_covers_fee else "false",
                "originalAmount": str(request.amount_minor),
                "feeAmount": str(fees.fee_minor),
            },
        }
        if request.payment_method_token:
            body["paymentMethod"] = {"type": "scheme", "storedPaymentMethodId": request.payment_method_token}

        response = self._authorise(body, request.idempotency_key)
        additional = response.get("additionalData") or {}
        stored_id = (
            additional.get("tokenization.storedPaymentMethodId")
            or additional.get("recurring.recurringDetailReference")
            or request.payment_method_token
        )
        if not stored_id:
            raise PaymentError(
                ErrorKind.UNKNOWN_PROCESSOR_ERROR,
                f"adyen did not return a stored payment method for {response.get('pspReference')}",
            )

        authorised = response.get("resultCode") in ("Authorised", "Pending", "Received")
        return RecurringMandateResult(
            mandate_id=f"{shopper}:{stored_id}",
            status=MandateStatus.ACTIVE if authorised else MandateStatus.FAILED,
            amount_minor=fees.total_charge_minor,
            currency=request.currency,
            frequency=request.frequency,
            next_charge_date=request.start_date if deferred else next_charge_date(request.frequency, request.start_date),
            metadata={"first_payment_reference": response.get("pspReference")},
        )

    @staticmethod
    def _split(mandate_id: str) -> tuple[str, str]:
        shopper, sep, stored_id = mandate_id.partition(":")
        if not sep or not shopper or not stored_id:
            raise PaymentError(ErrorKind.INVALID_REQUEST, f"not an adyen mandate id: {mandate_id}")
        return shopper, stored_id

    def _get_mandate(self, mandate_id: str) -> RecurringMandateResult:
        shopper, stored_id = self._split(mandate_id)
        response = self.client.request(
            "GET", "/storedPaymentMethods",
            headers=self._headers(),
            params={"shopperReference": shopper, "merchantAccount": self.merchant_account},
        )
        stored = {method.get("id") for method in response.get("storedPaymentMethods") or []}
        # a removed token is a cancelled mandate
        active = stored_id in stored
        schedule = self.schedule_lookup(mandate_id) if self.schedule_lookup is not None else None
        if schedule is None:
            self.logger.debug("no schedule supplied for adyen mandate %s", mandate_id)
        return RecurringMandateResult(
            mandate_id=mandate_id,
            status=MandateStatus.ACTIVE if active else MandateStatus.CANCELLED,
            amount_minor=schedule.amount_minor if schedule else None,
            currency=schedule.currency if schedule else None,
            frequency=schedule.frequency if schedule else None,
            next_charge_date=schedule.next_charge_date if schedule and active else None,
            metadata={"shopper_reference": shopper, "stored_payment_method_id": stored_id},
        )

    def _update_mandate(self, current: RecurringMandateResult, changes: MandateChanges) -> RecurringMandateResult:
        raise PaymentError(
            ErrorKind.UNSUPPORTED_OPERATION,
            "adyen mandates cannot be updated; cancel and create a new one",
        )

    def _cancel_mandate(self, current: RecurringMandateResult, reason: str | None, immediately: bool) -> RecurringMandateResult:
        if not immediately:
            raise PaymentError(ErrorKind.UNSUPPORTED_OPERATION, "adyen cannot schedule a cancellation")
        shopper, stored_id = self._split(current.mandate_id)
        self.client.request(
            "DELETE", f"/storedPaymentMethods/{stored_id}",
            headers=self._headers(),
            params={"shopperReference": shopper, "merchantAccount": self.merchant_account},
        )
        return replace(current, status=MandateStatus.CANCELLED, next_charge_date=None)

    # webhooks

    def _key(self, secret: str | None) -> bytes | None:
        try:
            return bytes.fromhex(secret or self.webhook_secret)
        except ValueError:
            self.logger.error("adyen webhook HMAC key is not valid hex")
            return None

    def sign_item(self, item: dict, secret: str | None = None) -> str:
        """Compute the hmacSignature for one NotificationRequestItem."""
        key = self._key(secret)
        if key is None:
            raise ValueError("adyen webhook HMAC key is not valid hex")
        return hmac_sha256_base64(key, signing_string(item).encode("utf-8"))

    def verify_webhook_signature(self, raw_payload: bytes | str, signature_header: str | None, secret: str | None = None) -> bool:
        key = self._key(secret)
        if key is None:
            return False
        raw = self._decode(raw_payload)

        if signature_header:
            return constant_time_equals(hmac_sha256_base64(key, raw), signature_header.strip())

        try:
            items = [entry["NotificationRequestItem"] for entry in self._load(raw)["notificationItems"]]
        except (KeyError, TypeError, ValueError):
            return False
        if not items:
            return False

        results = []
        for item in items:
            received = (item.get("additionalData") or {}).get("hmacSignature")
            if not received:
                results.append(False)
                continue
            expected = hmac_sha256_base64(key, signing_string(item).encode("utf-8"))
            results.append(constant_time_equals(expected, received))
        return all(results)

    @staticmethod
    def _load(raw: bytes) -> dict:
        document = json.loads(raw)
        if not isinstance(document, dict):
            raise ValueError("notification is not an object")
        return document

    def _parse_event(self, document: dict, raw_reference: str) -> WebhookEvent:
        item = document["notificationItems"][0]["NotificationRequestItem"]
        psp = item["pspReference"]
        event_code = item["eventCode"]
        success = str(item.get("success", "")).lower() == "true"
        additional = item.get("additionalData") or {}
        amount = item.get("amount") or {}

        event_type = _EVENT_CODES.get(event_code, WebhookEventType.UNKNOWN)
        if event_code == "AUTHORISATION" and not success:
            recurring = additional.get("recurringProcessingModel") == "Subscription"
            event_type = WebhookEventType.MANDATE_FAILED if recurring else WebhookEventType.PAYMENT_FAILED

        mandate_reference = None
        shopper = additional.get("recurring.shopperReference") or additional.get("shopperReference")
        detail = additional.get("recurring.recurringDetailReference") or additional.get("tokenization.storedPaymentMethodId")
        if shopper and detail:
            mandate_reference = f"{shopper}:{detail}"

        metadata = {
            key[len("metadata."):]: value
            for key, value in additional.items()
            if key.startswith("metadata.")
        }

        event_date = item.get("eventDate")
        occurred_at = datetime.fromisoformat(event_date) if event_date else datetime.now(timezone.utc)

        return WebhookEvent(
            processor=self.processor,
            external_event_id=f"{psp}:{event_code}:{'true' if success else 'false'}",
            event_type=event_type,
            payload=WebhookPayload(
                payment_reference=item.get("originalReference") or psp,
                mandate_reference=mandate_reference,
                amount_minor=int(amount["value"]) if "value" in amount else None,
                currency=amount.get("currency"),
                status="success" if success else "failed",
                failure_reason=None if success else item.get("reason"),
                metadata=metadata,
            ),
            occurred_at=occurred_at,
            raw_reference=raw_reference,
        )

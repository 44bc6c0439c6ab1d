import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from donation_payments.adapters.adyen import signing_string
from donation_payments.utils.crypto import hmac_sha256_base64, hmac_sha256_hex


@dataclass(frozen=True)
class SignedWebhook:
    """A webhook body exactly as a processor would post it, plus its headers."""

    processor: str
    event_id: str
    body: bytes
    headers: dict = field(default_factory=dict)

    def tampered(self) -> "SignedWebhook":
        """Same headers, body with one byte flipped."""
        flipped = bytearray(self.body)
        index = len(flipped) // 2
        flipped[index] ^= 0x01
        return SignedWebhook(self.processor, self.event_id, bytes(flipped), dict(self.headers))


def _encode(document: dict) -> bytes:
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


class WebhookFactory:
    """Builds signed webhooks for each processor with sensible defaults."""

    @staticmethod
    def stripe(
        event_type: str = "payment_intent.succeeded",
        *,
        secret: str,
        obj: dict | None = None,
        event_id: str | None = None,
        timestamp: int | None = None,
        **fields,
    ) -> SignedWebhook:
        event_id = event_id or f"evt_{uuid.uuid4().hex[:16]}"
        timestamp = int(time.time()) if timestamp is None else timestamp
        if obj is None:
            obj = {
                "id": fields.pop("payment_intent_id", f"pi_{uuid.uuid4().hex[:16]}"),
                "object": "payment_intent",
                "amount": fields.pop("amount", 5175),
                "currency": fields.pop("currency", "usd"),
                "status": fields.pop("status", "succeeded"),
                "metadata": fields.pop("metadata", {}),
            }
        body = _encode({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": timestamp,
            "data": {"object": obj},
        })
        signature = hmac_sha256_hex(secret, f"{timestamp}.".encode("utf-8") + body)
        return SignedWebhook(
            "stripe",
            event_id,
            body,
            {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"},
        )

    @staticmethod
    def adyen(
        event_code: str = "AUTHORISATION",
        *,
        hmac_key: str,
        psp_reference: str | None = None,
        success: bool = True,
        amount: int = 5125,
        currency: str = "EUR",
        merchant_account: str = "DonationsECOM",
        merchant_reference: str | None = None,
        original_reference: str | None = None,
        additional_data: dict | None = None,
        reason: str | None = None,
    ) -> SignedWebhook:
        item = {
            "pspReference": psp_reference or uuid.uuid4().hex[:16].upper(),
            "eventCode": event_code,
            "eventDate": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "merchantAccountCode": merchant_account,
            "merchantReference": merchant_reference or f"donation-{uuid.uuid4().hex[:8]}",
            "success": "true" if success else "false",
            "amount": {"value": amount, "currency": currency},
            "additionalData": dict(additional_data or {}),
        }
        if original_reference:
            item["originalReference"] = original_reference
        if reason:
            item["reason"] = reason

        item["additionalData"]["hmacSignature"] = hmac_sha256_base64(
            bytes.fromhex(hmac_key), signing_string(item).encode("utf-8"),
        )
        body = _encode({"live": "false", "notificationItems": [{"NotificationRequestItem": item}]})
        event_id = f"{item['pspReference']}:{event_code}:{item['success']}"
        return SignedWebhook("adyen", event_id, body, {"Content-Type": "application/json"})

    @staticmethod
    def paypal(
        event_type: str = "PAYMENT.CAPTURE.COMPLETED",
        *,
        secret: str | None = None,
        resource: dict | None = None,
        event_id: str | None = None,
        **fields,
    ) -> SignedWebhook:
        """PayPal event with transmission headers.

        With ``secret`` the transmission signature is the legacy HMAC over the
        body; otherwise it is opaque and only PayPal's verification API (or a
        sandbox standing in for it) can vouch for it.
        """
        event_id = event_id or f"WH-{uuid.uuid4().hex[:20].upper()}"
        if resource is None:
            resource = {
                "id": fields.pop("capture_id", uuid.uuid4().hex[:17].upper()),
                "status": fields.pop("status", "COMPLETED"),
                "amount": {
                    "currency_code": fields.pop("currency", "USD"),
                    "value": fields.pop("value", "52.00"),
                },
            }
            if "order_id" in fields:
                resource["supplementary_data"] = {"related_ids": {"order_id": fields.pop("order_id")}}
        body = _encode({
            "id": event_id,
            "event_type": event_type,
            "resource_type": "capture",
            "create_time": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "resource": resource,
        })
        if secret is not None:
            signature = hmac_sha256_base64(secret.encode("utf-8"), body)
        else:
            signature = uuid.uuid4().hex
        headers = {
            "Content-Type": "application/json",
            "PAYPAL-TRANSMISSION-ID": str(uuid.uuid4()),
            "PAYPAL-TRANSMISSION-TIME": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "PAYPAL-TRANSMISSION-SIG": signature,
            "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        }
        return SignedWebhook("paypal", event_id, body, headers)

    @staticmethod
    def mock(
        event_type: str = "payment.succeeded",
        *,
        secret: str,
        event_id: str | None = None,
        **data,
    ) -> SignedWebhook:
        event_id = event_id or f"mock_evt_{uuid.uuid4().hex[:16]}"
        data.setdefault("payment_reference", f"mock_pi_{uuid.uuid4().hex[:16]}")
        data.setdefault("amount", 5175)
        data.setdefault("currency", "USD")
        body = _encode({
            "id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc).isoformat(),
            "data": data,
        })
        return SignedWebhook(
            "mock",
            event_id,
            body,
            {"Content-Type": "application/json", "X-Mock-Signature": hmac_sha256_hex(secret, body)},
        )

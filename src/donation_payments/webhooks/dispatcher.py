"""
Inbound webhook pipeline.

Per request: resolve the adapter, verify the signature over the raw body,
parse, claim the (processor, event id) pair in the dedup index, run the
handler, then commit or release the claim. Every request ends with exactly
one audit entry and one metrics sample.

Status codes follow what processors expect: 2xx acknowledges (including
duplicates and ignored event types), 401 for bad signatures, 400 for bodies
that will never parse, 5xx when a redelivery may succeed.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from donation_payments.adapters.base import PaymentAdapter
from donation_payments.config import Settings
from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.models.audit import DispatchOutcome
from donation_payments.models.webhook import WebhookEvent, WebhookEventType
from donation_payments.registry import AdapterRegistry
from donation_payments.utils.crypto import sha256_hex
from donation_payments.webhooks.audit import AuditLog
from donation_payments.webhooks.dedup import DedupIndex, DeliveryInProgress
from donation_payments.webhooks.handlers import WebhookHandler
from donation_payments.webhooks.replay import DeadLetterQueue

security_logger = logging.getLogger("donation_payments.security")


@dataclass(frozen=True)
class DispatchResult:
    status_code: int
    outcome: DispatchOutcome
    event: WebhookEvent | None = None
    detail: str | None = None

    @property
    def body(self) -> dict:
        body = {"status": self.outcome.value}
        if self.event is not None:
            body["event_id"] = self.event.external_event_id
        if self.detail and self.status_code < 500:
            body["detail"] = self.detail
        return body


class WebhookDispatcher:
    def __init__(
        self,
        registry: AdapterRegistry,
        handler: WebhookHandler,
        *,
        dedup: DedupIndex | None = None,
        audit: AuditLog | None = None,
        dead_letters: DeadLetterQueue | None = None,
        metrics=None,
        logger: logging.Logger | None = None,
        wait_timeout: float | None = 30.0,
    ):
        self.registry = registry
        self.handler = handler
        self.dedup = dedup or DedupIndex()
        self.audit = audit or AuditLog()
        self.dead_letters = dead_letters or DeadLetterQueue()
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.wait_timeout = wait_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: AdapterRegistry,
        handler: WebhookHandler,
        **kwargs,
    ) -> "WebhookDispatcher":
        kwargs.setdefault("wait_timeout", settings.WEBHOOK_WAIT_TIMEOUT_SECONDS)
        return cls(registry, handler, **kwargs)

    def dispatch(self, processor: str, raw_body: bytes, headers: Mapping[str, str] | None = None) -> DispatchResult:
        """Handle one inbound webhook delivery.

        ``raw_body`` must be the bytes exactly as received; any re-encoding
        breaks signature verification.
        """
        try:
            adapter = self.registry.get(processor)
        except PaymentError as exc:
            self.logger.warning("webhook for unknown processor %r", processor)
            return self._finish(str(processor), DispatchResult(400, DispatchOutcome.REJECTED, detail=exc.message))

        signature = adapter.signature_from_headers(headers or {})
        try:
            verified = adapter.verify_webhook_signature(raw_body, signature)
        except PaymentError as exc:
            if not exc.retryable:
                raise
            self.logger.warning("%s signature verification unavailable [%s]", adapter.name, exc.kind.value)
            return self._finish(
                adapter.name,
                DispatchResult(503, DispatchOutcome.FAILED, detail="signature verification unavailable"),
            )

        if not verified:
            security_logger.warning(
                "security: rejected %s webhook with %s signature (body sha256=%s, %d bytes)",
                adapter.name, "missing" if not signature else "invalid", sha256_hex(bytes(raw_body)), len(raw_body),
            )
            error = PaymentError(ErrorKind.INVALID_WEBHOOK_SIGNATURE, "invalid webhook signature")
            return self._finish(adapter.name, DispatchResult(401, DispatchOutcome.REJECTED, detail=error.message))

        return self._process(adapter, bytes(raw_body))

    def dispatch_verified(self, processor: str, raw_body: bytes) -> DispatchResult:
        """Re-run a body whose signature was verified on first receipt."""
        adapter = self.registry.get(processor)
        return self._process(adapter, bytes(raw_body))

    def _process(self, adapter: PaymentAdapter, raw_body: bytes) -> DispatchResult:
        try:
            event = adapter.parse_webhook_event(raw_body)
        except PaymentError as exc:
            self.logger.warning("malformed %s webhook: %s", adapter.name, exc.message)
            return self._finish(adapter.name, DispatchResult(400, DispatchOutcome.MALFORMED, detail=exc.message))

        try:
            claim = self.dedup.begin(event.dedup_key, self.wait_timeout)
        except DeliveryInProgress:
            return self._finish(
                adapter.name,
                DispatchResult(503, DispatchOutcome.FAILED, event, detail="delivery already in progress"),
            )

        if claim is None:
            self.logger.info("%s event %s already processed", adapter.name, event.external_event_id)
            self.dead_letters.remove(*event.dedup_key)
            return self._finish(adapter.name, DispatchResult(200, DispatchOutcome.DUPLICATE, event))

        if event.event_type is WebhookEventType.UNKNOWN:
            self.dedup.commit(claim, DispatchOutcome.IGNORED)
            self.logger.info("%s event %s has no canonical type, acknowledged", adapter.name, event.external_event_id)
            return self._finish(adapter.name, DispatchResult(200, DispatchOutcome.IGNORED, event))

        try:
            self.handler(event)
        except Exception as exc:
            self.dedup.release(claim, exc)
            self.dead_letters.add(event, raw_body, exc)
            self.logger.error(
                "handler failed for %s event %s (%s): %s",
                adapter.name, event.external_event_id, event.event_type.value, type(exc).__name__,
            )
            return self._finish(
                adapter.name,
                DispatchResult(500, DispatchOutcome.FAILED, event, detail=type(exc).__name__),
            )

        self.dedup.commit(claim, DispatchOutcome.PROCESSED)
        self.dead_letters.remove(*event.dedup_key)
        self.logger.info("processed %s event %s (%s)", adapter.name, event.external_event_id, event.event_type.value)
        return self._finish(adapter.name, DispatchResult(200, DispatchOutcome.PROCESSED, event))

    def _finish(self, processor: str, result: DispatchResult) -> DispatchResult:
        self.audit.record(processor, result.outcome, result.event, result.detail)
        if self.metrics is not None:
            label = f"webhook.{processor}"
            if result.outcome.is_success:
                self.metrics.record_success(label)
            else:
                self.metrics.record_failure(label)
        return result

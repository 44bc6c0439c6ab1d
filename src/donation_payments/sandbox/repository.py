import threading
import uuid
from datetime import datetime
from typing import Any

from donation_payments.models.audit import AuditEntry


class InMemoryDonationRepository:
    """Dict-backed DonationRepository for tests and local development."""

    def __init__(self):
        self.gifts: dict[str, dict[str, Any]] = {}
        self.plans: dict[str, dict[str, Any]] = {}
        self.audit_entries: list[AuditEntry] = []
        self.status_updates: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def add_gift(self, processor: str, processor_ref: str, status: str = "pending", **fields) -> dict[str, Any]:
        gift = {
            "id": fields.pop("id", f"gift_{uuid.uuid4().hex[:12]}"),
            "processor": processor,
            "processor_ref": processor_ref,
            "status": status,
            **fields,
        }
        with self._lock:
            self.gifts[gift["id"]] = gift
        return dict(gift)

    def find_gift_by_processor_ref(self, processor: str, processor_ref: str) -> dict[str, Any] | None:
        with self._lock:
            for gift in self.gifts.values():
                if gift["processor"] == processor and gift["processor_ref"] == processor_ref:
                    return dict(gift)
        return None

    def update_gift_status(self, gift_id: str, status: str, *, occurred_at: datetime, reason: str | None = None) -> None:
        with self._lock:
            gift = self.gifts[gift_id]
            gift["status"] = status
            gift["status_changed_at"] = occurred_at
            if reason:
                gift["failure_reason"] = reason
            self.status_updates.append((gift_id, status))

    def find_or_create_recurring_plan(
        self,
        processor: str,
        mandate_ref: str,
        *,
        amount_minor: int | None,
        currency: str | None,
    ) -> dict[str, Any]:
        with self._lock:
            for plan in self.plans.values():
                if plan["processor"] == processor and plan["mandate_ref"] == mandate_ref:
                    return dict(plan)
            plan = {
                "id": f"plan_{uuid.uuid4().hex[:12]}",
                "processor": processor,
                "mandate_ref": mandate_ref,
                "amount_minor": amount_minor,
                "currency": currency,
                "status": None,
            }
            self.plans[plan["id"]] = plan
            return dict(plan)

    def update_recurring_plan_status(self, plan_id: str, status: str, *, occurred_at: datetime) -> None:
        with self._lock:
            plan = self.plans[plan_id]
            plan["status"] = status
            plan["status_changed_at"] = occurred_at
            self.status_updates.append((plan_id, status))

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self.audit_entries.append(entry)

    def gift_status(self, gift_id: str) -> str:
        with self._lock:
            return self.gifts[gift_id]["status"]

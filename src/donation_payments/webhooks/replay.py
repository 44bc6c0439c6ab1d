import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from donation_payments.models.webhook import WebhookEvent

if TYPE_CHECKING:
    from donation_payments.webhooks.dispatcher import DispatchResult, WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeadLetter:
    """A verified webhook whose handler failed, kept for replay."""

    letter_id: str
    processor: str
    external_event_id: str
    event_type: str
    raw_body: bytes
    error: str
    failed_at: datetime
    attempts: int = 1


class DeadLetterQueue:
    """Thread-safe store of failed deliveries, one letter per event."""

    def __init__(self):
        self._letters: dict[tuple[str, str], DeadLetter] = {}
        self._lock = threading.Lock()

    def add(self, event: WebhookEvent, raw_body: bytes, error: BaseException) -> DeadLetter:
        key = event.dedup_key
        description = f"{type(error).__name__}: {error}"
        with self._lock:
            existing = self._letters.get(key)
            if existing is not None:
                letter = replace(
                    existing,
                    error=description,
                    failed_at=datetime.now(timezone.utc),
                    attempts=existing.attempts + 1,
                )
            else:
                letter = DeadLetter(
                    letter_id=uuid.uuid4().hex,
                    processor=event.processor.value,
                    external_event_id=event.external_event_id,
                    event_type=event.event_type.value,
                    raw_body=bytes(raw_body),
                    error=description,
                    failed_at=datetime.now(timezone.utc),
                )
            self._letters[key] = letter
        logger.warning(
            "dead-lettered %s event %s (attempt %d): %s",
            letter.processor, letter.external_event_id, letter.attempts, type(error).__name__,
        )
        return letter

    def get(self, letter_id: str) -> DeadLetter | None:
        with self._lock:
            for letter in self._letters.values():
                if letter.letter_id == letter_id:
                    return letter
        return None

    def remove(self, processor: str, external_event_id: str) -> DeadLetter | None:
        with self._lock:
            return self._letters.pop((processor, external_event_id), None)

    def list(self) -> list[DeadLetter]:
        with self._lock:
            return sorted(self._letters.values(), key=lambda letter: letter.failed_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._letters)


class WebhookReplayManager:
    """Replays dead-lettered webhooks through the dispatcher.

    Replays skip signature verification (the body was verified when it first
    arrived) but go through deduplication, so an event that a processor
    redelivery already handled is not applied twice.
    """

    def __init__(self, dispatcher: "WebhookDispatcher"):
        self.dispatcher = dispatcher
        self.queue = dispatcher.dead_letters

    def replay_event(self, letter_id: str) -> "DispatchResult":
        letter = self.queue.get(letter_id)
        if letter is None:
            raise ValueError(f"Dead letter {letter_id} not found for replay")

        logger.info("replaying %s event %s", letter.processor, letter.external_event_id)
        return self.dispatcher.dispatch_verified(letter.processor, letter.raw_body)

    def replay_failed(self) -> dict[str, "DispatchResult"]:
        """Replay every dead letter; returns results keyed by letter id."""
        return {letter.letter_id: self.replay_event(letter.letter_id) for letter in self.queue.list()}

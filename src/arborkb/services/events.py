"""
In-process observer interface over queue state changes.

Publishers call publish() only after the commit that caused the change, so a
subscriber that re-reads the row always sees the new state. Transport
(websocket, SSE, polling) is the subscriber's business.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageChanged:
    page_id: int
    batch_id: int
    status: str


@dataclass(frozen=True)
class BatchChanged:
    batch_id: int
    status: str
    processed_pages: int
    total_pages: int
    progress_percentage: int


@dataclass(frozen=True)
class QueueWake:
    """Pending work was (re)queued; a worker should look for it now."""
    batch_id: Optional[int]
    reason: str


@dataclass(frozen=True)
class SuggestionSeed:
    """Lightweight hint that an OCR'd page holds enough text to mine."""
    source_id: str
    page: int
    chunk_id: int
    text_length: int
    language: str


Event = PageChanged | BatchChanged | QueueWake | SuggestionSeed


class EventBus:
    def __init__(self):
        self._subscribers: list[Callable[[Event], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed on %s", callback, type(event).__name__)


event_bus = EventBus()

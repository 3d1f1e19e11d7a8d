"""Best-effort fan-out of job and model events to live subscribers."""

from __future__ import annotations

import queue
import threading
import uuid
from typing import Dict, FrozenSet, Iterable, List, Optional

from sdqueue.backend.config import SUBSCRIBER_QUEUE_SIZE
from sdqueue.backend.models.event import Event, EventKind
from sdqueue.backend.utils.logging_utils import logger


class Subscription:
    """Bounded per-subscriber mailbox.

    When the mailbox is full the oldest pending event is dropped, so a slow
    reader loses history instead of stalling the publisher.
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        maxsize: int,
        kinds: Optional[Iterable[EventKind]] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self.subscription_id = uuid.uuid4().hex
        self.kinds: Optional[FrozenSet[EventKind]] = frozenset(kinds) if kinds else None
        self.job_id = job_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)

    def wants(self, event: Event) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.job_id is not None and event.job_id not in (None, self.job_id):
            return False
        return True

    def offer(self, event: Event) -> None:
        if not self.wants(event):
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events: List[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBroadcaster:
    """Thread-safe publisher; ``publish`` never blocks on a subscriber."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(
        self,
        kinds: Optional[Iterable[EventKind]] = None,
        job_id: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(self, self.queue_size, kinds=kinds, job_id=job_id)
        with self._lock:
            self._subscribers[subscription.subscription_id] = subscription
        logger.debug("Subscriber %s registered", subscription.subscription_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            removed = self._subscribers.pop(subscription.subscription_id, None)
        if removed is not None:
            logger.debug(
                "Subscriber %s removed (dropped %d events)",
                subscription.subscription_id,
                subscription.dropped,
            )
        return removed is not None

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscription in subscribers:
            try:
                subscription.offer(event)
            except Exception as exc:
                logger.warning(
                    "Failed to deliver %s to subscriber %s: %s",
                    event.kind.value,
                    subscription.subscription_id,
                    exc,
                )

    def emit(self, kind: EventKind, **data) -> None:
        self.publish(Event(kind=kind, data=data))

"""
In-process change notification channel.

Stores publish the post-write state of every record they mutate. Callers
subscribe with a predicate and drain the resulting stream; cancelling a
subscription stops delivery and drops its queue from the feed.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    action: str
    record: dict = field(default_factory=dict)


Predicate = Callable[[ChangeEvent], bool]


class Subscription:
    def __init__(self, feed: "ChangeFeed", predicate: Optional[Predicate] = None):
        self._feed = feed
        self._predicate = predicate
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def matches(self, event: ChangeEvent) -> bool:
        if self._predicate is None:
            return True
        return bool(self._predicate(event))

    def deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None on timeout or after cancel."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def updates(self, timeout: Optional[float] = None) -> Iterator[ChangeEvent]:
        while True:
            event = self.get(timeout=timeout)
            if event is None:
                return
            yield event

    def cancel(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._feed._remove(self)
        self._queue.put(_CLOSED)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class ChangeFeed:
    def __init__(self):
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, predicate: Optional[Predicate] = None) -> Subscription:
        subscription = Subscription(self, predicate)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, collection: str, action: str, record: dict) -> None:
        event = ChangeEvent(collection=collection, action=action, record=dict(record))
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            try:
                if subscription.matches(event):
                    subscription.deliver(event)
            except Exception:
                logger.exception("Subscriber filter failed for %s/%s", collection, action)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.cancel()

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

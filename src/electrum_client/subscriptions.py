"""
electrum_client/subscriptions.py

Routes server push notifications to subscription topics.

A topic is (method, key), e.g. ("blockchain.scripthash.subscribe", <scripthash>)
or ("blockchain.headers.subscribe", None). For each topic the router keeps the
last known payload (for callers that want the current state) and a FIFO of
pushes (for callers that want to be told about the next change).
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .config import MAX_QUEUED_NOTIFICATIONS
from .errors import DisconnectedError, NotSubscribedError, RequestTimeoutError
from .messages import Topic

logger = logging.getLogger("electrum_client.subscriptions")


@dataclass
class SubscriptionEntry:
    """State kept for one topic."""
    topic: Topic
    last_payload: Any = None
    has_payload: bool = False
    queue: Deque[Any] = field(default_factory=deque)
    subscribers: int = 0
    changes: int = 0          # number of pushes recorded so far
    last_update: float = 0.0
    error: Optional[Exception] = None     # why the server subscribe failed

    def update(self, payload: Any) -> None:
        self.last_payload = payload
        self.has_payload = True
        self.last_update = time.time()


class SubscriptionRouter:
    """
    Per-connection table of subscription topics.

    Usage:
        router = SubscriptionRouter()
        router.subscribe(topic)

        # reader thread
        router.record(topic, payload)

        # any caller thread
        current = router.peek(topic)
        update = router.pop_next(topic, timeout=60.0)
    """

    def __init__(self, max_queue: int = MAX_QUEUED_NOTIFICATIONS):
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._entries: Dict[Topic, SubscriptionEntry] = {}
        self._closed_reason: Optional[str] = None

    def _entry(self, topic: Topic) -> SubscriptionEntry:
        # Caller holds the lock
        entry = self._entries.get(topic)
        if entry is None:
            entry = SubscriptionEntry(topic=topic, queue=deque(maxlen=self.max_queue))
            self._entries[topic] = entry
        return entry

    # ========== Subscriber bookkeeping ==========

    def subscribe(self, topic: Topic) -> int:
        """
        Register one more subscriber for a topic.

        Returns:
            The subscriber count after registering
        """
        with self._lock:
            entry = self._entry(topic)
            entry.subscribers += 1
            if entry.subscribers == 1:
                entry.error = None
            return entry.subscribers

    def unsubscribe(self, topic: Topic, error: Optional[Exception] = None) -> int:
        """
        Drop one subscriber. The topic is forgotten when none remain.

        Args:
            topic: Topic to leave
            error: Why the server subscribe failed; subscribers still waiting
                in wait_state() are released with it

        Returns:
            The remaining subscriber count

        Raises:
            NotSubscribedError: If the topic has no subscribers
        """
        with self._lock:
            entry = self._entries.get(topic)
            if entry is None or entry.subscribers <= 0:
                raise NotSubscribedError(f"Not subscribed to {topic[0]} {topic[1]!r}")
            entry.subscribers -= 1
            if entry.subscribers == 0:
                del self._entries[topic]
            elif error is not None and not entry.has_payload:
                entry.error = error
                self._changed.notify_all()
            return entry.subscribers

    def subscribers(self, topic: Topic) -> int:
        with self._lock:
            entry = self._entries.get(topic)
            return entry.subscribers if entry else 0

    def changes(self, topic: Topic) -> int:
        """Number of pushes recorded for a topic; pass to seed() as `since`."""
        with self._lock:
            entry = self._entries.get(topic)
            return entry.changes if entry else 0

    # ========== Updates ==========

    def record(self, topic: Topic, payload: Any) -> bool:
        """
        Store a pushed payload as the latest state and queue it for pop_next.

        Pushes for topics without subscribers (e.g. arriving after the last
        unsubscribe) are dropped.

        Returns:
            True if the push was kept
        """
        with self._lock:
            entry = self._entries.get(topic)
            if entry is None or entry.subscribers <= 0:
                kept = False
            else:
                kept = True
                if len(entry.queue) == entry.queue.maxlen:
                    logger.warning(
                        f"Notification queue for {topic[0]} {topic[1]!r} is full; dropping oldest"
                    )
                entry.update(payload)
                entry.queue.append(payload)
                entry.changes += 1
                self._changed.notify_all()

        if kept:
            logger.debug(f"Notification for {topic[0]} {topic[1]!r}")
        else:
            logger.debug(f"Dropping notification for unsubscribed {topic[0]} {topic[1]!r}")
        return kept

    def seed(self, topic: Topic, payload: Any, since: int) -> bool:
        """
        Store the subscribe call's reply as the latest state.

        Skipped when a push arrived after `since`, because that push is newer
        than the reply, and when every subscriber already left.

        Returns:
            True if the payload was stored
        """
        with self._lock:
            entry = self._entries.get(topic)
            if entry is None or entry.subscribers <= 0 or entry.changes != since:
                return False
            entry.update(payload)
            self._changed.notify_all()
            return True

    # ========== Reads ==========

    def peek(self, topic: Topic) -> Any:
        """Last known payload for a topic, or None."""
        with self._lock:
            entry = self._entries.get(topic)
            return entry.last_payload if entry else None

    def wait_state(self, topic: Topic, timeout: Optional[float] = None) -> Any:
        """
        Wait until a topic has a known payload and return it.

        Used by later subscribers of a topic whose first subscriber is still
        waiting on the server's reply.

        Raises:
            NotSubscribedError: If the topic has no subscribers
            RequestTimeoutError: If no state arrives in time
            DisconnectedError: If the connection closed first
            ElectrumError: Whatever failed the first subscriber's call
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._lock:
            while True:
                entry = self._entries.get(topic)
                if entry is None:
                    raise NotSubscribedError(f"Not subscribed to {topic[0]} {topic[1]!r}")
                if entry.has_payload:
                    return entry.last_payload
                if entry.error is not None:
                    raise entry.error
                if self._closed_reason is not None:
                    raise DisconnectedError(self._closed_reason)

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise RequestTimeoutError(
                        f"No state for {topic[0]} {topic[1]!r} after {timeout}s"
                    )
                self._changed.wait(remaining)

    def pop_next(self, topic: Topic, timeout: Optional[float] = None) -> Any:
        """
        Take the oldest queued push for a topic, waiting for one if needed.

        Args:
            topic: Topic to read
            timeout: Seconds to wait; 0 returns immediately, None waits forever

        Raises:
            RequestTimeoutError: If nothing arrives in time
            DisconnectedError: If the connection closed and the queue is empty
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._lock:
            while True:
                entry = self._entries.get(topic)
                if entry is not None and entry.queue:
                    return entry.queue.popleft()
                if self._closed_reason is not None:
                    raise DisconnectedError(self._closed_reason)

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise RequestTimeoutError(
                        f"No notification for {topic[0]} {topic[1]!r} after {timeout}s"
                    )
                self._changed.wait(remaining)

    def drain(self, topic: Topic) -> List[Any]:
        """Take every queued push for a topic without waiting."""
        with self._lock:
            entry = self._entries.get(topic)
            if entry is None:
                return []
            items = list(entry.queue)
            entry.queue.clear()
            return items

    def close(self, reason: str) -> None:
        """Wake every waiter; pop_next fails once queues are drained."""
        with self._lock:
            if self._closed_reason is None:
                self._closed_reason = reason
            self._changed.notify_all()

    def topics(self) -> List[Topic]:
        with self._lock:
            return list(self._entries)

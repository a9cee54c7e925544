"""
electrum_client/registry.py

Pending-call registry: maps request ids to the slots callers wait on.

The reader loop fulfills slots; callers wait on them. Each slot is completed
exactly once, whichever of fulfill, timeout removal or fail_all gets to it
first under the registry lock.
"""

import itertools
import logging
import threading
from typing import Dict, Optional, Union

from .errors import DisconnectedError, DuplicateIdError, ElectrumError, RequestTimeoutError
from .messages import Response

logger = logging.getLogger("electrum_client.registry")

# What a slot resolves to: the server's response, or the error that ended the wait
Outcome = Union[Response, ElectrumError]


class PendingSlot:
    """One caller waiting for the response to one request id."""

    __slots__ = ("id", "_event", "_outcome")

    def __init__(self, request_id: int):
        self.id = request_id
        self._event = threading.Event()
        self._outcome: Optional[Outcome] = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    def _complete(self, outcome: Outcome) -> None:
        # Only ever called by whoever removed the slot from the table
        self._outcome = outcome
        self._event.set()

    def _wait(self, timeout: Optional[float]) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"PendingSlot(id={self.id}, done={self.done})"


class PendingCallRegistry:
    """
    Table of in-flight calls for one connection.

    Usage:
        registry = PendingCallRegistry()

        request_id = registry.next_id()
        slot = registry.register(request_id)
        ...write the request...
        outcome = registry.wait(slot, timeout=30.0)

        # reader thread
        registry.fulfill(response.id, response)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[int, PendingSlot] = {}
        self._ids = itertools.count(1)
        self._closed_reason: Optional[DisconnectedError] = None

    def next_id(self) -> int:
        """Allocate a request id. Ids are never reused on this connection."""
        with self._lock:
            return next(self._ids)

    def register(self, request_id: int) -> PendingSlot:
        """
        Create the slot for a request id.

        Raises:
            DuplicateIdError: If the id already has a live slot
            DisconnectedError: If the connection has already failed
        """
        with self._lock:
            if self._closed_reason is not None:
                raise DisconnectedError(str(self._closed_reason))
            if request_id in self._pending:
                raise DuplicateIdError(f"Request id {request_id} is already pending")
            slot = PendingSlot(request_id)
            self._pending[request_id] = slot
            return slot

    def fulfill(self, request_id: int, outcome: Outcome) -> bool:
        """
        Deliver an outcome to the slot waiting on request_id.

        Returns:
            False if nobody is waiting (unknown id, or the wait timed out)
        """
        with self._lock:
            slot = self._pending.pop(request_id, None)

        if slot is None:
            logger.warning(f"Dropping response for unknown request id {request_id}")
            return False

        slot._complete(outcome)
        return True

    def wait(self, slot: PendingSlot, timeout: Optional[float]) -> Outcome:
        """
        Block until the slot is completed.

        Raises:
            RequestTimeoutError: If nothing arrives within timeout seconds.
                The slot is removed, so a late response is dropped.
        """
        if slot._wait(timeout):
            return slot.outcome

        with self._lock:
            removed = self._pending.get(slot.id) is slot
            if removed:
                del self._pending[slot.id]

        if not removed:
            # fulfill() or fail_all() popped it first and is completing it now
            slot._wait(None)
            return slot.outcome

        raise RequestTimeoutError(f"No response to request {slot.id} after {timeout}s")

    def discard(self, slot: PendingSlot) -> None:
        """Forget a slot whose request could not be sent."""
        with self._lock:
            if self._pending.get(slot.id) is slot:
                del self._pending[slot.id]

    def fail_all(self, reason: str) -> int:
        """
        Complete every pending slot with DisconnectedError and refuse new ones.

        Returns:
            Number of slots failed
        """
        with self._lock:
            if self._closed_reason is None:
                self._closed_reason = DisconnectedError(reason)
            slots = list(self._pending.values())
            self._pending.clear()

        for slot in slots:
            slot._complete(DisconnectedError(reason))

        if slots:
            logger.debug(f"Failed {len(slots)} pending call(s): {reason}")
        return len(slots)

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._pending

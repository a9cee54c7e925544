"""
electrum_client/engine.py

Transport and correlation engine for one Electrum connection.

The engine owns the stream. Callers on any number of threads issue calls;
requests are written under a write lock, and each caller blocks on its own
pending slot until the reader thread delivers the response with the matching
id. Correlation is by id only, so responses may arrive in any order and be
interleaved with subscription pushes.

Once the connection drops (read error, write error or close()) the engine is
DISCONNECTED for good: every pending and future call fails with
DisconnectedError. Reconnecting means building a new engine.
"""

import logging
import threading
import time
from enum import Enum, auto
from typing import Any, Hashable, List, Optional, Sequence, Tuple

from .config import ClientConfig, Endpoint
from .errors import DisconnectedError, ElectrumError, RequestTimeoutError
from .framing import FrameReader, MessageFramer
from .messages import Request, Response, Topic
from .reader import ReaderLoop
from .registry import Outcome, PendingCallRegistry, PendingSlot
from .subscriptions import SubscriptionRouter
from .transport import DuplexStream, open_stream

logger = logging.getLogger("electrum_client.engine")

Call = Tuple[str, Sequence[Any]]


class ConnectionState(Enum):
    """Engine connection state. DISCONNECTED is terminal."""
    CONNECTED = auto()
    DISCONNECTED = auto()


def _resolve(outcome: Outcome) -> Any:
    """Turn a slot outcome into a result, raising what the caller should see."""
    if isinstance(outcome, Response):
        if outcome.error is not None:
            raise outcome.error
        return outcome.result
    raise outcome


class ElectrumEngine:
    """
    Thread-safe Electrum JSON-RPC engine over a single duplex stream.

    Usage:
        engine = ElectrumEngine.connect(Endpoint.parse("ssl://electrum.example.org:50002"))

        version = engine.call("server.version", ["my-wallet", "1.4"])
        balances = engine.call_batch([
            ("blockchain.scripthash.get_balance", [sh1]),
            ("blockchain.scripthash.get_balance", [sh2]),
        ])

        status = engine.subscribe("blockchain.scripthash.subscribe", [sh1])
        new_status = engine.pop_next("blockchain.scripthash.subscribe", sh1, timeout=60)

        engine.close()
    """

    def __init__(
        self,
        stream: DuplexStream,
        config: Optional[ClientConfig] = None,
        endpoint: Optional[Endpoint] = None,
    ):
        """
        Start an engine on an already connected stream.

        Args:
            stream: Connected duplex stream; the engine takes ownership
            config: Timeouts and limits (defaults if None)
            endpoint: Endpoint the stream was opened for, if known
        """
        self.config = config or ClientConfig()
        self.endpoint = endpoint

        self._stream = stream
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ConnectionState.CONNECTED
        self._disconnect_reason: Optional[str] = None
        self._calls = 0

        self.registry = PendingCallRegistry()
        self.router = SubscriptionRouter(max_queue=self.config.max_queued_notifications)
        self._reader = ReaderLoop(
            FrameReader(stream, max_frame_size=self.config.max_frame_size),
            self.registry,
            self.router,
            on_exit=self._disconnect,
        )
        self._reader.start()

    @classmethod
    def connect(
        cls,
        endpoint: Endpoint,
        config: Optional[ClientConfig] = None,
    ) -> "ElectrumEngine":
        """
        Open a stream to the endpoint and start an engine on it.

        Raises:
            ConnectError: If the connection cannot be established
        """
        config = config or ClientConfig()
        stream = open_stream(endpoint, timeout=config.connect_timeout)
        logger.info(f"Connected to {endpoint}")
        return cls(stream, config=config, endpoint=endpoint)

    # ========================================================================
    # STATE
    # ========================================================================

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def disconnect_reason(self) -> Optional[str]:
        return self._disconnect_reason

    @property
    def calls_made(self) -> int:
        """Number of requests written to the wire (batch items count singly)."""
        return self._calls

    def _disconnect(self, reason: str) -> None:
        """Enter DISCONNECTED exactly once and release every waiter."""
        with self._state_lock:
            if self._state is ConnectionState.DISCONNECTED:
                return
            self._state = ConnectionState.DISCONNECTED
            self._disconnect_reason = reason

        where = self.endpoint or "server"
        logger.info(f"Disconnected from {where}: {reason}")
        self.registry.fail_all(reason)
        self.router.close(reason)
        self._stream.close()

    def close(self) -> None:
        """Close the connection. Outstanding calls fail with DisconnectedError."""
        self._disconnect("Connection closed by client")
        self._reader.join(timeout=1.0)

    def __enter__(self) -> "ElectrumEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ========================================================================
    # DISPATCH
    # ========================================================================

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.config.timeout if timeout is None else timeout

    def _register(self, method: str, params: Optional[Sequence[Any]]) -> Tuple[Request, PendingSlot]:
        if not self.is_connected:
            raise DisconnectedError(self._disconnect_reason or "Not connected")
        request_id = self.registry.next_id()
        slot = self.registry.register(request_id)
        return Request(id=request_id, method=method, params=list(params or [])), slot

    def _send(self, document: Any, slots: List[PendingSlot]) -> None:
        try:
            frame = MessageFramer.encode(document)
        except (TypeError, ValueError):
            # Params that are not JSON serializable never reach the wire
            for slot in slots:
                self.registry.discard(slot)
            raise

        try:
            with self._write_lock:
                self._stream.write(frame)
                self._calls += len(slots)
        except OSError as e:
            reason = f"Write failed: {e}"
            logger.error(reason)
            # fail_all() also releases the slots registered for this frame
            self._disconnect(reason)
            raise DisconnectedError(reason) from e

    def call(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make one JSON-RPC call and wait for its result.

        Args:
            method: RPC method name
            params: Positional parameters
            timeout: Seconds to wait (config.timeout if None)

        Returns:
            The result payload

        Raises:
            RpcError: If the server answered with an error
            RequestTimeoutError: If no answer arrived in time
            DisconnectedError: If the connection is (or becomes) dead
        """
        request, slot = self._register(method, params)
        logger.debug(f"-> {method}(id={request.id})")

        self._send(request.to_dict(), [slot])

        return _resolve(self.registry.wait(slot, self._timeout(timeout)))

    def call_batch(
        self,
        calls: Sequence[Call],
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """
        Send several calls as one JSON array frame.

        Args:
            calls: (method, params) pairs
            timeout: Seconds to wait for the whole batch

        Returns:
            Results in input order. An item the server rejected is returned
            as its RpcError instance instead of a result, and an item still
            unanswered at the deadline as a RequestTimeoutError.

        Raises:
            DisconnectedError: If the connection is (or becomes) dead
        """
        if not calls:
            return []

        requests: List[Request] = []
        slots: List[PendingSlot] = []
        try:
            for method, params in calls:
                request, slot = self._register(method, params)
                requests.append(request)
                slots.append(slot)
        except ElectrumError:
            for slot in slots:
                self.registry.discard(slot)
            raise

        logger.debug(f"-> batch of {len(requests)} (ids {requests[0].id}..{requests[-1].id})")
        self._send([request.to_dict() for request in requests], slots)

        deadline = time.monotonic() + self._timeout(timeout)
        results: List[Any] = []
        for slot in slots:
            try:
                outcome = self.registry.wait(slot, max(0.0, deadline - time.monotonic()))
            except RequestTimeoutError as e:
                # Unanswered items fail in place; the rest of the batch stands
                results.append(e)
                continue

            if isinstance(outcome, Response) and outcome.error is not None:
                results.append(outcome.error)
            elif isinstance(outcome, Response):
                results.append(outcome.result)
            elif isinstance(outcome, DisconnectedError):
                raise outcome
            else:
                # Malformed item response: report it in place, like a server error
                results.append(outcome)

        return results

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    @staticmethod
    def topic(method: str, key: Optional[Hashable] = None) -> Topic:
        return method, key

    def subscribe(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Subscribe to a topic and return the server's initial state.

        The topic key is the first param (e.g. a script hash), or None for
        parameterless subscriptions such as block headers. The initial
        state becomes the topic's last known payload.

        Only the first local subscriber of a topic sends the request; later
        ones share its state (waiting for the reply if it is still pending).
        """
        params = list(params or [])
        topic = self.topic(method, params[0] if params else None)

        if self.router.subscribe(topic) > 1:
            try:
                return self.router.wait_state(topic, self._timeout(timeout))
            except ElectrumError:
                self.router.unsubscribe(topic)
                raise

        since = self.router.changes(topic)
        try:
            result = self.call(method, params, timeout=timeout)
        except ElectrumError as e:
            self.router.unsubscribe(topic, error=e)
            raise

        self.router.seed(topic, result, since)
        return result

    def unsubscribe(self, method: str, key: Optional[Hashable] = None) -> int:
        """
        Drop one local subscriber of a topic.

        Returns:
            Remaining subscribers; at 0 the caller may tell the server
        """
        return self.router.unsubscribe(self.topic(method, key))

    def peek(self, method: str, key: Optional[Hashable] = None) -> Any:
        """Last known payload for a topic, or None."""
        return self.router.peek(self.topic(method, key))

    def pop_next(
        self,
        method: str,
        key: Optional[Hashable] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Wait for the next push on a topic.

        Raises:
            RequestTimeoutError: If nothing arrives in time
            DisconnectedError: If the connection closed and nothing is queued
        """
        return self.router.pop_next(self.topic(method, key), self._timeout(timeout))

    def __repr__(self) -> str:
        return f"ElectrumEngine({self.endpoint or self._stream!r}, state={self._state.name})"

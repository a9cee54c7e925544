"""
electrum_client/reader.py

Background reader: the only code that pulls bytes off the wire.

Each frame is decoded and every message in it is routed to the pending-call
registry (responses) or the subscription router (notifications). Anything
else is logged and dropped. A read failure ends the loop and is reported to
the engine, which is the single place disconnection is handled.
"""

import logging
import threading
from typing import Any, Callable, Optional

from .errors import ConnectionClosedError, FrameError, InvalidResponseError
from .framing import FrameReader, decode_frame
from .messages import Anomaly, Notification, Response, classify
from .registry import PendingCallRegistry
from .subscriptions import SubscriptionRouter

logger = logging.getLogger("electrum_client.reader")


class ReaderLoop:
    """
    Owns the read half of the stream for the lifetime of a connection.

    Usage:
        reader = ReaderLoop(frames, registry, router, on_exit=engine._disconnect)
        reader.start()
    """

    def __init__(
        self,
        frames: FrameReader,
        registry: PendingCallRegistry,
        router: SubscriptionRouter,
        on_exit: Callable[[str], None],
        name: str = "electrum-reader",
    ):
        self._frames = frames
        self._registry = registry
        self._router = router
        self._on_exit = on_exit
        self._name = name
        self._thread: Optional[threading.Thread] = None

        self.messages_received = 0
        self.notifications_received = 0
        self.anomalies = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        reason = "reader stopped"
        try:
            while True:
                frame = self._frames.read_frame()
                try:
                    document = decode_frame(frame)
                except FrameError as e:
                    self.anomalies += 1
                    logger.warning(f"{e}; dropping {len(frame)} byte frame")
                    continue
                self.dispatch(document)
        except ConnectionClosedError as e:
            reason = str(e)
            logger.info(reason)
        except FrameError as e:
            reason = f"Unreadable stream: {e}"
            logger.error(reason)
        except OSError as e:
            reason = f"Read failed: {e}"
            logger.error(reason)
        except Exception as e:
            reason = f"Reader crashed: {e!r}"
            logger.exception(reason)
        finally:
            self._on_exit(reason)

    def dispatch(self, document: Any) -> None:
        """Route a decoded frame: a single message or a batch (JSON array)."""
        if isinstance(document, list):
            if not document:
                self.anomalies += 1
                logger.warning("Dropping empty batch frame")
            for item in document:
                self._dispatch_one(item)
        else:
            self._dispatch_one(document)

    def _dispatch_one(self, raw: Any) -> None:
        message = classify(raw)
        self.messages_received += 1

        if isinstance(message, Response):
            logger.debug(f"<- response id={message.id} ok={message.ok}")
            self._registry.fulfill(message.id, message)
        elif isinstance(message, Notification):
            self.notifications_received += 1
            self._router.record(message.topic, message.payload)
        elif isinstance(message, Anomaly):
            self.anomalies += 1
            logger.warning(f"Dropping message: {message.reason}")
            if message.id is not None:
                # Let the caller fail fast instead of waiting for a timeout
                self._registry.fulfill(
                    message.id, InvalidResponseError(message.reason, message.raw)
                )

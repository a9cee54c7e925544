"""
electrum_client/framing.py

Newline-delimited JSON framing.

Outbound documents are serialized compactly and terminated with a newline.
Inbound bytes are buffered across reads until a newline completes a frame.
"""

import json
import logging
from typing import Any, Optional

from .config import MAX_FRAME_SIZE
from .errors import ConnectionClosedError, FrameError
from .transport import DuplexStream

logger = logging.getLogger("electrum_client.framing")

DELIMITER = b"\n"


class MessageFramer:
    """Serializes outgoing JSON documents into frames."""

    @staticmethod
    def encode(document: Any) -> bytes:
        """
        Serialize a request (or list of requests) into one frame.

        The result is written with a single call so concurrent writers never
        interleave inside a message.
        """
        payload = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
        return payload.encode("utf-8") + DELIMITER


def decode_frame(frame: bytes) -> Any:
    """
    Parse one frame (without its delimiter).

    Raises:
        FrameError: If the frame is not valid UTF-8 JSON, or nests too deeply
    """
    try:
        return json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise FrameError(f"Invalid JSON frame: {e}") from e


class FrameReader:
    """
    Splits a byte stream into newline-terminated frames.

    Owns a growable buffer so a message split over many reads is reassembled,
    and several messages arriving in one read are handed out one at a time.
    """

    def __init__(
        self,
        stream: DuplexStream,
        max_frame_size: int = MAX_FRAME_SIZE,
        read_size: int = 4096,
    ):
        self._stream = stream
        self._buffer = bytearray()
        self._scan_from = 0
        self.max_frame_size = max_frame_size
        self.read_size = read_size

    @property
    def buffered(self) -> int:
        """Bytes received but not yet returned as a frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_frame(self) -> Optional[bytes]:
        """Return the next complete frame already buffered, or None."""
        while True:
            index = self._buffer.find(DELIMITER, self._scan_from)
            if index < 0:
                self._scan_from = len(self._buffer)
                if self._scan_from > self.max_frame_size:
                    raise FrameError(
                        f"Frame exceeds {self.max_frame_size} bytes without a delimiter"
                    )
                return None

            frame = bytes(self._buffer[:index])
            del self._buffer[:index + 1]
            self._scan_from = 0

            frame = frame.rstrip(b"\r")
            if frame.strip():
                return frame

    def read_frame(self) -> bytes:
        """
        Block until a full frame is available.

        Raises:
            ConnectionClosedError: On EOF
            FrameError: If the buffer outgrows max_frame_size
            OSError: On socket errors
        """
        while True:
            frame = self.next_frame()
            if frame is not None:
                return frame

            chunk = self._stream.read(self.read_size)
            if not chunk:
                if self._buffer.strip():
                    logger.warning(f"Discarding {len(self._buffer)} bytes of partial frame at EOF")
                raise ConnectionClosedError("Connection closed by server")
            self.feed(chunk)

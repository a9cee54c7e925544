"""
electrum_client/errors.py

Exception hierarchy for electrum_client.
"""

from typing import Any, Optional


class ElectrumError(Exception):
    """Base class for every error raised by electrum_client."""
    pass


class ConnectError(ElectrumError):
    """DNS, refused connection, TLS or proxy handshake failure."""
    pass


class FrameError(ElectrumError):
    """A frame received from the server could not be decoded."""
    pass


class ProtocolError(ElectrumError):
    """A well-formed JSON message that violates the protocol."""
    pass


class InvalidResponseError(ProtocolError):
    """A response (or result payload) does not have the expected shape."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class RpcError(ElectrumError):
    """Error object returned by the server for a single call."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")

    @classmethod
    def from_payload(cls, payload: Any) -> "RpcError":
        """Build from a JSON-RPC error object (or whatever the server sent)."""
        if isinstance(payload, dict):
            return cls(
                code=payload.get("code"),
                message=str(payload.get("message", payload)),
                data=payload.get("data"),
            )
        return cls(code=None, message=str(payload))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (self.code, self.message, self.data) == (other.code, other.message, other.data)

    def __hash__(self) -> int:
        return hash((self.code, self.message))


class RequestTimeoutError(ElectrumError, TimeoutError):
    """A local wait expired. The server-side request is not cancelled."""
    pass


class DisconnectedError(ElectrumError):
    """The connection is gone; the engine instance cannot be used again."""
    pass


class ConnectionClosedError(DisconnectedError):
    """The server closed the stream (EOF)."""
    pass


class DuplicateIdError(ElectrumError):
    """A request identifier was registered twice."""
    pass


class NotSubscribedError(ElectrumError):
    """Unsubscribe for a topic nobody subscribed to."""
    pass

"""
electrum_client/messages.py

Electrum JSON-RPC wire models.

Pure data, no I/O. The engine builds Requests; the reader loop turns decoded
JSON objects into Responses and Notifications via classify().
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional, Tuple, Union

from .errors import RpcError

JSONRPC_VERSION = "2.0"

# Servers push subscription updates using the subscribe method's own name
NOTIFICATION_SUFFIX = ".subscribe"

_MISSING = object()

Topic = Tuple[str, Optional[Hashable]]


@dataclass
class Request:
    """A call sent to the server."""
    id: int
    method: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": list(self.params),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Request":
        if not isinstance(raw, dict):
            raise ValueError("request must be a JSON object")
        method = raw.get("method")
        if not isinstance(method, str) or not method:
            raise ValueError("missing or invalid 'method' field")
        params = raw.get("params", [])
        if not isinstance(params, list):
            raise ValueError("'params' must be a JSON array")
        return cls(id=raw.get("id"), method=method, params=params)


@dataclass
class Response:
    """Reply to a single Request: exactly one of result or error is set."""
    id: int
    result: Any = None
    error: Optional[RpcError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Notification:
    """Unsolicited subscription update pushed by the server."""
    method: str
    params: List[Any] = field(default_factory=list)

    @property
    def topic(self) -> Topic:
        """(method, key) where key is the first param when it names the topic."""
        if len(self.params) >= 2:
            key = self.params[0]
            return self.method, key if isinstance(key, Hashable) else repr(key)
        return self.method, None

    @property
    def payload(self) -> Any:
        if len(self.params) > 2:
            return self.params[1:]
        if len(self.params) == 2:
            return self.params[1]
        if len(self.params) == 1:
            return self.params[0]
        return None


@dataclass
class Anomaly:
    """A message that is neither a response nor a notification."""
    reason: str
    raw: Any = None
    id: Optional[int] = None


Message = Union[Response, Notification, Anomaly]


def _normalize_id(raw_id: Any) -> Optional[int]:
    if isinstance(raw_id, bool):
        return None
    if isinstance(raw_id, int):
        return raw_id
    if isinstance(raw_id, str) and raw_id.isdigit():
        return int(raw_id)
    return None


def classify(raw: Any) -> Message:
    """
    Turn one decoded JSON value into a Response, Notification or Anomaly.

    A response carrying both (or neither of) result and error is reported as
    an Anomaly with its id set, so the waiting caller can be told.
    """
    if not isinstance(raw, dict):
        return Anomaly("message is not a JSON object", raw)

    raw_id = raw.get("id", _MISSING)
    method = raw.get("method")

    if raw_id is not _MISSING and raw_id is not None and method is None:
        msg_id = _normalize_id(raw_id)
        if msg_id is None:
            return Anomaly(f"unusable id {raw_id!r}", raw)

        has_result = "result" in raw
        has_error = "error" in raw and raw["error"] is not None
        if has_result and has_error:
            return Anomaly("response carries both result and error", raw, id=msg_id)
        if has_error:
            return Response(id=msg_id, error=RpcError.from_payload(raw["error"]))
        if has_result:
            return Response(id=msg_id, result=raw["result"])
        return Anomaly("response carries neither result nor error", raw, id=msg_id)

    if isinstance(method, str) and (raw_id is _MISSING or raw_id is None):
        if not method.endswith(NOTIFICATION_SUFFIX):
            return Anomaly(f"unexpected notification method {method!r}", raw)
        params = raw.get("params", [])
        if not isinstance(params, list):
            return Anomaly("notification params must be an array", raw)
        return Notification(method=method, params=params)

    if raw_id is None and "error" in raw:
        # e.g. a parse error for a whole batch
        return Anomaly(f"error without id: {raw.get('error')!r}", raw)

    return Anomaly("unrecognized message shape", raw)

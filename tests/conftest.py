"""
Shared fixtures: a scripted Electrum server on the far end of a socketpair.
"""

import json
import socket
import threading
import time
from typing import Any, Callable, Dict, Optional

import pytest

from electrum_client.config import ClientConfig
from electrum_client.engine import ElectrumEngine
from electrum_client.errors import RpcError
from electrum_client.transport import SocketStream


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate() is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class MockServer:
    """
    Server half of a loopback connection.

    Tests read requests and write responses by hand, so they control
    response order and interleaving exactly.
    """

    def __init__(self):
        self.client_sock, self.server_sock = socket.socketpair()
        self.stream = SocketStream(self.client_sock, description="mock")
        self.server_sock.settimeout(5.0)
        self._reader = self.server_sock.makefile("rb")
        self._closed = False

    def recv(self) -> Any:
        """Read one request frame (an object, or a list for a batch)."""
        line = self._reader.readline()
        if not line:
            raise EOFError("client closed the connection")
        return json.loads(line)

    def send(self, document: Any) -> None:
        self.send_raw(json.dumps(document).encode("utf-8") + b"\n")

    def send_raw(self, data: bytes) -> None:
        self.server_sock.sendall(data)

    def reply(self, request: dict, result: Any) -> None:
        self.send({"jsonrpc": "2.0", "id": request["id"], "result": result})

    def reply_error(self, request: dict, code: int, message: str) -> None:
        self.send({"jsonrpc": "2.0", "id": request["id"], "error": {"code": code, "message": message}})

    def notify(self, method: str, params: list) -> None:
        self.send({"jsonrpc": "2.0", "method": method, "params": params})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.server_sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._reader.close()
        self.server_sock.close()


class AutoResponder:
    """
    Answers every request from a table of handlers on a background thread.

    A handler takes the params list and returns the result, or raises
    RpcError to send an error object.
    """

    def __init__(self, server: MockServer, handlers: Dict[str, Callable[[list], Any]]):
        self.server = server
        self.handlers = handlers
        self.requests = []
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _answer(self, request: dict) -> dict:
        self.requests.append(request)
        handler = self.handlers.get(request["method"])
        if handler is None:
            return {"id": request["id"], "error": {"code": -32601, "message": "unknown method"}}
        try:
            return {"id": request["id"], "result": handler(request["params"])}
        except RpcError as e:
            return {"id": request["id"], "error": {"code": e.code, "message": e.message}}

    def _run(self) -> None:
        while True:
            try:
                document = self.server.recv()
            except (EOFError, OSError, ValueError):
                return
            if isinstance(document, list):
                self.server.send([self._answer(item) for item in document])
            else:
                self.server.send(self._answer(document))


@pytest.fixture
def server():
    srv = MockServer()
    yield srv
    srv.close()


@pytest.fixture
def engine(server):
    eng = ElectrumEngine(server.stream, ClientConfig(timeout=5.0))
    yield eng
    eng.close()


@pytest.fixture
def responder_factory(server):
    def make(handlers: Optional[Dict[str, Callable[[list], Any]]] = None) -> AutoResponder:
        return AutoResponder(server, handlers or {})
    return make

"""
Tests for electrum_client/engine.py

Drives ElectrumEngine against a scripted server over a socketpair.
"""

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from electrum_client.config import ClientConfig
from electrum_client.engine import ConnectionState, ElectrumEngine
from electrum_client.errors import (
    DisconnectedError,
    InvalidResponseError,
    RequestTimeoutError,
    RpcError,
)

from conftest import wait_until


SCRIPTHASH = "8b01df4e368ea28f8dc0423bcf7a4923e3a12d307c875e47a0cfbf90b5c39161"
SUBSCRIBE = "blockchain.scripthash.subscribe"


@pytest.fixture
def pool():
    executor = ThreadPoolExecutor(max_workers=32)
    yield executor
    executor.shutdown(wait=False)


# ============================================================================
# SINGLE CALLS
# ============================================================================

class TestCall:
    """Tests for ElectrumEngine.call."""

    def test_call_returns_result(self, server, engine, pool):
        """Test the server.version round trip."""
        future = pool.submit(engine.call, "server.version", [])

        request = server.recv()
        assert request["method"] == "server.version"
        assert request["params"] == []
        assert request["id"] == 1
        assert request["jsonrpc"] == "2.0"
        server.reply(request, ["ElectrumX 1.0", "1.4"])

        assert future.result(timeout=5) == ["ElectrumX 1.0", "1.4"]
        assert engine.registry.pending_count() == 0

    def test_out_of_order_responses(self, server, engine, pool):
        """Test each caller gets its own result when replies arrive reversed."""
        version = pool.submit(engine.call, "server.version", [])
        ping = pool.submit(engine.call, "server.ping", [])

        requests = [server.recv(), server.recv()]
        requests.sort(key=lambda r: r["id"], reverse=True)
        for request in requests:
            if request["method"] == "server.version":
                server.reply(request, ["ElectrumX 1.0", "1.4"])
            else:
                server.reply(request, None)

        assert version.result(timeout=5) == ["ElectrumX 1.0", "1.4"]
        assert ping.result(timeout=5) is None

    def test_server_error_raises_rpc_error(self, server, engine, pool):
        """Test an error object becomes RpcError with code and message."""
        future = pool.submit(engine.call, "blockchain.transaction.get", ["00" * 32])

        request = server.recv()
        server.reply_error(request, 2, "daemon error: No such mempool transaction")

        with pytest.raises(RpcError) as excinfo:
            future.result(timeout=5)
        assert excinfo.value.code == 2
        assert "No such mempool" in excinfo.value.message

    def test_notification_before_response(self, server, engine, pool):
        """Test a push interleaved ahead of a response goes to the router."""
        engine.router.subscribe((SUBSCRIBE, SCRIPTHASH))
        future = pool.submit(engine.call, "blockchain.relayfee", [])

        request = server.recv()
        server.notify(SUBSCRIBE, [SCRIPTHASH, "status1"])
        server.reply(request, 0.00001)

        assert future.result(timeout=5) == 0.00001
        assert wait_until(lambda: engine.peek(SUBSCRIBE, SCRIPTHASH) == "status1")

    def test_response_split_across_writes(self, server, engine, pool):
        """Test a response arriving in fragments is reassembled."""
        future = pool.submit(engine.call, "server.banner", [])

        request = server.recv()
        data = f'{{"id": {request["id"]}, "result": "Welcome"}}\n'.encode()
        for i in range(0, len(data), 5):
            server.send_raw(data[i:i + 5])
            time.sleep(0.005)

        assert future.result(timeout=5) == "Welcome"

    def test_invalid_json_frame_is_dropped(self, server, engine, pool):
        """Test garbage on the wire does not kill the connection."""
        future = pool.submit(engine.call, "server.ping", [])

        request = server.recv()
        server.send_raw(b"this is not json\n")
        server.reply(request, None)

        assert future.result(timeout=5) is None
        assert engine.is_connected

    def test_deeply_nested_frame_is_dropped(self, server):
        """Test a frame too deep for the JSON parser does not kill the reader."""
        eng = ElectrumEngine(server.stream, ClientConfig(timeout=5.0, max_frame_size=1_000_000))
        try:
            with ThreadPoolExecutor(max_workers=1) as executor:
                future = executor.submit(eng.call, "server.ping", [])
                request = server.recv()
                server.send_raw(b"[" * 100000 + b"]" * 100000 + b"\n")
                server.reply(request, None)

                assert future.result(timeout=5) is None
            assert eng.is_connected
        finally:
            eng.close()

    def test_result_and_error_is_invalid_response(self, server, engine, pool):
        """Test a response with both result and error fails that caller only."""
        future = pool.submit(engine.call, "server.ping", [])

        request = server.recv()
        server.send({"id": request["id"], "result": None, "error": {"code": 1, "message": "x"}})

        with pytest.raises(InvalidResponseError):
            future.result(timeout=5)
        assert engine.is_connected

    def test_unknown_id_is_ignored(self, server, engine, pool):
        """Test a response nobody waits for is dropped."""
        server.send({"id": 999, "result": "stray"})
        future = pool.submit(engine.call, "server.ping", [])

        request = server.recv()
        server.reply(request, None)

        assert future.result(timeout=5) is None
        assert engine.is_connected

    def test_ids_increase(self, server, engine, pool):
        """Test request ids are allocated monotonically."""
        ids = []
        for _ in range(3):
            future = pool.submit(engine.call, "server.ping", [])
            request = server.recv()
            ids.append(request["id"])
            server.reply(request, None)
            future.result(timeout=5)

        assert ids == [1, 2, 3]
        assert engine.calls_made == 3

    def test_unserializable_params(self, engine):
        """Test params that cannot be encoded never leave a pending slot."""
        with pytest.raises(TypeError):
            engine.call("server.ping", [object()])
        assert engine.registry.pending_count() == 0

    def test_concurrent_callers(self, server, engine, pool):
        """Test many threads sharing one connection each get their own answer."""
        count = 20
        futures = {i: pool.submit(engine.call, "echo", [i]) for i in range(count)}

        requests = [server.recv() for _ in range(count)]
        random.shuffle(requests)
        for index, request in enumerate(requests):
            if index % 4 == 0:
                server.notify("blockchain.headers.subscribe", [{"height": index, "hex": ""}])
            server.reply(request, {"echo": request["params"][0]})

        for i, future in futures.items():
            assert future.result(timeout=5) == {"echo": i}


# ============================================================================
# TIMEOUTS
# ============================================================================

class TestTimeout:
    """Tests for per-call timeouts."""

    def test_call_times_out(self, server, engine):
        """Test an unanswered call raises within its timeout and frees its slot."""
        start = time.monotonic()
        with pytest.raises(RequestTimeoutError):
            engine.call("server.ping", [], timeout=0.2)
        elapsed = time.monotonic() - start

        assert 0.15 <= elapsed < 2.0
        assert engine.registry.pending_count() == 0
        assert engine.is_connected

    def test_timeout_is_builtin_timeout_error(self, server, engine):
        """Test RequestTimeoutError can be caught as TimeoutError."""
        with pytest.raises(TimeoutError):
            engine.call("server.ping", [], timeout=0.05)

    def test_late_response_is_dropped(self, server, engine, pool):
        """Test a reply after the timeout does not disturb later calls."""
        with pytest.raises(RequestTimeoutError):
            engine.call("server.ping", [], timeout=0.1)
        late = server.recv()

        future = pool.submit(engine.call, "server.banner", [])
        request = server.recv()
        server.reply(late, "too late")
        server.reply(request, "banner")

        assert future.result(timeout=5) == "banner"

    def test_default_timeout_from_config(self, server):
        """Test the config timeout applies when none is passed."""
        engine = ElectrumEngine(server.stream, ClientConfig(timeout=0.1))
        try:
            with pytest.raises(RequestTimeoutError):
                engine.call("server.ping")
        finally:
            engine.close()


# ============================================================================
# DISCONNECTION
# ============================================================================

class TestDisconnect:
    """Tests for connection loss."""

    def test_server_close_fails_every_pending_call(self, server, engine, pool):
        """Test all outstanding calls resolve to DisconnectedError on EOF."""
        futures = [pool.submit(engine.call, "server.ping", [], 30.0) for _ in range(5)]
        assert wait_until(lambda: engine.registry.pending_count() == 5)

        server.close()

        for future in futures:
            with pytest.raises(DisconnectedError):
                future.result(timeout=5)
        assert engine.connection_state is ConnectionState.DISCONNECTED
        assert engine.registry.pending_count() == 0

    def test_calls_after_disconnect_fail_fast(self, server, engine):
        """Test DISCONNECTED is terminal."""
        server.close()
        assert wait_until(lambda: not engine.is_connected)

        start = time.monotonic()
        with pytest.raises(DisconnectedError):
            engine.call("server.ping", [], timeout=10.0)
        assert time.monotonic() - start < 1.0

        with pytest.raises(DisconnectedError):
            engine.call_batch([("server.ping", [])])

    def test_close_fails_pending_calls(self, server, engine, pool):
        """Test an explicit close releases waiting callers."""
        future = pool.submit(engine.call, "server.ping", [], 30.0)
        assert wait_until(lambda: engine.registry.pending_count() == 1)

        engine.close()

        with pytest.raises(DisconnectedError):
            future.result(timeout=5)
        assert engine.disconnect_reason == "Connection closed by client"

    def test_close_is_idempotent(self, engine):
        """Test closing twice is harmless."""
        engine.close()
        engine.close()
        assert engine.connection_state is ConnectionState.DISCONNECTED

    def test_close_wakes_notification_waiters(self, engine, pool):
        """Test pop_next fails once the connection is gone."""
        future = pool.submit(engine.pop_next, SUBSCRIBE, SCRIPTHASH, 30.0)
        time.sleep(0.05)

        engine.close()

        with pytest.raises(DisconnectedError):
            future.result(timeout=5)

    def test_write_failure_disconnects(self):
        """Test a failed write moves the engine to DISCONNECTED."""

        class BrokenStream:
            def __init__(self):
                self.closed = threading.Event()

            def read(self, size):
                self.closed.wait()
                return b""

            def write(self, data):
                raise BrokenPipeError("broken pipe")

            def close(self):
                self.closed.set()

        engine = ElectrumEngine(BrokenStream(), ClientConfig(timeout=5.0))
        with pytest.raises(DisconnectedError, match="Write failed"):
            engine.call("server.ping", [])

        assert engine.connection_state is ConnectionState.DISCONNECTED
        assert engine.registry.pending_count() == 0

    def test_context_manager_closes(self, server):
        """Test the engine closes on context exit."""
        with ElectrumEngine(server.stream) as engine:
            assert engine.is_connected
        assert engine.connection_state is ConnectionState.DISCONNECTED


# ============================================================================
# BATCHES
# ============================================================================

class TestBatch:
    """Tests for ElectrumEngine.call_batch."""

    def test_batch_is_one_array_frame(self, server, engine, pool):
        """Test a batch is written as a single JSON array."""
        future = pool.submit(engine.call_batch, [
            ("blockchain.estimatefee", [2]),
            ("blockchain.estimatefee", [6]),
        ])

        batch = server.recv()
        assert isinstance(batch, list)
        assert [item["params"] for item in batch] == [[2], [6]]
        assert len({item["id"] for item in batch}) == 2

        server.send([
            {"id": batch[1]["id"], "result": 0.0001},
            {"id": batch[0]["id"], "result": 0.0003},
        ])

        assert future.result(timeout=5) == [0.0003, 0.0001]
        assert engine.calls_made == 2

    def test_item_error_is_reported_in_place(self, server, engine, pool):
        """Test one failing item does not fail the rest of the batch."""
        future = pool.submit(engine.call_batch, [
            ("blockchain.scripthash.get_balance", ["a" * 64]),
            ("blockchain.scripthash.get_balance", ["bogus"]),
            ("blockchain.scripthash.get_balance", ["b" * 64]),
        ])

        batch = server.recv()
        server.send([
            {"id": batch[0]["id"], "result": {"confirmed": 1, "unconfirmed": 0}},
            {"id": batch[1]["id"], "error": {"code": 1, "message": "invalid scripthash"}},
            {"id": batch[2]["id"], "result": {"confirmed": 2, "unconfirmed": 0}},
        ])

        results = future.result(timeout=5)
        assert results[0] == {"confirmed": 1, "unconfirmed": 0}
        assert isinstance(results[1], RpcError)
        assert results[1].message == "invalid scripthash"
        assert results[2] == {"confirmed": 2, "unconfirmed": 0}

    def test_batch_answered_as_separate_messages(self, server, engine, pool):
        """Test servers that reply to batch items one line at a time."""
        future = pool.submit(engine.call_batch, [("server.ping", []), ("server.banner", [])])

        batch = server.recv()
        server.send({"id": batch[1]["id"], "result": "hi"})
        server.send({"id": batch[0]["id"], "result": None})

        assert future.result(timeout=5) == [None, "hi"]

    def test_empty_batch(self, engine):
        """Test an empty batch sends nothing."""
        assert engine.call_batch([]) == []
        assert engine.calls_made == 0

    def test_batch_timeout_frees_slots(self, server, engine, pool):
        """Test an unanswered item times out in place and leaves no slots behind."""
        future = pool.submit(engine.call_batch, [("server.ping", []), ("server.ping", [])], 0.3)

        batch = server.recv()
        server.send({"id": batch[0]["id"], "result": None})

        results = future.result(timeout=5)
        assert results[0] is None
        assert isinstance(results[1], RequestTimeoutError)
        assert engine.registry.pending_count() == 0

    def test_answered_items_survive_one_timeout(self, server, engine, pool):
        """Test the items that were answered are returned when one is not."""
        future = pool.submit(engine.call_batch, [
            ("blockchain.estimatefee", [2]),
            ("blockchain.estimatefee", [6]),
            ("blockchain.estimatefee", [25]),
        ], 0.3)

        batch = server.recv()
        server.send([
            {"id": batch[2]["id"], "result": 0.0001},
            {"id": batch[0]["id"], "result": 0.0003},
        ])

        results = future.result(timeout=5)
        assert results[0] == 0.0003
        assert isinstance(results[1], RequestTimeoutError)
        assert results[2] == 0.0001
        assert engine.registry.pending_count() == 0
        assert engine.is_connected

    def test_batch_disconnect(self, server, engine, pool):
        """Test transport failure fails the whole batch."""
        future = pool.submit(engine.call_batch, [("server.ping", []), ("server.ping", [])], 30.0)
        server.recv()

        server.close()

        with pytest.raises(DisconnectedError):
            future.result(timeout=5)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class TestSubscriptions:
    """Tests for subscribe / peek / pop_next through the engine."""

    def test_subscribe_seeds_last_state(self, server, engine, pool):
        """Test the subscribe reply is readable with peek."""
        future = pool.submit(engine.subscribe, SUBSCRIBE, [SCRIPTHASH])

        request = server.recv()
        assert request["method"] == SUBSCRIBE
        server.reply(request, "status0")

        assert future.result(timeout=5) == "status0"
        assert engine.peek(SUBSCRIBE, SCRIPTHASH) == "status0"
        assert engine.router.subscribers((SUBSCRIBE, SCRIPTHASH)) == 1

    def test_pushes_update_peek_and_queue(self, server, engine, pool):
        """Test last-write-wins for peek while pop_next sees every push."""
        future = pool.submit(engine.subscribe, SUBSCRIBE, [SCRIPTHASH])
        server.reply(server.recv(), "status0")
        future.result(timeout=5)

        server.notify(SUBSCRIBE, [SCRIPTHASH, "status1"])
        server.notify(SUBSCRIBE, [SCRIPTHASH, "status2"])

        assert engine.pop_next(SUBSCRIBE, SCRIPTHASH, timeout=5) == "status1"
        assert engine.pop_next(SUBSCRIBE, SCRIPTHASH, timeout=5) == "status2"
        assert engine.peek(SUBSCRIBE, SCRIPTHASH) == "status2"

    def test_waiter_started_before_pushes(self, server, engine, pool):
        """Test a consumer already waiting receives pushes in arrival order."""
        engine.router.subscribe((SUBSCRIBE, SCRIPTHASH))
        first = pool.submit(engine.pop_next, SUBSCRIBE, SCRIPTHASH, 5.0)
        time.sleep(0.05)

        server.notify(SUBSCRIBE, [SCRIPTHASH, "a"])
        assert first.result(timeout=5) == "a"

        server.notify(SUBSCRIBE, [SCRIPTHASH, "b"])
        assert engine.pop_next(SUBSCRIBE, SCRIPTHASH, timeout=5) == "b"

    def test_header_notifications(self, server, engine, pool):
        """Test parameterless subscriptions use a None topic key."""
        future = pool.submit(engine.subscribe, "blockchain.headers.subscribe", [])
        server.reply(server.recv(), {"height": 1, "hex": "00"})
        assert future.result(timeout=5) == {"height": 1, "hex": "00"}

        server.notify("blockchain.headers.subscribe", [{"height": 2, "hex": "11"}])

        assert engine.pop_next("blockchain.headers.subscribe", None, timeout=5) == {"height": 2, "hex": "11"}
        assert engine.peek("blockchain.headers.subscribe") == {"height": 2, "hex": "11"}

    def test_failed_subscribe_is_rolled_back(self, server, engine, pool):
        """Test a rejected subscription leaves no subscriber behind."""
        future = pool.submit(engine.subscribe, SUBSCRIBE, ["bad"])
        server.reply_error(server.recv(), 1, "invalid scripthash")

        with pytest.raises(RpcError):
            future.result(timeout=5)
        assert engine.router.subscribers((SUBSCRIBE, "bad")) == 0

    def test_second_subscriber_shares_first_request(self, server, engine, pool):
        """Test a subscriber arriving while the first is pending waits for its reply."""
        first = pool.submit(engine.subscribe, SUBSCRIBE, [SCRIPTHASH])
        request = server.recv()

        second = pool.submit(engine.subscribe, SUBSCRIBE, [SCRIPTHASH])
        assert wait_until(lambda: engine.router.subscribers((SUBSCRIBE, SCRIPTHASH)) == 2)
        assert not second.done()

        server.reply(request, "status0")

        assert first.result(timeout=5) == "status0"
        assert second.result(timeout=5) == "status0"

        # Nothing else was written: the next frame is this ping
        ping = pool.submit(engine.call, "server.ping", [])
        request = server.recv()
        assert request["method"] == "server.ping"
        server.reply(request, None)
        assert ping.result(timeout=5) is None
        assert engine.calls_made == 2

    def test_second_subscriber_sees_first_failure(self, server, engine, pool):
        """Test a waiting subscriber gets the first subscriber's error and is rolled back."""
        first = pool.submit(engine.subscribe, SUBSCRIBE, ["bad"])
        request = server.recv()
        second = pool.submit(engine.subscribe, SUBSCRIBE, ["bad"])
        assert wait_until(lambda: engine.router.subscribers((SUBSCRIBE, "bad")) == 2)

        server.reply_error(request, 1, "invalid scripthash")

        with pytest.raises(RpcError):
            first.result(timeout=5)
        with pytest.raises(RpcError):
            second.result(timeout=5)
        assert engine.router.subscribers((SUBSCRIBE, "bad")) == 0

    def test_push_without_subscriber_is_dropped(self, server, engine, pool):
        """Test pushes for topics nobody subscribed to are not stored."""
        for i in range(1000):
            server.notify(SUBSCRIBE, [SCRIPTHASH, f"status{i}"])
        future = pool.submit(engine.call, "server.ping", [])
        server.reply(server.recv(), None)

        assert future.result(timeout=5) is None
        assert engine.router.topics() == []
        assert engine.peek(SUBSCRIBE, SCRIPTHASH) is None

    def test_unknown_notification_method_dropped(self, server, engine, pool):
        """Test pushes with a non-subscribe method are logged and dropped."""
        server.notify("server.strange", ["x"])
        future = pool.submit(engine.call, "server.ping", [])
        server.reply(server.recv(), None)

        assert future.result(timeout=5) is None
        assert engine.router.topics() == []

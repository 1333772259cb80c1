"""Unit tests for the JSON-RPC transport.

Uses MockRpcTransport to drive the shared BaseRpcTransport logic:
- Connection lifecycle and observer notification
- Request id assignment and response correlation
- Tolerance of stray, duplicate and malformed frames
- Disconnect policy for outstanding calls
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

import pytest

from phkvs_console.protocol.errors import (
    RpcError,
    TransportClosedError,
    TransportError,
    TransportNotConnectedError,
)
from phkvs_console.protocol.messages import RemoteMethod
from phkvs_console.sdk.transport import (
    ClientTransportConfig,
    MockRpcTransport,
    TransportState,
)

# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for connect/disconnect and observer callbacks."""

    def test_initial_state(self) -> None:
        """Transport starts uninitialised with nothing pending."""
        transport = MockRpcTransport()

        assert transport.state == TransportState.UNINIT
        assert transport.is_connected is False
        assert transport.pending_count == 0

    @pytest.mark.anyio
    async def test_connect_notifies_observer(self, observer) -> None:
        """Connect opens the transport and fires on_connect once."""
        transport = MockRpcTransport()

        await transport.connect(observer)

        assert transport.state == TransportState.OPEN
        assert observer.events == ["connect"]
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_connect_failure_reported_not_raised(self, observer) -> None:
        """An open failure fires on_error then on_disconnect."""
        transport = MockRpcTransport()
        transport.connect_error = OSError("Connection refused")

        await transport.connect(observer)

        assert transport.state == TransportState.ERROR
        assert observer.events == ["error", "disconnect"]
        assert str(observer.errors[0]) == "Connection refused"

    @pytest.mark.anyio
    async def test_transport_is_single_use(self, observer) -> None:
        """A second connect on the same instance raises."""
        transport = MockRpcTransport()
        await transport.connect(observer)
        await transport.disconnect()

        with pytest.raises(TransportError, match="already used"):
            await transport.connect(observer)

    @pytest.mark.anyio
    async def test_disconnect_is_idempotent(self, observer) -> None:
        """on_disconnect fires once however often disconnect is called."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        await transport.disconnect()
        await transport.disconnect()

        assert transport.state == TransportState.CLOSED
        assert observer.events == ["connect", "disconnect"]

    @pytest.mark.anyio
    async def test_server_close(self, observer, wait_until) -> None:
        """A clean remote close fires only on_disconnect."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        transport.simulate_close()
        await wait_until(lambda: "disconnect" in observer.events)

        assert transport.state == TransportState.CLOSED
        assert observer.events == ["connect", "disconnect"]

    @pytest.mark.anyio
    async def test_socket_error(self, observer, wait_until) -> None:
        """A socket error fires on_error followed by on_disconnect."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        transport.simulate_error(ConnectionResetError("reset"))
        await wait_until(lambda: "disconnect" in observer.events)

        assert transport.state == TransportState.ERROR
        assert observer.events == ["connect", "error", "disconnect"]
        assert isinstance(observer.errors[0], ConnectionResetError)

    @pytest.mark.anyio
    async def test_connect_without_observer(self) -> None:
        """Observer is optional."""
        transport = MockRpcTransport()
        transport.set_result("lookup", {"type": "string", "value": "v"})

        await transport.connect()

        assert await transport.call("lookup", {"key": "/k"}) == {"type": "string", "value": "v"}
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_failing_observer_does_not_break_transport(self, caplog) -> None:
        """Exceptions from observer callbacks are logged and contained."""

        class BrokenObserver:
            def on_connect(self) -> None:
                raise RuntimeError("observer bug")

            def on_error(self, error: Exception) -> None:
                pass

            def on_disconnect(self) -> None:
                pass

        transport = MockRpcTransport()
        transport.set_result("get_volumes_list", [])

        with caplog.at_level(logging.ERROR, logger="phkvs_console.sdk.transport"):
            await transport.connect(BrokenObserver())

        assert transport.is_connected
        assert "Observer on_connect failed" in caplog.text
        assert await transport.call("get_volumes_list") == []
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_async_context_manager(self) -> None:
        """async with connects and disconnects."""
        async with MockRpcTransport() as transport:
            assert transport.is_connected

        assert transport.state == TransportState.CLOSED


# =============================================================================
# Calls
# =============================================================================


class TestCalls:
    """Tests for request construction and response correlation."""

    @pytest.mark.anyio
    async def test_volumes_list_scenario(self, observer) -> None:
        """connect -> on_connect -> call sends the exact frame and resolves []."""
        transport = MockRpcTransport()
        transport.set_result(RemoteMethod.GET_VOLUMES_LIST, [])

        await transport.connect(observer)
        assert observer.events == ["connect"]

        result = await transport.call("get_volumes_list", {})

        assert result == []
        assert transport.sent_frames == [
            '{"jsonrpc":"2.0","id":"1","method":"get_volumes_list","params":{}}'
        ]
        assert transport.pending_count == 0
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_echo_round_trip(self) -> None:
        """The result payload is returned unchanged."""
        transport = MockRpcTransport()
        transport.set_result("echo", {"x": 1})
        await transport.connect()

        assert await transport.call("echo", {"x": 1}) == {"x": 1}
        assert transport.sent_requests[0]["params"] == {"x": 1}
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_error_response_raises_rpc_error(self) -> None:
        """An error object rejects the call with that message."""
        transport = MockRpcTransport()
        transport.set_error("store", -32000, "out of range")
        await transport.connect()

        with pytest.raises(RpcError, match="out of range") as exc_info:
            await transport.call("store", {"key": "/k", "type": "uint8", "value": "999"})

        assert exc_info.value.code == -32000
        assert transport.pending_count == 0
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_ids_are_monotonic_strings(self) -> None:
        """Each call gets the next id from the counter."""
        transport = MockRpcTransport()
        transport.set_result("lookup", None)
        await transport.connect()

        for _ in range(3):
            await transport.call("lookup", {"key": "/k"})

        assert [r["id"] for r in transport.sent_requests] == ["1", "2", "3"]
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_numeric_request_ids(self) -> None:
        """numeric_request_ids sends integer ids."""
        transport = MockRpcTransport(ClientTransportConfig(numeric_request_ids=True))
        transport.set_result("lookup", None)
        await transport.connect()

        await transport.call("lookup", {"key": "/a"})
        await transport.call("lookup", {"key": "/b"})

        assert [r["id"] for r in transport.sent_requests] == [1, 2]
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_missing_params_sent_as_empty_object(self) -> None:
        """params defaults to {} on the wire."""
        transport = MockRpcTransport()
        transport.set_result("get_volumes_list", [])
        await transport.connect()

        await transport.call("get_volumes_list")

        assert transport.sent_requests[0]["params"] == {}
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_concurrent_calls_never_swap_results(self, wait_until) -> None:
        """Out-of-order replies reach the call with the matching id."""
        transport = MockRpcTransport()
        await transport.connect()

        first = asyncio.create_task(transport.call("lookup", {"key": "/a"}))
        second = asyncio.create_task(transport.call("lookup", {"key": "/b"}))
        await wait_until(lambda: len(transport.sent_frames) == 2)

        ids = {r["params"]["key"]: r["id"] for r in transport.sent_requests}
        transport.inject_frame({"jsonrpc": "2.0", "id": ids["/b"], "result": "B"})
        transport.inject_frame({"jsonrpc": "2.0", "id": ids["/a"], "result": "A"})

        assert await first == "A"
        assert await second == "B"
        assert transport.pending_count == 0
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_error_does_not_leak_to_other_call(self, wait_until) -> None:
        """An error for one id leaves the other outstanding call intact."""
        transport = MockRpcTransport()
        await transport.connect()

        ok = asyncio.create_task(transport.call("lookup", {"key": "/a"}))
        bad = asyncio.create_task(transport.call("lookup", {"key": "/b"}))
        await wait_until(lambda: len(transport.sent_frames) == 2)

        transport.inject_frame(
            {"jsonrpc": "2.0", "id": "2", "error": {"code": -32602, "message": "key"}}
        )
        with pytest.raises(RpcError):
            await bad
        assert not ok.done()

        transport.inject_frame({"jsonrpc": "2.0", "id": "1", "result": 1})
        assert await ok == 1
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_numeric_reply_matches_string_id(self, wait_until) -> None:
        """A server echoing 1 for request id "1" still resolves the call."""
        transport = MockRpcTransport()
        await transport.connect()

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.inject_frame({"jsonrpc": "2.0", "id": 1, "result": "ok"})

        assert await task == "ok"
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_batch_response(self, wait_until) -> None:
        """A JSON array of responses settles each matching call."""
        transport = MockRpcTransport()
        await transport.connect()

        tasks = [
            asyncio.create_task(transport.call("lookup", {"key": key})) for key in ("/a", "/b")
        ]
        await wait_until(lambda: transport.pending_count == 2)
        transport.inject_frame(
            [
                {"jsonrpc": "2.0", "id": "2", "result": "B"},
                {"jsonrpc": "2.0", "id": "1", "result": "A"},
            ]
        )

        assert await asyncio.gather(*tasks) == ["A", "B"]
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_call_before_connect_raises(self) -> None:
        """Calls require an open transport."""
        transport = MockRpcTransport()

        with pytest.raises(TransportNotConnectedError):
            await transport.call("get_volumes_list")

        assert transport.sent_frames == []

    @pytest.mark.anyio
    async def test_call_after_close_raises(self, observer) -> None:
        """Calls on a closed transport fail fast."""
        transport = MockRpcTransport()
        await transport.connect(observer)
        await transport.disconnect()

        with pytest.raises(TransportNotConnectedError):
            await transport.call("get_volumes_list")

    @pytest.mark.anyio
    async def test_send_failure_raises_closed_error(self) -> None:
        """A failing send surfaces as TransportClosedError and frees the entry."""

        class FailingSend(MockRpcTransport):
            async def _do_send(self, frame: str) -> None:
                raise OSError("broken pipe")

        transport = FailingSend()
        await transport.connect()

        with pytest.raises(TransportClosedError, match="broken pipe"):
            await transport.call("lookup", {"key": "/k"})

        assert transport.pending_count == 0
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_cancelled_call_frees_entry(self, wait_until) -> None:
        """Cancelling the awaiting task removes its pending entry."""
        transport = MockRpcTransport()
        await transport.connect()

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        assert transport.pending_count == 0
        # A late reply is ignored
        transport.inject_frame({"jsonrpc": "2.0", "id": "1", "result": "late"})
        await asyncio.sleep(0.01)
        assert transport.is_connected
        await transport.disconnect()


# =============================================================================
# Inbound frame tolerance
# =============================================================================


class TestInboundFrames:
    """Tests for frames that match no outstanding call."""

    @pytest.mark.anyio
    async def test_unknown_id_ignored(self, observer, caplog) -> None:
        """A response for an id never issued is dropped without error."""
        transport = MockRpcTransport()
        transport.set_result("lookup", "fine")
        await transport.connect(observer)

        with caplog.at_level(logging.DEBUG, logger="phkvs_console.sdk.transport"):
            transport.inject_frame({"jsonrpc": "2.0", "id": "42", "result": 1})
            assert await transport.call("lookup", {"key": "/k"}) == "fine"

        assert "unknown request id 42" in caplog.text
        assert transport.is_connected
        assert observer.events == ["connect"]
        await transport.disconnect()

    @pytest.mark.anyio
    async def test_duplicate_response_ignored(self, wait_until) -> None:
        """A second response for a settled id is tolerated."""
        transport = MockRpcTransport()
        await transport.connect()

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.inject_frame({"jsonrpc": "2.0", "id": "1", "result": "first"})
        transport.inject_frame({"jsonrpc": "2.0", "id": "1", "result": "second"})

        assert await task == "first"
        await asyncio.sleep(0.01)
        assert transport.is_connected
        assert transport.pending_count == 0
        await transport.disconnect()

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            b"\xff\xfe",
            "42",
            json.dumps({"jsonrpc": "2.0", "id": "99", "error": {"message": "no code"}}),
            "[" * 100000 + "]" * 100000,
            json.dumps({"jsonrpc": "2.0", "method": "notify", "params": {}}),
            json.dumps({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "x"}}),
        ],
        ids=["text", "bytes", "scalar", "unknown-id-invalid", "deep-nesting", "notification", "null-id-error"],
    )
    async def test_garbage_frames_ignored(self, frame, observer) -> None:
        """Malformed or uncorrelated frames do not disturb the transport."""
        transport = MockRpcTransport()
        transport.set_result("lookup", "still works")
        await transport.connect(observer)

        transport.inject_frame(frame)

        assert await transport.call("lookup", {"key": "/k"}) == "still works"
        assert observer.events == ["connect"]
        await transport.disconnect()

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "reply",
        [
            {"jsonrpc": "2.0", "id": "1", "error": {"message": "out of range"}},
            {"jsonrpc": 2, "id": "1", "result": None},
            {"jsonrpc": "2.0", "id": 1, "error": "bad"},
        ],
    )
    async def test_invalid_reply_rejects_matching_call(self, reply, observer, wait_until) -> None:
        """A reply that fails validation still settles the call it names."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        task = asyncio.create_task(transport.call("store", {"key": "/k", "type": "uint8", "value": "1"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.inject_frame(reply)

        with pytest.raises(RpcError) as exc_info:
            await asyncio.wait_for(task, timeout=1.0)

        assert exc_info.value.code == -32600
        assert exc_info.value.data == reply
        assert transport.pending_count == 0
        assert transport.is_connected
        assert observer.events == ["connect"]
        await transport.disconnect()


# =============================================================================
# Disconnect policy
# =============================================================================


class TestDisconnectPolicy:
    """Tests for calls outstanding when the connection ends."""

    @pytest.mark.anyio
    async def test_outstanding_call_rejected_on_close(self, observer, wait_until) -> None:
        """By default a close rejects in-flight calls."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.simulate_close()

        with pytest.raises(TransportClosedError, match="request 1"):
            await task
        assert observer.events == ["connect", "disconnect"]
        assert transport.pending_count == 0

    @pytest.mark.anyio
    async def test_outstanding_call_rejected_on_error(self, observer, wait_until) -> None:
        """A socket error also rejects in-flight calls."""
        transport = MockRpcTransport()
        await transport.connect(observer)

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.simulate_error()

        with pytest.raises(TransportClosedError):
            await task
        assert observer.events == ["connect", "error", "disconnect"]

    @pytest.mark.anyio
    async def test_client_disconnect_rejects_calls(self, wait_until) -> None:
        """Closing from our side rejects in-flight calls too."""
        transport = MockRpcTransport()
        await transport.connect()

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        await transport.disconnect()

        with pytest.raises(TransportClosedError):
            await task

    @pytest.mark.anyio
    async def test_outstanding_call_never_settles_when_policy_off(
        self, observer, wait_until
    ) -> None:
        """With rejection disabled the call stays pending after close."""
        config = ClientTransportConfig(reject_pending_on_disconnect=False)
        transport = MockRpcTransport(config)
        await transport.connect(observer)

        task = asyncio.create_task(transport.call("lookup", {"key": "/k"}))
        await wait_until(lambda: transport.pending_count == 1)
        transport.simulate_close()
        await wait_until(lambda: "disconnect" in observer.events)
        await asyncio.sleep(0.01)

        assert not task.done()
        assert transport.pending_count == 1

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        assert transport.pending_count == 0

# tests/test_jsonrpc.py
import asyncio
import json
import sys

import pytest

from conftest import ECHO_SERVER
from evidence_runner.jsonrpc import JsonRpcProcessPeer, LineFramer, PendingRequests, encode_message
from evidence_runner.types import MCPProtocolError


# ==================== Framing ====================

def test_framer_splits_and_buffers_partial_lines():
    framer = LineFramer()
    assert framer.feed(b'{"a":1}\n{"b":') == [b'{"a":1}']
    assert framer.pending_bytes == 5
    assert framer.feed(b'2}\n\n{"c":3}\n') == [b'{"b":2}', b"", b'{"c":3}']
    assert framer.pending_bytes == 0


def test_framer_overflow_raises_and_resets():
    framer = LineFramer(max_buffer_bytes=8)
    with pytest.raises(MCPProtocolError, match="exceeds 8 bytes"):
        framer.feed(b"0123456789")
    assert framer.pending_bytes == 0
    assert framer.feed(b"ok\n") == [b"ok"]


def test_encode_message_is_one_line():
    raw = encode_message({"jsonrpc": "2.0", "id": 1, "method": "x", "params": {"text": "a\nb"}})
    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1
    assert json.loads(raw)["params"]["text"] == "a\nb"


# ==================== Correlation ====================

def test_out_of_order_responses_reach_their_callers():
    async def scenario():
        table = PendingRequests()
        first_id, second_id = table.next_id(), table.next_id()
        first = table.register(first_id, "a", timeout_s=5)
        second = table.register(second_id, "b", timeout_s=5)

        assert table.resolve(second_id, "second") is True
        assert table.resolve(first_id, "first") is True
        return await first, await second, len(table)

    assert asyncio.run(scenario()) == ("first", "second", 0)


def test_ids_are_never_reused():
    table = PendingRequests()
    ids = [table.next_id() for _ in range(5)]
    assert ids == sorted(set(ids))


def test_timeout_removes_entry_and_late_response_is_discarded():
    async def scenario():
        table = PendingRequests()
        request_id = table.next_id()
        future = table.register(request_id, "slow", timeout_s=0.05)
        with pytest.raises(MCPProtocolError, match="timeout"):
            await future
        assert request_id not in table
        return table.resolve(request_id, "too late")

    assert asyncio.run(scenario()) is False


def test_duplicate_registration_refused():
    async def scenario():
        table = PendingRequests()
        table.register(1, "a", timeout_s=5)
        with pytest.raises(MCPProtocolError):
            table.register(1, "b", timeout_s=5)
        table.reject_all(lambda rid, method: MCPProtocolError("closed"))

    asyncio.run(scenario())


def test_cancelled_caller_releases_its_slot():
    async def scenario():
        table = PendingRequests()
        future = table.register(table.next_id(), "a", timeout_s=5)
        future.cancel()
        await asyncio.sleep(0)
        return len(table)

    assert asyncio.run(scenario()) == 0


def test_reject_all_counts_and_fails_every_waiter():
    async def scenario():
        table = PendingRequests()
        futures = [table.register(table.next_id(), "m", timeout_s=5) for _ in range(3)]
        count = table.reject_all(lambda rid, method: MCPProtocolError(f"closed {rid}"))
        results = await asyncio.gather(*futures, return_exceptions=True)
        return count, results

    count, results = asyncio.run(scenario())
    assert count == 3
    assert all(isinstance(r, MCPProtocolError) for r in results)


# ==================== Dispatch ====================

def test_dispatch_routes_notifications_to_handlers():
    async def scenario():
        peer = JsonRpcProcessPeer(["unused"])
        seen = []

        async def async_handler(method, params):
            seen.append(("async", method))

        peer.on_notification(lambda method, params: seen.append(("sync", method)))
        peer.on_notification(async_handler)
        await peer.handle_frame(b'{"jsonrpc":"2.0","method":"progress","params":{"p":1}}')
        await peer.handle_frame(b"Server listening on stdio")
        await peer.handle_frame(b'{"jsonrpc":"2.0","id":99,"result":{}}')
        return seen, peer.notifications

    seen, notifications = asyncio.run(scenario())
    assert seen == [("sync", "progress"), ("async", "progress")]
    assert len(notifications) == 1


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        JsonRpcProcessPeer([])


# ==================== Subprocess peer ====================

def _peer(**kwargs):
    return JsonRpcProcessPeer([sys.executable, str(ECHO_SERVER)], name="echo", grace_s=1.0, **kwargs)


def test_peer_round_trip_against_echo_server():
    async def scenario():
        peer = _peer(request_timeout_s=5)
        await peer.start()
        try:
            init = await peer.request("initialize", {"protocolVersion": "2024-11-05"})
            await peer.notify("notifications/initialized")
            echoed = await peer.request("tools/call", {"name": "echo", "arguments": {"x": 1}})
            await asyncio.sleep(0.2)
            return init, echoed, peer.notifications
        finally:
            await peer.close()

    init, echoed, notifications = asyncio.run(scenario())
    assert init["serverInfo"]["name"] == "echo-server"
    assert echoed["echo"] == {"x": 1}
    assert any(n["method"] == "notifications/message" for n in notifications)


def test_peer_concurrent_requests_complete_out_of_order():
    async def scenario():
        peer = _peer(request_timeout_s=5)
        await peer.start()
        order = []

        async def call(tag, seconds):
            result = await peer.request("tools/call", {"name": "delayed", "arguments": {"tag": tag, "seconds": seconds}})
            order.append(result["tag"])
            return result["tag"]

        try:
            results = await asyncio.gather(call("slow", 0.5), call("fast", 0.05))
            return results, order
        finally:
            await peer.close()

    results, order = asyncio.run(scenario())
    assert results == ["slow", "fast"]
    assert order == ["fast", "slow"]


def test_peer_rpc_error_becomes_protocol_error():
    async def scenario():
        peer = _peer(request_timeout_s=5)
        await peer.start()
        try:
            with pytest.raises(MCPProtocolError) as exc:
                await peer.request("tools/call", {"name": "fail"})
            return exc.value
        finally:
            await peer.close()

    error = asyncio.run(scenario())
    assert error.code == -32000
    assert "boom" in str(error)


def test_peer_request_timeout():
    async def scenario():
        peer = _peer(request_timeout_s=0.2)
        await peer.start()
        try:
            with pytest.raises(MCPProtocolError, match="timeout"):
                await peer.request("tools/call", {"name": "never"})
            return len(peer.pending)
        finally:
            await peer.close()

    assert asyncio.run(scenario()) == 0


def test_close_rejects_pending_requests():
    async def scenario():
        peer = _peer(request_timeout_s=10)
        await peer.start()
        pending = asyncio.ensure_future(peer.request("tools/call", {"name": "never"}))
        await asyncio.sleep(0.2)
        await peer.close()
        with pytest.raises(MCPProtocolError, match="connection closed"):
            await pending
        assert not peer.running
        with pytest.raises(MCPProtocolError, match="connection closed"):
            await peer.request("tools/call", {"name": "echo"})

    asyncio.run(scenario())


def test_unwritable_stdin_fails_request_without_leaking_entry():
    async def scenario():
        peer = _peer(request_timeout_s=30)
        await peer.start()
        stdin = peer.process.proc.stdin
        peer.process.proc.stdin = None
        try:
            with pytest.raises(MCPProtocolError, match="connection closed"):
                await asyncio.wait_for(peer.request("tools/call", {"name": "echo"}), timeout=2)
            return len(peer.pending)
        finally:
            peer.process.proc.stdin = stdin
            await peer.close()

    assert asyncio.run(scenario()) == 0

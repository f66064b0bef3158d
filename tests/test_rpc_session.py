"""
Tests for RpcSession: lifecycle, call correlation and notifications.

Covers:
- start/stop transitions and invalid-state errors
- connect retries exhausted -> TransportError, back to STOPPED
- request framing (one JSON line, jsonrpc 2.0)
- out-of-order responses reach the right caller
- timeout leaves no pending entry; late answer discarded; later calls still correlate
- unknown call ids ignored without disturbing other calls
- engine error objects -> EngineError
- cancellation removes the pending entry
- stop() with N in-flight calls resolves all of them with SessionClosedError
- EOF / malformed line / bad response id -> session fails, pending calls get TransportError
- stop() racing a write or a queued writer -> SessionClosedError, nothing left unretrieved
- notifications delivered without blocking; oldest dropped when full
"""
import asyncio
import gc
import json

import pytest

from gateway.errors import (
    CallTimeoutError,
    EngineError,
    InvalidStateError,
    SessionClosedError,
    TransportError,
)
from gateway.rpc_session import RpcSession, SessionState, encode_request

from conftest import free_port, wait_until


class TestEncodeRequest:
    def test_single_line_jsonrpc(self):
        line = encode_request("send", {"message": "hi\nthere"}, 7)
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert json.loads(line) == {
            "jsonrpc": "2.0",
            "method": "send",
            "params": {"message": "hi\nthere"},
            "id": 7,
        }

    def test_params_omitted_when_none(self):
        assert "params" not in json.loads(encode_request("listGroups", None, 1))

    def test_utf8_not_escaped(self):
        line = encode_request("send", {"message": "grüß dich"}, 1)
        assert "grüß".encode("utf-8") in line


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_connects_and_runs(self, engine, make_session, supervisor):
        session = make_session(engine)
        await session.start()
        assert session.state is SessionState.RUNNING
        assert session.is_alive()
        assert supervisor.started() == [session.program]
        await wait_until(lambda: engine.connections == 1)

    async def test_stop_returns_to_stopped(self, engine, make_session, supervisor):
        session = make_session(engine)
        await session.start()
        await session.stop()
        assert session.state is SessionState.STOPPED
        assert not session.is_alive()
        assert supervisor.stopped() == [session.program]

    async def test_start_twice_rejected(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        with pytest.raises(InvalidStateError):
            await session.start()

    async def test_stop_when_stopped_rejected(self, engine, make_session):
        session = make_session(engine)
        with pytest.raises(InvalidStateError):
            await session.stop()

    async def test_restart_after_stop(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        await session.stop()
        await session.start()
        assert await session.call("version") == {"method": "version", "params": None}
        assert engine.connections == 2

    async def test_connect_failure_raises_transport_error(self, tmp_path, supervisor):
        session = RpcSession(
            "+15551234567", 3, free_port(),
            supervisor=supervisor, connect_attempts=2, connect_delay=0.01,
        )
        with pytest.raises(TransportError):
            await session.start()
        assert session.state is SessionState.STOPPED
        assert isinstance(session.last_error, TransportError)

    async def test_supervisor_failure_leaves_session_stopped(self, engine, make_session, supervisor):
        from gateway.errors import SupervisorError
        supervisor.fail_start = True
        session = make_session(engine)
        with pytest.raises(SupervisorError):
            await session.start()
        assert session.state is SessionState.STOPPED
        assert engine.connections == 0

    async def test_call_when_stopped_raises_session_closed(self, engine, make_session):
        session = make_session(engine)
        with pytest.raises(SessionClosedError):
            await session.call("version")


@pytest.mark.asyncio
class TestCallCorrelation:
    async def test_call_returns_result(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        result = await session.call("listGroups", {"account": "+15551234567"})
        assert result == {"method": "listGroups", "params": {"account": "+15551234567"}}
        assert engine.requests[0]["jsonrpc"] == "2.0"
        assert session.pending_calls == 0
        assert session.calls_completed == 1

    async def test_ids_are_unique(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        await asyncio.gather(*(session.call("version") for _ in range(20)))
        ids = [r["id"] for r in engine.requests]
        assert len(set(ids)) == 20

    async def test_out_of_order_responses(self, engine, make_session):
        engine.hold.update({"first", "second"})
        session = make_session(engine)
        await session.start()

        t1 = asyncio.create_task(session.call("first"))
        t2 = asyncio.create_task(session.call("second"))
        first, second = await engine.wait_for_requests(2)

        await engine.respond(second, "two")
        await engine.respond(first, "one")
        assert await t1 == "one"
        assert await t2 == "two"

    async def test_timeout_then_later_call_correlates(self, engine, make_session):
        session = make_session(engine)
        await session.start()

        with pytest.raises(CallTimeoutError) as exc_info:
            await session.call("slow", timeout=0.05)
        assert isinstance(exc_info.value, TimeoutError)
        assert session.pending_calls == 0

        # Late answer for the timed-out call is discarded
        await engine.respond(engine.requests[0], "late")
        result = await session.call("version")
        assert result == {"method": "version", "params": None}
        assert engine.requests[1]["id"] != engine.requests[0]["id"]
        assert session.state is SessionState.RUNNING

    async def test_unknown_id_ignored(self, engine, make_session):
        session = make_session(engine)
        await session.start()

        pending = asyncio.create_task(session.call("slow"))
        (request,) = await engine.wait_for_requests(1)
        await engine.send({"jsonrpc": "2.0", "id": 9999, "result": "stray"})
        await asyncio.sleep(0.05)
        assert not pending.done()
        assert session.pending_calls == 1

        await engine.respond(request, "mine")
        assert await pending == "mine"
        assert session.state is SessionState.RUNNING

    async def test_engine_error(self, engine, make_session):
        engine.handlers["send"] = lambda req: {
            "jsonrpc": "2.0",
            "id": req["id"],
            "error": {"code": -32602, "message": "Invalid recipient", "data": {"number": "x"}},
        }
        session = make_session(engine)
        await session.start()
        with pytest.raises(EngineError) as exc_info:
            await session.call("send", {"recipient": ["x"]})
        assert exc_info.value.code == -32602
        assert exc_info.value.message == "Invalid recipient"
        assert exc_info.value.data == {"number": "x"}
        assert session.state is SessionState.RUNNING

    async def test_string_id_echo_matches(self, engine, make_session):
        engine.handlers["version"] = lambda req: {"jsonrpc": "2.0", "id": str(req["id"]), "result": "0.13"}
        session = make_session(engine)
        await session.start()
        assert await session.call("version") == "0.13"

    async def test_cancellation_removes_pending_entry(self, engine, make_session):
        session = make_session(engine)
        await session.start()

        task = asyncio.create_task(session.call("slow"))
        (request,) = await engine.wait_for_requests(1)
        assert session.pending_calls == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.pending_calls == 0

        await engine.respond(request, "too late")
        assert await session.call("version") == {"method": "version", "params": None}


@pytest.mark.asyncio
class TestStopAndFailure:
    async def test_stop_resolves_all_inflight_calls(self, engine, make_session):
        session = make_session(engine)
        await session.start()

        tasks = [asyncio.create_task(session.call("slow", timeout=30)) for _ in range(10)]
        await engine.wait_for_requests(10)

        await asyncio.wait_for(session.stop(), 2)
        results = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 2)
        assert all(isinstance(r, SessionClosedError) for r in results)
        assert session.pending_calls == 0

    async def test_engine_eof_fails_session(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        pending = asyncio.create_task(session.call("slow"))
        await engine.wait_for_requests(1)

        await engine.drop_connections()
        with pytest.raises(TransportError):
            await pending
        await wait_until(lambda: session.state is SessionState.STOPPED)
        assert isinstance(session.last_error, TransportError)
        with pytest.raises(SessionClosedError):
            await session.call("version")

    async def test_malformed_line_fails_session(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        pending = asyncio.create_task(session.call("slow"))
        await engine.wait_for_requests(1)

        await engine.send(b"this is not json\n")
        with pytest.raises(TransportError, match="malformed"):
            await pending
        assert session.state is SessionState.STOPPED
        assert session.pending_calls == 0

    @pytest.mark.parametrize("bad_id", [{"x": 1}, [1], True, 1.0])
    async def test_bad_response_id_fails_session(self, engine, make_session, bad_id):
        session = make_session(engine)
        await session.start()
        pending = asyncio.create_task(session.call("slow", timeout=5))
        await engine.wait_for_requests(1)

        await engine.send({"jsonrpc": "2.0", "id": bad_id, "result": 1})
        with pytest.raises(TransportError, match="bad id"):
            await asyncio.wait_for(pending, 2)
        assert session.state is SessionState.STOPPED
        assert session.pending_calls == 0
        with pytest.raises(SessionClosedError):
            await session.call("version")

    async def test_stop_during_write_raises_session_closed(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        drain_entered = asyncio.Event()
        release = asyncio.Event()

        async def stuck_drain():
            drain_entered.set()
            await release.wait()
            raise ConnectionResetError("writer closed")

        session._writer.drain = stuck_drain
        call = asyncio.create_task(session.call("version", timeout=5))
        await asyncio.wait_for(drain_entered.wait(), 2)

        await asyncio.wait_for(session.stop(), 2)
        release.set()
        with pytest.raises(SessionClosedError):
            await asyncio.wait_for(call, 2)
        assert session.pending_calls == 0

    async def test_stop_while_waiting_to_write_leaves_no_unretrieved_errors(self, engine, make_session):
        loop = asyncio.get_running_loop()
        contexts = []
        loop.set_exception_handler(lambda _loop, context: contexts.append(context))
        try:
            session = make_session(engine)
            await session.start()
            await session._write_lock.acquire()
            call = asyncio.create_task(session.call("version", timeout=5))
            await wait_until(lambda: session.pending_calls == 1)

            await asyncio.wait_for(session.stop(), 2)
            session._write_lock.release()
            with pytest.raises(SessionClosedError):
                await asyncio.wait_for(call, 2)
            del call
            gc.collect()
        finally:
            loop.set_exception_handler(None)
        assert not [c for c in contexts if "never retrieved" in c.get("message", "")]

    async def test_overlong_line_fails_session(self, engine, make_session):
        session = make_session(engine, line_limit=1024)
        await session.start()
        await engine.notify(params={"blob": "x" * 4096})
        await wait_until(lambda: session.state is SessionState.STOPPED)
        assert isinstance(session.last_error, TransportError)

    async def test_restart_after_failure(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        await engine.send(b"[1, 2]\n")
        await wait_until(lambda: session.state is SessionState.STOPPED)

        await session.start()
        assert await session.call("version") == {"method": "version", "params": None}


@pytest.mark.asyncio
class TestNotifications:
    async def test_notification_delivered(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        await engine.notify("receive", {"envelope": {"source": "+15550000000"}})
        messages = await session.receive(timeout=1)
        assert messages == [
            {"jsonrpc": "2.0", "method": "receive", "params": {"envelope": {"source": "+15550000000"}}}
        ]

    async def test_receive_times_out_empty(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        assert await session.receive(timeout=0.05) == []

    async def test_receive_max_messages(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        for i in range(5):
            await engine.notify(params={"n": i})
        await wait_until(lambda: session.notifications.qsize() == 5)
        first = await session.receive(timeout=1, max_messages=2)
        assert [m["params"]["n"] for m in first] == [0, 1]
        rest = await session.receive(timeout=1)
        assert [m["params"]["n"] for m in rest] == [2, 3, 4]

    async def test_full_queue_drops_oldest_without_blocking_calls(self, engine, make_session):
        session = make_session(engine, notification_buffer=2)
        await session.start()
        for i in range(3):
            await engine.notify(params={"n": i})
        # Nobody consumes notifications, yet calls are still answered
        assert await session.call("version") == {"method": "version", "params": None}
        assert session.dropped_notifications == 1
        messages = await session.receive(timeout=1)
        assert [m["params"]["n"] for m in messages] == [1, 2]

    async def test_notifications_do_not_complete_calls(self, engine, make_session):
        session = make_session(engine)
        await session.start()
        pending = asyncio.create_task(session.call("slow"))
        (request,) = await engine.wait_for_requests(1)
        await engine.notify(params={"n": 1})
        await asyncio.sleep(0.05)
        assert not pending.done()
        await engine.respond(request, {"ok": True})
        assert await pending == {"ok": True}

"""
Shared fixtures for signal-gateway tests.

Tests exercise the gateway without signal-cli or supervisord. FakeEngine is a
line-oriented JSON-RPC peer on a local TCP port standing in for the listener
spliced to signal-cli; FakeSupervisor records supervisorctl commands and
tracks program states.
"""
from __future__ import annotations

import asyncio
import json
import os
import random
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gateway.config import Settings
from gateway.links import SqliteLinkStore
from gateway.registry import AccountRegistry
from gateway.rpc_session import RpcSession


# ── Fake engine ─────────────────────────────────────────────────────────

class FakeEngine:
    """JSON-RPC peer that answers each request line on the same connection.

    By default every request is echoed back as
    {"result": {"method": ..., "params": ...}}. `handlers[method]` may return
    a full response dict, or None to leave the call unanswered. Methods in
    `hold` are never answered.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self.port = port
        self.requests: list[dict] = []
        self.handlers: dict[str, Callable[[dict], Optional[dict]]] = {}
        self.hold: set[str] = {"slow"}
        self.connections = 0
        self._writers: list[asyncio.StreamWriter] = []
        self._server: Optional[asyncio.base_events.Server] = None

    async def start(self) -> "FakeEngine":
        self._server = await asyncio.start_server(self._handle, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.requests.append(request)
                method = request.get("method")
                if method in self.hold:
                    continue
                handler = self.handlers.get(method)
                if handler is not None:
                    response = handler(request)
                else:
                    response = {
                        "jsonrpc": "2.0",
                        "id": request["id"],
                        "result": {"method": method, "params": request.get("params")},
                    }
                if response is not None:
                    await self.send(response, writer)
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            writer.close()

    async def send(self, message: Any, writer: Optional[asyncio.StreamWriter] = None):
        """Write one line (dict -> JSON) to the given or most recent connection."""
        writer = writer or self._writers[-1]
        data = message if isinstance(message, bytes) else (json.dumps(message) + "\n").encode()
        writer.write(data)
        await writer.drain()

    async def notify(self, method: str = "receive", params: Any = None):
        await self.send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def respond(self, request: dict, result: Any = None, error: Optional[dict] = None):
        message = {"jsonrpc": "2.0", "id": request["id"]}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result
        await self.send(message)

    async def drop_connections(self):
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    async def wait_for_requests(self, count: int, timeout: float = 2.0) -> list[dict]:
        await wait_until(lambda: len(self.requests) >= count, timeout)
        return self.requests

    async def close(self):
        if self._server is not None:
            self._server.close()
        await self.drop_connections()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01):
    """Poll `predicate` until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


def free_port() -> int:
    import socket
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def start_engines_on_consecutive_ports(count: int, attempts: int = 30) -> tuple[int, list[FakeEngine]]:
    """Start `count` engines on base, base+1, ... Returns (base, engines)."""
    for _ in range(attempts):
        base = random.randint(20000, 60000)
        engines: list[FakeEngine] = []
        try:
            for offset in range(count):
                engines.append(await FakeEngine(port=base + offset).start())
            return base, engines
        except OSError:
            for engine in engines:
                await engine.close()
    raise RuntimeError(f"no {count} consecutive free ports found")


# ── Fake supervisor ─────────────────────────────────────────────────────

class FakeSupervisor:
    """Records supervisorctl commands; mirrors SupervisorControl's interface."""

    def __init__(self):
        self.commands: list[tuple[str, ...]] = []
        self.states: dict[str, str] = {}
        self.fail_start = False

    def reread(self) -> str:
        self.commands.append(("reread",))
        return ""

    def update(self) -> str:
        self.commands.append(("update",))
        return ""

    def start(self, program: str) -> None:
        from gateway.errors import SupervisorError
        self.commands.append(("start", program))
        if self.fail_start:
            raise SupervisorError(["start", program], f"{program}: ERROR (spawn error)")
        self.states[program] = "RUNNING"

    def stop(self, program: str) -> None:
        self.commands.append(("stop", program))
        self.states[program] = "STOPPED"

    def status(self, program: str) -> str:
        self.commands.append(("status", program))
        return self.states.get(program, "UNKNOWN")

    def started(self) -> list[str]:
        return [c[1] for c in self.commands if c[0] == "start"]

    def stopped(self) -> list[str]:
        return [c[1] for c in self.commands if c[0] == "stop"]


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every path into tmp_path; fast connect retries."""
    return Settings(
        config_dir=tmp_path / "signal-cli",
        host="127.0.0.1",
        base_port=free_port(),
        fifo_base=str(tmp_path / "rendezvous"),
        supervisor_conf_dir=tmp_path / "conf.d",
        log_root=tmp_path / "log",
        run_as_user="tester",
        run_as_uid=os.getuid(),
        run_as_gid=os.getgid(),
        counter_file=tmp_path / "signal-cli-ctr.lock",
        lock_timeout=2.0,
        call_timeout=2.0,
        connect_attempts=3,
        connect_delay=0.01,
        links_db=tmp_path / "links.db",
        device_name="test-device",
        link_timeout=2.0,
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def links(tmp_path) -> SqliteLinkStore:
    return SqliteLinkStore(tmp_path / "links.db")


@pytest.fixture
def registry() -> AccountRegistry:
    return AccountRegistry()


@pytest_asyncio.fixture
async def engine():
    engine = await FakeEngine().start()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def make_session(tmp_path, supervisor):
    """Factory for RpcSessions pointed at a FakeEngine; running ones are stopped on teardown."""
    sessions: list[RpcSession] = []

    def _make(engine: FakeEngine, account: str = "+15551234567", slot: int = 1, **kwargs) -> RpcSession:
        kwargs.setdefault("supervisor", supervisor)
        kwargs.setdefault("connect_attempts", 3)
        kwargs.setdefault("connect_delay", 0.01)
        kwargs.setdefault("call_timeout", 2.0)
        kwargs.setdefault("log_dir", tmp_path / "log" / f"slot{slot}")
        session = RpcSession(account, slot, engine.port, **kwargs)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        if session.is_alive():
            await session.stop()

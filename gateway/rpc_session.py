"""
RpcSession: one account's persistent JSON-RPC connection to its engine.

Each session owns exactly one TCP connection to the slot's rendezvous port.
Requests are written as single JSON lines; a background reader task parses
every inbound line and either completes the pending call with the matching
id or, for lines without an id, pushes the message onto the session's own
notification queue. A slow notification consumer never stalls the reader.

Lifecycle: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED. Transport
failures move the session through FAILED back to STOPPED; the session never
reconnects by itself (supervisord restarts the engine, a caller restarts the
session).
"""
from __future__ import annotations

import asyncio
import enum
import itertools
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from gateway import perf
from gateway.common import program_name
from gateway.errors import (
    CallTimeoutError,
    CorrelationError,
    EngineError,
    GatewayError,
    InvalidStateError,
    NotLoggedInError,
    OwnershipError,
    SessionClosedError,
    TransportError,
)

if TYPE_CHECKING:
    from gateway.config import Settings
    from gateway.links import SubjectLinkStore
    from gateway.supervisor import SupervisorControl

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


def _get_session_logger(name: str, log_dir: Optional[Path]) -> logging.Logger:
    """Per-session logger; gets a rotating file of its own when log_dir is set."""
    from logging.handlers import RotatingFileHandler

    logger = logging.getLogger(f"session.{name}")
    # Clear existing handlers to prevent accumulation on session re-creation
    logger.handlers.clear()
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / f"{name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


class SessionState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class _PendingCall:
    future: asyncio.Future
    method: str
    deadline: Optional[float]


def encode_request(method: str, params: Any, call_id: int) -> bytes:
    """Frame one request. json.dumps escapes control characters, so the line never contains a raw newline."""
    request: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": call_id}
    if params is not None:
        request["params"] = params
    return (json.dumps(request, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class RpcSession:
    """Manages the rendezvous connection and call correlation for one account."""

    def __init__(
        self,
        account: str,
        slot: int,
        port: int,
        *,
        host: str = "127.0.0.1",
        supervisor: Optional["SupervisorControl"] = None,
        program: Optional[str] = None,
        call_timeout: float = 30.0,
        connect_attempts: int = 20,
        connect_delay: float = 0.5,
        notification_buffer: int = 1024,
        line_limit: int = 10 * 1024 * 1024,
        log_dir: Optional[Path] = None,
    ):
        self.account = account
        self.slot = slot
        self.port = port
        self.host = host
        self.supervisor = supervisor
        self.program = program or program_name(slot)
        self.call_timeout = call_timeout
        self.connect_attempts = max(1, connect_attempts)
        self.connect_delay = connect_delay
        self.line_limit = line_limit

        self.state = SessionState.STOPPED
        self.owner: Optional[str] = None
        self.last_error: Optional[BaseException] = None

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending: dict[int, _PendingCall] = {}
        self._ids = itertools.count(1)
        self._notifications: asyncio.Queue[dict] = asyncio.Queue(maxsize=max(0, notification_buffer))

        # Lifecycle transitions, the login claim and socket writes each get their own lock
        self._state_lock = asyncio.Lock()
        self._claim_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

        # Metrics
        self.created_at = datetime.now()
        self.last_activity = datetime.now()
        self.calls_completed = 0
        self.dropped_notifications = 0

        self._log = _get_session_logger(program_name(slot), log_dir)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        account: str,
        slot: int,
        supervisor: Optional["SupervisorControl"] = None,
    ) -> "RpcSession":
        return cls(
            account,
            slot,
            settings.base_port + slot,
            host=settings.host,
            supervisor=supervisor,
            call_timeout=settings.call_timeout,
            connect_attempts=settings.connect_attempts,
            connect_delay=settings.connect_delay,
            notification_buffer=settings.notification_buffer,
            line_limit=settings.line_limit,
            log_dir=settings.log_root / program_name(slot),
        )

    def __repr__(self) -> str:
        return f"RpcSession(account={self.account!r}, slot={self.slot}, state={self.state.value})"

    # ── Lifecycle ──────────────────────────────────────────────

    @property
    def logged_in(self) -> bool:
        return self.owner is not None

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    def is_alive(self) -> bool:
        return (
            self.state is SessionState.RUNNING
            and self._read_task is not None
            and not self._read_task.done()
        )

    def is_healthy(self) -> bool:
        """Alive and, if someone is logged in, actually serving them."""
        if self.logged_in:
            return self.is_alive()
        return self.state is not SessionState.FAILED

    async def start(self) -> None:
        """Start the engine program and connect. Only valid from STOPPED."""
        async with self._state_lock:
            if self.state is not SessionState.STOPPED:
                raise InvalidStateError(f"cannot start session for {self.account} in state {self.state.value}")
            self.state = SessionState.STARTING
            self.last_error = None
            try:
                if self.supervisor is not None:
                    await asyncio.to_thread(self.supervisor.start, self.program)
                reader, writer = await self._connect()
            except GatewayError as e:
                self.state = SessionState.FAILED
                self.last_error = e
                self._log.error(f"START_FAILED | {e}")
                lifecycle_log.info(f"SESSION | START_FAILED | {self.account} | slot={self.slot}")
                self.state = SessionState.STOPPED
                raise

            self._reader, self._writer = reader, writer
            self.state = SessionState.RUNNING
            self.last_activity = datetime.now()
            self._read_task = asyncio.create_task(
                self._read_loop(reader), name=f"rpc-reader-{self.program}"
            )

        self._log.info(f"SESSION_START | port={self.port}")
        lifecycle_log.info(f"SESSION | START | {self.account} | slot={self.slot} port={self.port}")

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Connect to the rendezvous port, retrying while the listener comes up."""
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                return await asyncio.open_connection(self.host, self.port, limit=self.line_limit)
            except OSError as e:
                last_exc = e
                log.debug(f"[{self.account}] connect attempt {attempt}/{self.connect_attempts} to port {self.port}: {e}")
                if attempt < self.connect_attempts:
                    await asyncio.sleep(self.connect_delay)
        raise TransportError(
            f"Couldn't connect to {self.host}:{self.port} after {self.connect_attempts} attempts: {last_exc}",
            account=self.account, slot=self.slot,
        )

    async def stop(self) -> None:
        """Close the connection, fail in-flight calls, stop the engine program.

        Only valid from RUNNING. Every pending call has been resolved with
        SessionClosedError by the time this returns.
        """
        async with self._state_lock:
            if self.state is not SessionState.RUNNING:
                raise InvalidStateError(f"cannot stop session for {self.account} in state {self.state.value}")
            self.state = SessionState.STOPPING

            task, self._read_task = self._read_task, None
            writer, self._writer = self._writer, None
            self._reader = None
            self._fail_pending(SessionClosedError(f"session for {self.account} stopped"))

            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if writer is not None:
                writer.close()

            self.state = SessionState.STOPPED
            self._log.info(f"SESSION_STOP | calls={self.calls_completed}")
            lifecycle_log.info(f"SESSION | STOP | {self.account} | slot={self.slot}")

            if self.supervisor is not None:
                await asyncio.to_thread(self.supervisor.stop, self.program)

    def _fail(self, exc: TransportError) -> None:
        """Transport failure: RUNNING -> FAILED -> STOPPED. Synchronous so no caller observes a half-failed session."""
        if self.state is not SessionState.RUNNING:
            return
        self.state = SessionState.FAILED
        self.last_error = exc
        log.error(f"[{self.account}] session failed: {exc}")
        self._log.error(f"SESSION_FAILED | {exc}")
        lifecycle_log.info(f"SESSION | FAILED | {self.account} | slot={self.slot}")
        perf.error("transport", account=self.account)

        task, self._read_task = self._read_task, None
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._fail_pending(exc)
        self.state = SessionState.STOPPED

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for call in pending.values():
            if not call.future.done():
                call.future.set_exception(exc)
        if pending:
            self._log.info(f"PENDING_FAILED | count={len(pending)} | {type(exc).__name__}")

    # ── Calls ──────────────────────────────────────────────────

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Issue one RPC and wait for its correlated response.

        Raises EngineError for an engine-reported error, CallTimeoutError when
        the deadline passes, SessionClosedError if the session stops first and
        TransportError if the connection breaks. Cancelling the awaiting task
        removes the pending entry; a late answer is then discarded.
        """
        if self.state is not SessionState.RUNNING:
            raise SessionClosedError(f"session for {self.account} is {self.state.value}")

        timeout = self.call_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        call_id = next(self._ids)
        future: asyncio.Future = loop.create_future()
        self._pending[call_id] = _PendingCall(future, method, loop.time() + timeout)
        start = time.perf_counter()
        outcome = "error"

        try:
            line = encode_request(method, params, call_id)
            async with self._write_lock:
                writer = self._writer
                if writer is None or self.state is not SessionState.RUNNING:
                    raise SessionClosedError(f"session for {self.account} is {self.state.value}")
                try:
                    writer.write(line)
                    await writer.drain()
                except (ConnectionError, OSError) as e:
                    # stop() or a read failure closed the writer under us
                    if future.done() and future.exception() is not None:
                        raise future.exception() from e
                    if self.state is SessionState.STOPPING:
                        raise SessionClosedError(f"session for {self.account} stopped") from e
                    exc = TransportError(f"write failed: {e}", account=self.account, slot=self.slot)
                    self._pending.pop(call_id, None)
                    self._fail(exc)
                    raise exc from e
            self._log.info(f"CALL | id={call_id} | {method}")

            try:
                result = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                outcome = "timeout"
                self._log.warning(f"CALL_TIMEOUT | id={call_id} | {method} | {timeout:g}s")
                raise CallTimeoutError(method, timeout) from None
            outcome = "ok"
            self.calls_completed += 1
            self.last_activity = datetime.now()
            return result
        finally:
            self._pending.pop(call_id, None)
            # Mark an exception set by stop() as retrieved when we left before awaiting it
            if future.done() and not future.cancelled():
                future.exception()
            perf.timing(
                "rpc_call_ms",
                (time.perf_counter() - start) * 1000,
                account=self.account,
                method=method,
                outcome=outcome,
            )

    # ── Inbound ────────────────────────────────────────────────

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """Sole reader of the socket. Ends by cancellation or by failing the session."""
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # StreamReader turns a LimitOverrunError into ValueError
                    raise TransportError(f"line exceeds {self.line_limit} bytes: {e}", account=self.account, slot=self.slot) from e
                except (ConnectionError, OSError) as e:
                    raise TransportError(f"connection lost: {e}", account=self.account, slot=self.slot) from e

                if not line:
                    raise TransportError("connection closed by engine", account=self.account, slot=self.slot)
                if not line.endswith(b"\n"):
                    raise TransportError("connection closed mid-line", account=self.account, slot=self.slot)
                if not line.strip():
                    continue
                self._dispatch(line)
        except TransportError as e:
            self._fail(e)
        except Exception as e:
            log.exception(f"[{self.account}] reader crashed")
            self._fail(TransportError(f"reader crashed: {e!r}", account=self.account, slot=self.slot))

    def _dispatch(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except ValueError as e:
            raise TransportError(f"malformed line: {e}", account=self.account, slot=self.slot) from e
        if not isinstance(message, dict):
            raise TransportError("malformed line: expected a JSON object", account=self.account, slot=self.slot)

        self.last_activity = datetime.now()
        call_id = message.get("id")
        if call_id is None:
            self._push_notification(message)
            return
        # bool is an int subclass: true must not complete call 1
        if isinstance(call_id, bool) or not isinstance(call_id, (str, int)):
            raise TransportError(f"malformed line: bad id {call_id!r}", account=self.account, slot=self.slot)

        pending = self._pending.pop(call_id, None)
        if pending is None and isinstance(call_id, str) and call_id.isdigit():
            pending = self._pending.pop(int(call_id), None)
        if pending is None or pending.future.done():
            err = CorrelationError(f"response for unknown call id {call_id!r}")
            log.warning(f"[{self.account}] {err}; discarded")
            self._log.warning(f"UNCORRELATED | id={call_id!r}")
            perf.incr("rpc_uncorrelated", account=self.account)
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                pending.future.set_exception(
                    EngineError(error.get("code"), str(error.get("message", "")), error.get("data"))
                )
            else:
                pending.future.set_exception(EngineError(None, str(error)))
        else:
            pending.future.set_result(message.get("result"))

    def _push_notification(self, message: dict) -> None:
        """Queue without blocking; the oldest notification is dropped when full."""
        try:
            self._notifications.put_nowait(message)
            return
        except asyncio.QueueFull:
            pass
        self._notifications.get_nowait()
        self._notifications.put_nowait(message)
        self.dropped_notifications += 1
        perf.incr("notifications_dropped", account=self.account)
        if self.dropped_notifications == 1 or self.dropped_notifications % 100 == 0:
            log.warning(f"[{self.account}] notification queue full, dropped {self.dropped_notifications} so far")

    @property
    def notifications(self) -> "asyncio.Queue[dict]":
        """The session's notification channel (incoming messages, receipts, ...)."""
        return self._notifications

    async def receive(self, timeout: float = 1.0, max_messages: Optional[int] = None) -> list[dict]:
        """Drain queued notifications, waiting up to `timeout` for the first one."""
        messages: list[dict] = []
        try:
            messages.append(await asyncio.wait_for(self._notifications.get(), timeout))
        except asyncio.TimeoutError:
            return messages
        while not self._notifications.empty():
            if max_messages is not None and len(messages) >= max_messages:
                break
            messages.append(self._notifications.get_nowait())
        return messages

    # ── Subject claim ──────────────────────────────────────────

    async def login(self, subject: str, links: "SubjectLinkStore") -> bool:
        """Claim the session for `subject`, starting it if needed.

        Returns False when `subject` is already logged in on a running
        session, True when this call logged it in.
        """
        async with self._claim_lock:
            owner = links.find_account_owner(self.account)
            if owner is None:
                raise OwnershipError(f"number {self.account} is not linked to any user")
            if owner != subject:
                raise OwnershipError(f"number {self.account} is linked to another user")
            if self.owner is not None and self.owner != subject:
                raise OwnershipError(f"number {self.account} is logged in by another user")
            if self.owner == subject and self.state is SessionState.RUNNING:
                return False

            if self.state is not SessionState.RUNNING:
                await self.start()
            self.owner = subject
            self._log.info("LOGIN")
            lifecycle_log.info(f"SESSION | LOGIN | {self.account}")
            return True

    async def logout(self, subject: str, links: "SubjectLinkStore") -> None:
        """Drop `subject`'s claim and stop the session."""
        async with self._claim_lock:
            if self.owner is None:
                raise NotLoggedInError(self.account)
            if self.owner != subject or links.find_account_owner(self.account) != subject:
                raise OwnershipError(f"number {self.account} does not belong to this user")
            if self.state is SessionState.RUNNING:
                await self.stop()
            self.owner = None
            self._log.info("LOGOUT")
            lifecycle_log.info(f"SESSION | LOGOUT | {self.account}")

    def describe(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "slot": self.slot,
            "port": self.port,
            "program": self.program,
            "state": self.state.value,
            "logged_in": self.logged_in,
            "pending_calls": self.pending_calls,
            "queued_notifications": self._notifications.qsize(),
            "dropped_notifications": self.dropped_notifications,
            "calls_completed": self.calls_completed,
            "last_activity": self.last_activity.isoformat(),
            "last_error": str(self.last_error) if self.last_error else None,
        }

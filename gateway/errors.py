"""
Error taxonomy for the gateway.

Resource and transport failures abort the operation that triggered them and
carry the slot/account they concern. Engine-reported errors are kept apart
from transport errors so callers can tell "the engine said no" from "we could
not talk to the engine".
"""
from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


# ── Provisioning ───────────────────────────────────────────────

class ResourceError(GatewayError):
    """Pipe, log dir, descriptor or slot counter could not be set up."""

    def __init__(self, message: str, *, slot: Optional[int] = None, account: Optional[str] = None):
        self.slot = slot
        self.account = account
        context = []
        if slot is not None:
            context.append(f"slot={slot}")
        if account is not None:
            context.append(f"account={account}")
        suffix = f" ({', '.join(context)})" if context else ""
        super().__init__(f"{message}{suffix}")


class SupervisorError(GatewayError):
    """supervisorctl returned a failure."""

    def __init__(self, command: list[str], output: str):
        self.command = command
        self.output = output
        super().__init__(f"supervisorctl {' '.join(command)} failed: {output.strip()}")


# ── Transport / RPC ────────────────────────────────────────────

class TransportError(GatewayError):
    """Connection refused, reset, closed, or a malformed line was read."""

    def __init__(self, message: str, *, account: Optional[str] = None, slot: Optional[int] = None):
        self.account = account
        self.slot = slot
        super().__init__(f"{message} (account={account}, slot={slot})")


class SessionClosedError(GatewayError):
    """The session left the Running state while a call was in flight."""


class CallTimeoutError(GatewayError, TimeoutError):
    """No response arrived before the caller's deadline."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"{method} timed out after {timeout:g}s")


class EngineError(GatewayError):
    """The engine answered the call with an error object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"engine error {code}: {message}")


class CorrelationError(GatewayError):
    """A response referenced a call id with no pending call. Logged, never raised to callers."""


class InvalidStateError(GatewayError):
    """A lifecycle operation was requested from a state that does not allow it."""


# ── Accounts / ownership ───────────────────────────────────────

class UnknownAccountError(GatewayError):
    """No session is registered for the account."""

    def __init__(self, account: str):
        self.account = account
        super().__init__(f"unknown number {account}")


class AlreadyRegisteredError(GatewayError):
    def __init__(self, account: str):
        self.account = account
        super().__init__(f"number {account} already has a session")


class NotLoggedInError(GatewayError):
    def __init__(self, account: str):
        self.account = account
        super().__init__(f"number {account} is not logged in")


class OwnershipError(GatewayError):
    """A subject tried to use or claim an account it does not own."""


class AlreadyLinkedError(GatewayError):
    """The number is linked already; this_subject tells a benign retry from a conflict."""

    def __init__(self, number: str, this_subject: bool):
        self.number = number
        self.this_subject = this_subject
        to = "to this user" if this_subject else "to another user"
        super().__init__(f"number {number} is already linked {to}")

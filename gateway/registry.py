"""
In-memory registry mapping account -> RpcSession.

Single source of truth for "is this account attached to a live session".
It is an ordinary object handed to whoever needs it, so every test can build
its own.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from gateway.errors import AlreadyRegisteredError, NotLoggedInError, OwnershipError, UnknownAccountError
from gateway.rpc_session import RpcSession

log = logging.getLogger(__name__)


class AccountRegistry:
    """Thread-safe account -> session map. At most one session per account."""

    def __init__(self):
        self._sessions: Dict[str, RpcSession] = {}
        self._lock = threading.Lock()

    def register(self, account: str, session: RpcSession) -> None:
        if not account:
            raise ValueError("account cannot be empty")
        with self._lock:
            if account in self._sessions:
                raise AlreadyRegisteredError(account)
            self._sessions[account] = session
        log.info(f"Registered session for {account} (slot {session.slot})")

    def lookup(self, account: str) -> RpcSession:
        """Session for `account`; UnknownAccountError if it was never linked."""
        with self._lock:
            session = self._sessions.get(account)
        if session is None:
            raise UnknownAccountError(account)
        return session

    def get(self, account: str) -> Optional[RpcSession]:
        with self._lock:
            return self._sessions.get(account)

    def all(self) -> Dict[str, RpcSession]:
        """Snapshot; mutating it does not touch the registry."""
        with self._lock:
            return dict(self._sessions)

    def remove(self, account: str) -> Optional[RpcSession]:
        with self._lock:
            session = self._sessions.pop(account, None)
        if session is not None:
            log.info(f"Removed session for {account}")
        return session

    def __contains__(self, account: str) -> bool:
        with self._lock:
            return account in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def is_logged_in(self, account: str) -> bool:
        return self.lookup(account).logged_in

    def check_access(self, subject: str, account: str) -> RpcSession:
        """Session usable by `subject`.

        UnknownAccountError: never linked. NotLoggedInError: linked but
        logged out. OwnershipError: logged in by someone else.
        """
        session = self.lookup(account)
        owner = session.owner
        if owner is None:
            raise NotLoggedInError(account)
        if owner != subject:
            raise OwnershipError(f"number {account} does not belong to this user")
        return session

"""
Session health: compares each session's own state with what supervisord
reports for its engine program.

A session someone is logged into (and the link session, which must always be
up) is unhealthy unless its connection is alive and supervisord reports the
program RUNNING. Idle sessions are only unhealthy after a failure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from gateway.common import LINK_ACCOUNT
from gateway.errors import SupervisorError
from gateway.registry import AccountRegistry
from gateway.rpc_session import RpcSession
from gateway.supervisor import SupervisorControl

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


@dataclass
class SessionHealth:
    account: str
    slot: int
    state: str
    logged_in: bool
    program_state: str
    last_error: Optional[str] = None
    problems: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.problems


def check_session(account: str, session: RpcSession, supervisor: Optional[SupervisorControl]) -> SessionHealth:
    health = SessionHealth(
        account=account,
        slot=session.slot,
        state=session.state.value,
        logged_in=session.logged_in,
        program_state="UNKNOWN",
        last_error=str(session.last_error) if session.last_error else None,
    )
    if supervisor is not None:
        try:
            health.program_state = supervisor.status(session.program)
        except SupervisorError as e:
            health.problems.append(f"status unavailable: {e}")

    if session.logged_in or account == LINK_ACCOUNT:
        if not session.is_alive():
            health.problems.append(f"session is {session.state.value}")
        if supervisor is not None and health.program_state != "RUNNING":
            health.problems.append(f"program {session.program} is {health.program_state}")
    elif not session.is_healthy():
        health.problems.append(f"session is {session.state.value}")
    return health


def check_sessions(registry: AccountRegistry, supervisor: Optional[SupervisorControl]) -> dict[str, SessionHealth]:
    """Health of every registered session, keyed by account."""
    results = {}
    for account, session in sorted(registry.all().items(), key=lambda kv: kv[1].slot):
        health = check_session(account, session, supervisor)
        if not health.healthy:
            log.warning(f"[{account}] unhealthy: {'; '.join(health.problems)}")
            lifecycle_log.info(f"HEALTH | UNHEALTHY | {account} | slot={health.slot}")
        results[account] = health
    return results

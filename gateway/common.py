"""
Shared constants and helpers used by the provisioning helper, the session layer
and the CLI.
"""
from __future__ import annotations

import enum
import re

# Reserved identifier for the bootstrap account that only pairs new devices.
# It always owns slot 0.
LINK_ACCOUNT = "link"
LINK_SLOT = 0

# Supervisor program naming
PROGRAM_PREFIX = "signal-cli-json-rpc-"
PROGRAM_CONF_TEMPLATE = PROGRAM_PREFIX + "{slot}.conf"

# Account index written by signal-cli inside each config dir
ACCOUNTS_INDEX = "data/accounts.json"

_PHONE_RE = re.compile(r"^\+[1-9]\d{5,14}$")


class EngineMode(str, enum.Enum):
    """How the engine process for a slot is launched."""

    ACCOUNT = "account"  # full account: identity + credential store
    LINK = "link"        # link-only: manual receive, no identity


def is_phone_number(value: str) -> bool:
    """Check for a canonical E.164 number (leading + and 6-15 digits)."""
    return bool(_PHONE_RE.match(value or ""))


def normalize_number(number: str) -> str:
    """Strip formatting from a phone number, keeping the leading +.

    Numbers without a leading + are returned unchanged apart from whitespace;
    the engine only accepts canonical numbers, so callers validate afterwards.
    """
    stripped = number.strip()
    if stripped.startswith("+"):
        return "+" + re.sub(r"\D", "", stripped[1:])
    return stripped


def program_name(slot: int) -> str:
    return f"{PROGRAM_PREFIX}{slot}"


def slot_from_program(name: str) -> int | None:
    """Inverse of program_name(); None for foreign programs."""
    if not name.startswith(PROGRAM_PREFIX):
        return None
    suffix = name[len(PROGRAM_PREFIX):]
    return int(suffix) if suffix.isdigit() else None


def mode_for(account: str) -> EngineMode:
    return EngineMode.LINK if account == LINK_ACCOUNT else EngineMode.ACCOUNT

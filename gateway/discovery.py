"""
Startup discovery of previously linked accounts, and the account manifest.

Two on-disk layouts are recognised under the engine config dir:

- per-slot credential stores, `<config_dir>/<slot>/data/accounts.json`,
  which is what device linking produces; the directory name is the slot;
- the shared store, `<config_dir>/data/`, where the store's own
  accounts.json lists accounts and, in older layouts, a file named like a
  phone number or an extension-less JSON file with a `username` is one
  account. These accounts get fresh slots after the highest per-slot
  directory.

The manifest (`jsonrpc2.yml`) records the resulting account -> slot/port/pipe
layout so the provisioning helper can hand it to the API process.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from gateway.common import ACCOUNTS_INDEX, LINK_ACCOUNT, LINK_SLOT, is_phone_number
from gateway.errors import ResourceError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredAccount:
    number: str
    slot: int
    config_dir: Path


def _numbers_from_index(index: Path) -> list[str]:
    """Account numbers listed in a signal-cli accounts.json."""
    try:
        data = json.loads(index.read_text())
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        log.warning(f"Skipping unreadable account index {index}: {e}")
        return []
    accounts = data.get("accounts", []) if isinstance(data, dict) else []
    return [
        a["number"] for a in accounts
        if isinstance(a, dict) and is_phone_number(a.get("number", ""))
    ]


def _legacy_number(path: Path) -> Optional[str]:
    """Number held by one file of the legacy shared data dir, if it is an account file."""
    if path.suffix:
        return None
    if is_phone_number(path.name):
        return path.name
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        log.debug(f"Skipping {path.name}: not a signal-cli account file")
        return None
    username = data.get("username") if isinstance(data, dict) else None
    if isinstance(username, str) and is_phone_number(username):
        return username
    log.debug(f"Skipping {path.name}: no valid username")
    return None


def discover_accounts(config_dir: Path) -> list[DiscoveredAccount]:
    """Every linked account under `config_dir`, ordered by slot."""
    config_dir = Path(config_dir)
    if not config_dir.is_dir():
        log.info(f"No engine config dir at {config_dir}, nothing to discover")
        return []

    found: list[DiscoveredAccount] = []
    seen: set[str] = set()

    slot_dirs = sorted(
        (p for p in config_dir.iterdir() if p.is_dir() and p.name.isdigit()),
        key=lambda p: int(p.name),
    )
    for slot_dir in slot_dirs:
        slot = int(slot_dir.name)
        if slot == LINK_SLOT:
            log.warning(f"Ignoring {slot_dir}: slot {LINK_SLOT} is reserved for the link account")
            continue
        numbers = _numbers_from_index(slot_dir / ACCOUNTS_INDEX)
        if not numbers:
            log.debug(f"Skipping {slot_dir}: no linked account")
            continue
        if len(numbers) > 1:
            log.warning(f"{slot_dir} lists {len(numbers)} accounts, using {numbers[0]}")
        number = numbers[0]
        if number in seen:
            log.warning(f"Skipping duplicate account {number} in {slot_dir}")
            continue
        seen.add(number)
        found.append(DiscoveredAccount(number, slot, slot_dir))
        log.info(f"Found number {number} in slot {slot}")

    legacy_dir = config_dir / "data"
    if legacy_dir.is_dir():
        next_slot = max((a.slot for a in found), default=LINK_SLOT) + 1
        shared = _numbers_from_index(config_dir / ACCOUNTS_INDEX)
        shared += [
            n for n in (_legacy_number(item) for item in sorted(legacy_dir.iterdir()) if item.is_file())
            if n is not None
        ]
        for number in shared:
            if number in seen:
                continue
            seen.add(number)
            found.append(DiscoveredAccount(number, next_slot, config_dir))
            log.info(f"Found number {number} in shared store, assigned slot {next_slot}")
            next_slot += 1

    return found


# ── Manifest ───────────────────────────────────────────────────

class ManifestEntry(BaseModel):
    slot: int
    tcp_port: int
    fifo_pathname: str


class AccountManifest(BaseModel):
    """account -> rendezvous layout, persisted as YAML."""

    config: Dict[str, ManifestEntry] = Field(default_factory=dict)

    def add(self, account: str, slot: int, tcp_port: int, fifo_pathname: str) -> None:
        self.config[account] = ManifestEntry(slot=slot, tcp_port=tcp_port, fifo_pathname=fifo_pathname)

    def remove(self, account: str) -> None:
        self.config.pop(account, None)

    def accounts(self) -> list[str]:
        return [a for a in self.config if a != LINK_ACCOUNT]

    def max_slot(self) -> int:
        return max((e.slot for e in self.config.values()), default=LINK_SLOT)

    @classmethod
    def load(cls, path: Path) -> "AccountManifest":
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            return cls.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise ResourceError(f"Couldn't load account manifest {path}: {e}") from e

    def persist(self, path: Path) -> None:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(yaml.safe_dump(self.model_dump(), sort_keys=True))
            tmp_path.rename(path)
        except OSError as e:
            raise ResourceError(f"Couldn't persist account manifest {path}: {e}") from e
        log.info(f"Wrote {len(self.config)} accounts to {path}")

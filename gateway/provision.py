"""
Per-slot resource provisioning.

A slot id deterministically fixes the account's rendezvous port, named pipe,
log directory and supervisor descriptor, so slot uniqueness is all the
collision avoidance needed. Provisioning is plain local file-system work and
is not transactional: a crash part way through is recovered by provisioning
the same slot again.
"""
from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gateway.common import LINK_ACCOUNT, PROGRAM_CONF_TEMPLATE, EngineMode, mode_for, program_name
from gateway.config import Settings
from gateway.errors import ResourceError
from gateway.supervisor import ProgramDescriptor

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotResources:
    """Derived, slot-scoped resource names. Pure data, nothing is created."""

    slot: int
    port: int
    fifo: str
    program: str
    log_dir: Path
    descriptor_path: Path
    account_config_dir: Path


class ResourceProvisioner:
    """Creates the pipe, log dir and supervisor descriptor for a slot."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def slot_resources(self, slot: int) -> SlotResources:
        if slot < 0:
            raise ValueError(f"slot must be non-negative (got {slot})")
        program = program_name(slot)
        return SlotResources(
            slot=slot,
            port=self.settings.base_port + slot,
            fifo=f"{self.settings.fifo_base}{slot}",
            program=program,
            log_dir=self.settings.log_root / program,
            descriptor_path=self.settings.supervisor_conf_dir / PROGRAM_CONF_TEMPLATE.format(slot=slot),
            account_config_dir=self.settings.config_dir / str(slot),
        )

    def descriptor(
        self,
        slot: int,
        account: str,
        mode: Optional[EngineMode] = None,
        account_config_dir: Optional[Path] = None,
    ) -> ProgramDescriptor:
        res = self.slot_resources(slot)
        mode = mode or mode_for(account)
        config_dir = account_config_dir or res.account_config_dir
        return ProgramDescriptor(
            program=res.program,
            port=res.port,
            fifo=res.fifo,
            log_dir=res.log_dir,
            mode=mode,
            account=None if mode is EngineMode.LINK else account,
            account_config_dir=None if mode is EngineMode.LINK else config_dir,
            engine=self.settings.engine_command,
            listener=self.settings.listener_command,
            java_home=self.settings.java_home,
            user=self.settings.run_as_user,
            start_retries=self.settings.start_retries,
        )

    def provision(
        self,
        slot: int,
        account: str,
        mode: Optional[EngineMode] = None,
        account_config_dir: Optional[Path] = None,
    ) -> tuple[int, str]:
        """Create every resource for `slot` and write its descriptor.

        Returns (port, fifo path). Each failing step raises ResourceError;
        re-running for the same slot is idempotent. `account_config_dir`
        overrides the per-slot credential store for accounts found in the
        legacy shared layout.
        """
        res = self.slot_resources(slot)
        descriptor = self.descriptor(slot, account, mode, account_config_dir)

        self._remove_stale_fifo(res, account)

        try:
            os.mkfifo(res.fifo, 0o660)
        except OSError as e:
            raise ResourceError(f"Couldn't create fifo with name {res.fifo}: {e}", slot=slot, account=account) from e

        try:
            os.chown(res.fifo, self.settings.run_as_uid, self.settings.run_as_gid)
        except OSError as e:
            raise ResourceError(
                f"Couldn't change ownership of fifo {res.fifo} to "
                f"{self.settings.run_as_uid}:{self.settings.run_as_gid}: {e}",
                slot=slot, account=account,
            ) from e

        try:
            res.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Couldn't create log folder {res.log_dir}: {e}", slot=slot, account=account) from e

        try:
            content = descriptor.render()
        except ValueError as e:
            raise ResourceError(str(e), slot=slot, account=account) from e

        try:
            res.descriptor_path.parent.mkdir(parents=True, exist_ok=True)
            res.descriptor_path.write_text(content)
            os.chmod(res.descriptor_path, 0o644)
        except OSError as e:
            raise ResourceError(f"Couldn't write {res.descriptor_path}: {e}", slot=slot, account=account) from e

        shown = "link account" if account == LINK_ACCOUNT else account
        log.info(f"Provisioned slot {slot} for {shown} (port {res.port}, fifo {res.fifo})")
        return res.port, res.fifo

    def deprovision(self, slot: int) -> None:
        """Remove the pipe and descriptor of a slot. The slot id is not reused."""
        res = self.slot_resources(slot)
        for path in (Path(res.fifo), res.descriptor_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise ResourceError(f"Couldn't remove {path}: {e}", slot=slot) from e
        log.info(f"Deprovisioned slot {slot}")

    @staticmethod
    def _remove_stale_fifo(res: SlotResources, account: str) -> None:
        path = Path(res.fifo)
        try:
            mode = path.lstat().st_mode
        except FileNotFoundError:
            return
        except OSError as e:
            raise ResourceError(f"Couldn't inspect {path}: {e}", slot=res.slot, account=account) from e
        if stat.S_ISDIR(mode):
            raise ResourceError(f"{path} is a directory, refusing to replace it", slot=res.slot, account=account)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ResourceError(f"Couldn't remove stale fifo {path}: {e}", slot=res.slot, account=account) from e
        log.debug(f"Removed stale fifo {path}")

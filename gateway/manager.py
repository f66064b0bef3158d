"""
Account manager: ties slots, provisioning, supervisord, sessions and the
subject link store together.

- bootstrap: re-provisions every discovered account and starts the link session
- device linking: startLink / finishLink on the link session, then a fresh slot
- login / logout / access checks on behalf of an authenticated subject
- unlink and shutdown
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from gateway import perf
from gateway.common import LINK_ACCOUNT, LINK_SLOT, EngineMode, is_phone_number
from gateway.config import Settings
from gateway.discovery import AccountManifest, discover_accounts
from gateway.errors import AlreadyLinkedError, EngineError, GatewayError
from gateway.links import SqliteLinkStore
from gateway.provision import ResourceProvisioner
from gateway.registry import AccountRegistry
from gateway.rpc_session import RpcSession, SessionState
from gateway.slots import SlotAllocator
from gateway.supervisor import SupervisorControl

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


def setup_logging(level: int = logging.INFO, lifecycle_file: Optional[Path] = None) -> None:
    """Console logging plus an optional rotating lifecycle log."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    if lifecycle_file is not None:
        lifecycle_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(lifecycle_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
        lifecycle_log.addHandler(handler)
    lifecycle_log.setLevel(logging.INFO)


class AccountManager:
    """Owns every account session of one gateway process."""

    def __init__(
        self,
        settings: Settings,
        registry: AccountRegistry,
        links: SqliteLinkStore,
        allocator: SlotAllocator,
        provisioner: ResourceProvisioner,
        supervisor: SupervisorControl,
    ):
        self.settings = settings
        self.registry = registry
        self.links = links
        self.allocator = allocator
        self.provisioner = provisioner
        self.supervisor = supervisor

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccountManager":
        return cls(
            settings,
            AccountRegistry(),
            SqliteLinkStore(settings.links_db),
            SlotAllocator(settings.counter_file, settings.lock_timeout),
            ResourceProvisioner(settings),
            SupervisorControl(settings.supervisorctl, settings.supervisor_config),
        )

    def _new_session(self, account: str, slot: int) -> RpcSession:
        return RpcSession.from_settings(self.settings, account, slot, supervisor=self.supervisor)

    # ── Bootstrap ──────────────────────────────────────────────

    def provision_all(self) -> AccountManifest:
        """Provision the link slot and every discovered account, then reload supervisord.

        This is the synchronous half of bootstrap; the provisioning helper
        runs it as a separate short-lived process.
        """
        manifest = AccountManifest()

        port, fifo = self.provisioner.provision(LINK_SLOT, LINK_ACCOUNT, EngineMode.LINK)
        manifest.add(LINK_ACCOUNT, LINK_SLOT, port, fifo)

        for account in discover_accounts(self.settings.config_dir):
            with perf.timed("provision_ms", slot=account.slot):
                port, fifo = self.provisioner.provision(
                    account.slot, account.number, EngineMode.ACCOUNT, account_config_dir=account.config_dir
                )
            manifest.add(account.number, account.slot, port, fifo)

        # Never move the counter backwards: a slot that was allocated but
        # never linked must not be handed out again.
        highest = max(manifest.max_slot(), self.allocator.current())
        self.allocator.initialize(highest)

        manifest.persist(self.settings.manifest_path)
        self.supervisor.reread()
        self.supervisor.update()
        lifecycle_log.info(f"BOOTSTRAP | PROVISIONED | accounts={len(manifest.accounts())} counter={highest}")
        return manifest

    async def bootstrap(self) -> AccountManifest:
        """Provision everything, start the link session and register sessions for owned accounts."""
        manifest = await asyncio.to_thread(self.provision_all)

        link_session = self._new_session(LINK_ACCOUNT, LINK_SLOT)
        self.registry.register(LINK_ACCOUNT, link_session)
        await link_session.start()

        for number in manifest.accounts():
            entry = manifest.config[number]
            owner = self.links.find_account_owner(number)
            if owner is None:
                log.warning(f"Number {number} (slot {entry.slot}) has no owning user, not registering a session")
                continue
            self.registry.register(number, self._new_session(number, entry.slot))

        perf.gauge("registered_sessions", len(self.registry))
        lifecycle_log.info(f"BOOTSTRAP | DONE | sessions={len(self.registry)}")
        return manifest

    # ── Device linking ─────────────────────────────────────────

    async def start_link(self, timeout: Optional[float] = None) -> str:
        """Ask the link engine for a fresh device link URI."""
        result = await self.registry.lookup(LINK_ACCOUNT).call("startLink", timeout=timeout)
        uri = result.get("deviceLinkUri") if isinstance(result, dict) else result
        if not isinstance(uri, str) or not uri:
            raise EngineError(None, "startLink returned no device link URI", result)
        log.info("Start link response received")
        return uri

    async def finish_link(
        self,
        subject: str,
        device_link_uri: str,
        timeout: Optional[float] = None,
    ) -> tuple[str, int]:
        """Complete device linking for `subject`. Returns (number, slot).

        The link is recorded with a single atomic insert; if the number is
        already linked the fresh credential store is removed again and
        AlreadyLinkedError propagates.
        """
        link_session = self.registry.lookup(LINK_ACCOUNT)
        slot = await asyncio.to_thread(self.allocator.allocate_next)
        config_dir = self.settings.config_dir / str(slot)

        request = {
            "deviceLinkUri": device_link_uri,
            "deviceName": self.settings.device_name,
            "configDir": str(config_dir),
        }
        log.info(f"Finish link request for slot {slot}")
        result = await link_session.call(
            "finishLink", request, timeout=self.settings.link_timeout if timeout is None else timeout
        )
        number = result.get("number") if isinstance(result, dict) else None
        if not isinstance(number, str) or not is_phone_number(number):
            raise EngineError(None, "finishLink returned no valid number", result)

        try:
            self.links.link_account(subject, number, slot)
        except AlreadyLinkedError:
            shutil.rmtree(config_dir, ignore_errors=True)
            raise

        port, fifo = await asyncio.to_thread(self.provisioner.provision, slot, number, EngineMode.ACCOUNT)
        await asyncio.to_thread(self.supervisor.reread)
        await asyncio.to_thread(self.supervisor.update)

        manifest = AccountManifest.load(self.settings.manifest_path)
        manifest.add(number, slot, port, fifo)
        manifest.persist(self.settings.manifest_path)

        self.registry.register(number, self._new_session(number, slot))
        lifecycle_log.info(f"LINK | FINISHED | {number} | slot={slot}")
        return number, slot

    # ── Subject operations ─────────────────────────────────────

    async def login(self, subject: str, number: str) -> bool:
        """Claim `number` for `subject`. False if it was already logged in by them."""
        return await self.registry.lookup(number).login(subject, self.links)

    async def logout(self, subject: str, number: str) -> None:
        await self.registry.lookup(number).logout(subject, self.links)

    def check_access(self, subject: str, number: str) -> None:
        self.registry.check_access(subject, number)

    def session_for(self, subject: str, number: str) -> RpcSession:
        return self.registry.check_access(subject, number)

    def list_accounts(self, subject: str) -> list[str]:
        return self.links.list_accounts(subject)

    async def call(
        self,
        subject: str,
        number: str,
        method: str,
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self.session_for(subject, number).call(method, params, timeout)

    async def receive(
        self,
        subject: str,
        number: str,
        timeout: float = 1.0,
        max_messages: Optional[int] = None,
    ) -> list[dict]:
        return await self.session_for(subject, number).receive(timeout, max_messages)

    async def unlink(self, subject: str, number: str) -> None:
        """Remove `subject`'s link to `number` and tear down its slot."""
        self.links.check_owner(subject, number)
        session = self.registry.get(number)
        if session is not None and session.state is SessionState.RUNNING:
            await session.stop()

        slot = session.slot if session is not None else self.links.slot_for(number)
        self.links.unlink_account(subject, number)
        self.registry.remove(number)

        if slot is not None:
            await asyncio.to_thread(self.provisioner.deprovision, slot)
            await asyncio.to_thread(self.supervisor.reread)
            await asyncio.to_thread(self.supervisor.update)
            shutil.rmtree(self.settings.config_dir / str(slot), ignore_errors=True)

        manifest = AccountManifest.load(self.settings.manifest_path)
        manifest.remove(number)
        manifest.persist(self.settings.manifest_path)
        lifecycle_log.info(f"LINK | REMOVED | {number} | slot={slot}")

    # ── Status / shutdown ──────────────────────────────────────

    def status(self) -> list[dict[str, Any]]:
        return [s.describe() for s in sorted(self.registry.all().values(), key=lambda s: s.slot)]

    async def shutdown(self) -> None:
        """Stop every running session. Failures are logged so the rest still stop."""
        for account, session in self.registry.all().items():
            if session.state is not SessionState.RUNNING:
                continue
            try:
                await session.stop()
            except GatewayError as e:
                log.error(f"Failed to stop session for {account}: {e}")
        lifecycle_log.info("SHUTDOWN | DONE")

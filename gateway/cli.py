#!/usr/bin/env python3
"""CLI for the signal gateway: provisioning helper and operator commands."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from gateway import perf
from gateway.common import LINK_ACCOUNT, LINK_SLOT, normalize_number, program_name
from gateway.config import LOCAL_CONFIG_FILE, load_settings
from gateway.discovery import AccountManifest
from gateway.errors import GatewayError
from gateway.manager import AccountManager, setup_logging
from gateway.provision import ResourceProvisioner
from gateway.rpc_session import RpcSession, SessionState
from gateway.slots import SlotAllocator
from gateway.supervisor import SupervisorControl


def cmd_bootstrap(args, settings):
    """Provision the link slot and every discovered account, write the manifest."""
    manifest = AccountManager.from_settings(settings).provision_all()
    print(f"Wrote {settings.manifest_path}")
    for account, entry in sorted(manifest.config.items(), key=lambda kv: kv[1].slot):
        print(f"  {entry.slot:4d}  {account:20s} port {entry.tcp_port}  fifo {entry.fifo_pathname}")
    return 0


def cmd_next_slot(args, settings):
    """Allocate the next slot id and print it."""
    print(SlotAllocator(settings.counter_file, settings.lock_timeout).allocate_next())
    return 0


def cmd_provision(args, settings):
    """Provision one slot for an account (or the link account)."""
    account = args.account if args.account == LINK_ACCOUNT else normalize_number(args.account)
    if account == LINK_ACCOUNT and args.slot != LINK_SLOT:
        print(f"Error: the link account must use slot {LINK_SLOT}", file=sys.stderr)
        return 1
    port, fifo = ResourceProvisioner(settings).provision(args.slot, account)
    print(f"Provisioned slot {args.slot}: port {port}, fifo {fifo}")
    if args.reread:
        supervisor = SupervisorControl(settings.supervisorctl, settings.supervisor_config)
        supervisor.reread()
        supervisor.update()
    return 0


def cmd_status(args, settings):
    """Show every manifest account with its supervisord program state."""
    manifest = AccountManifest.load(settings.manifest_path)
    if not manifest.config:
        print(f"No accounts in {settings.manifest_path}")
        return 1
    supervisor = SupervisorControl(settings.supervisorctl, settings.supervisor_config)
    failed = False
    for account, entry in sorted(manifest.config.items(), key=lambda kv: kv[1].slot):
        program = program_name(entry.slot)
        try:
            state = supervisor.status(program)
        except GatewayError as e:
            state = f"? ({e})"
            failed = True
        print(f"  {entry.slot:4d}  {account:20s} {program:28s} {state}")
    return 1 if failed else 0


async def _call_once(settings, account: str, method: str, params, timeout):
    manifest = AccountManifest.load(settings.manifest_path)
    entry = manifest.config.get(account)
    if entry is None:
        raise GatewayError(f"unknown number {account} (not in {settings.manifest_path})")
    session = RpcSession(
        account,
        entry.slot,
        entry.tcp_port,
        host=settings.host,
        call_timeout=settings.call_timeout,
        connect_attempts=settings.connect_attempts,
        connect_delay=settings.connect_delay,
        line_limit=settings.line_limit,
    )
    await session.start()
    try:
        return await session.call(method, params, timeout)
    finally:
        # a failed session is already stopped; keep its TransportError
        if session.state is SessionState.RUNNING:
            await session.stop()


def cmd_call(args, settings):
    """Issue one RPC against an already running engine and print the result."""
    try:
        params = json.loads(args.params) if args.params else None
    except ValueError as e:
        print(f"Error: PARAMS_JSON is not valid JSON: {e}", file=sys.stderr)
        return 1
    account = args.account if args.account == LINK_ACCOUNT else normalize_number(args.account)
    result = asyncio.run(_call_once(settings, account, args.method, params, args.timeout))
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="signal-gateway",
        description="Provision and inspect per-account signal-cli JSON-RPC engines",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # bootstrap
    subparsers.add_parser("bootstrap", help="Provision all known accounts and write the manifest")

    # next-slot
    subparsers.add_parser("next-slot", help="Allocate and print the next slot id")

    # provision
    provision_parser = subparsers.add_parser("provision", help="Provision one slot")
    provision_parser.add_argument("slot", type=int, help="Slot id")
    provision_parser.add_argument("account", help=f"Phone number, or '{LINK_ACCOUNT}' for the link account")
    provision_parser.add_argument("--reread", action="store_true", help="Run supervisorctl reread/update afterwards")

    # status
    subparsers.add_parser("status", help="Show provisioned accounts and program states")

    # call
    call_parser = subparsers.add_parser("call", help="Issue one JSON-RPC call to an account's engine")
    call_parser.add_argument("account", help="Phone number or 'link'")
    call_parser.add_argument("method", help="JSON-RPC method, e.g. listGroups")
    call_parser.add_argument("params", nargs="?", help="Params as a JSON object")
    call_parser.add_argument("--timeout", type=float, default=None, help="Call timeout in seconds")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = load_settings()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, settings.lifecycle_log)
    perf.configure(settings.perf_dir)
    logging.getLogger(__name__).debug(f"Using config {LOCAL_CONFIG_FILE}")

    commands = {
        "bootstrap": cmd_bootstrap,
        "next-slot": cmd_next_slot,
        "provision": cmd_provision,
        "status": cmd_status,
        "call": cmd_call,
    }

    try:
        return commands[args.command](args, settings)
    except GatewayError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
supervisord glue: program descriptors and the supervisorctl control client.

Each slot runs one program. The program is a listener bound to the slot's
port whose stdin/stdout are spliced through the slot's named pipe into a
signal-cli engine running in JSON-RPC mode:

    nc -l -p PORT <FIFO | signal-cli ... jsonRpc >FIFO

supervisord owns the process lifecycle, including auto-restart. The gateway
only writes descriptors and issues reread/update/start/stop.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gateway.common import EngineMode
from gateway.errors import SupervisorError

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

DESCRIPTOR_TEMPLATE = """\
[program:{program}]
environment=JAVA_HOME={java_home}
process_name={program}
command=bash -c "{listener} -l -p {port} <{fifo} | {engine} -vvv --output=json {account_args}jsonRpc {rpc_args}>{fifo}"
autostart={autostart}
autorestart=true
startretries={start_retries}
user={user}
directory=/usr/bin/
redirect_stderr=true
stdout_logfile={log_dir}/out.log
stderr_logfile={log_dir}/err.log
stdout_logfile_maxbytes=50MB
stdout_logfile_backups=10
numprocs=1
"""


@dataclass(frozen=True)
class ProgramDescriptor:
    """Everything needed to render one slot's supervisor program."""

    program: str
    port: int
    fifo: str
    log_dir: Path
    mode: EngineMode
    account: Optional[str] = None
    account_config_dir: Optional[Path] = None
    engine: str = "signal-cli"
    listener: str = "nc"
    java_home: str = "/opt/java/openjdk"
    user: str = "root"
    start_retries: int = 10

    @property
    def autostart(self) -> bool:
        # The link program must be up before any account exists; account
        # programs are started on login.
        return self.mode is EngineMode.LINK

    def engine_args(self) -> tuple[str, str]:
        """(account args placed before jsonRpc, jsonRpc args)."""
        if self.mode is EngineMode.LINK:
            return "", "--receive-mode=manual "
        if not self.account or self.account_config_dir is None:
            raise ValueError(f"{self.program}: account mode needs an account and a config dir")
        return f"-a {shlex.quote(self.account)} --config {shlex.quote(str(self.account_config_dir))} ", ""

    def render(self) -> str:
        account_args, rpc_args = self.engine_args()
        return DESCRIPTOR_TEMPLATE.format(
            program=self.program,
            java_home=self.java_home,
            listener=self.listener,
            port=self.port,
            fifo=self.fifo,
            engine=self.engine,
            account_args=account_args,
            rpc_args=rpc_args,
            autostart="true" if self.autostart else "false",
            start_retries=self.start_retries,
            user=self.user,
            log_dir=self.log_dir,
        )


class SupervisorControl:
    """Thin adapter over supervisorctl.

    Every command is synchronous; async callers wrap calls in
    asyncio.to_thread().
    """

    def __init__(self, supervisorctl: str = "supervisorctl", config: Optional[Path] = None, timeout: float = 60.0):
        self.supervisorctl = supervisorctl
        self.config = config
        self.timeout = timeout

    def _base(self) -> list[str]:
        cmd = [self.supervisorctl]
        if self.config:
            cmd += ["-c", str(self.config)]
        return cmd

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                self._base() + list(args),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SupervisorError(list(args), str(e)) from e

    def _checked(self, *args: str, benign: tuple[str, ...] = ()) -> str:
        result = self._run(*args)
        output = (result.stdout or "") + (result.stderr or "")
        # supervisorctl reports some failures with exit status 0
        failed = result.returncode != 0 or "ERROR" in output
        if failed and not any(marker in output for marker in benign):
            raise SupervisorError(list(args), output)
        return output

    def reread(self) -> str:
        """Pick up new or changed program descriptors."""
        output = self._checked("reread")
        log.info(f"supervisorctl reread: {output.strip() or 'no changes'}")
        return output

    def update(self) -> str:
        """Apply reread changes (adds new program groups)."""
        output = self._checked("update")
        log.info(f"supervisorctl update: {output.strip() or 'no changes'}")
        return output

    def start(self, program: str) -> None:
        self._checked("start", program, benign=("already started",))
        lifecycle_log.info(f"PROGRAM | START | {program}")

    def stop(self, program: str) -> None:
        self._checked("stop", program, benign=("not running",))
        lifecycle_log.info(f"PROGRAM | STOP | {program}")

    def status(self, program: str) -> str:
        """Process state as reported by supervisord (RUNNING, STOPPED, FATAL, ...).

        `supervisorctl status` exits non-zero for anything not running, so the
        exit code is ignored and the state column is parsed instead.
        """
        result = self._run("status", program)
        for line in (result.stdout or "").splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] == program:
                return fields[1]
        if "no such process" in (result.stdout or "") + (result.stderr or ""):
            return "UNKNOWN"
        raise SupervisorError(["status", program], (result.stdout or "") + (result.stderr or ""))

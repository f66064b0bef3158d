"""Config loader. Loads config.local.yaml, provides get()/require() and the typed Settings."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel

GATEWAY_DIR = Path(__file__).parent.parent
LOCAL_CONFIG_FILE = Path(os.environ.get("GATEWAY_CONFIG", GATEWAY_DIR / "config.local.yaml"))

_config: dict = {}
_loaded = False


def load() -> dict:
    """Load config.local.yaml. Safe to call multiple times (cached).

    A missing file is not an error: every setting has a default and the
    container deployment configures everything through the environment.
    """
    global _config, _loaded
    if _loaded:
        return _config

    if LOCAL_CONFIG_FILE.exists():
        with open(LOCAL_CONFIG_FILE) as f:
            _config = yaml.safe_load(f) or {}
    else:
        _config = {}

    _loaded = True
    return _config


def get(dotpath: str, default: Any = None) -> Any:
    """Get a config value by dot-separated path. e.g. get('gateway.base_port')"""
    load()
    keys = dotpath.split(".")
    node = _config
    for key in keys:
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return default
    return node


def require(dotpath: str) -> Any:
    """Get a config value or raise if missing/falsy (None, '', 0, False)."""
    value = get(dotpath)
    if not value:
        raise ValueError(
            f"Required config '{dotpath}' is missing or falsy (got {value!r}). "
            f"Check {LOCAL_CONFIG_FILE}."
        )
    return value


def reload() -> dict:
    """Force reload from disk (useful for tests)."""
    global _loaded
    _loaded = False
    return load()


class Settings(BaseModel, frozen=True):
    """Everything the provisioning and session layers need, in one place."""

    # Engine credential store root; each account gets <config_dir>/<slot>
    config_dir: Path = Path("/home/.local/share/signal-cli")
    engine_command: str = "signal-cli"
    listener_command: str = "nc"
    java_home: str = "/opt/java/openjdk"

    # Rendezvous: port = base_port + slot, pipe = fifo_base + slot
    host: str = "127.0.0.1"
    base_port: int = 6000
    fifo_base: str = "/tmp/rendezvous"

    # supervisord
    supervisor_conf_dir: Path = Path("/etc/supervisor/conf.d")
    supervisorctl: str = "supervisorctl"
    supervisor_config: Optional[Path] = None
    log_root: Path = Path("/var/log")
    run_as_user: str = "signal-api"
    run_as_uid: int = 1000
    run_as_gid: int = 1000
    start_retries: int = 10

    # Slot counter
    counter_file: Path = Path("/tmp/signal-cli-ctr.lock")
    lock_timeout: float = 10.0

    # Sessions
    call_timeout: float = 30.0
    connect_attempts: int = 20
    connect_delay: float = 0.5
    notification_buffer: int = 1024
    line_limit: int = 10 * 1024 * 1024

    # Subject link store + device linking
    links_db: Path = Path("/home/.local/share/signal-cli/links.db")
    device_name: str = "signal-gateway"
    link_timeout: float = 300.0

    # Logs
    lifecycle_log: Optional[Path] = None
    perf_dir: Optional[Path] = None

    @property
    def manifest_path(self) -> Path:
        return self.config_dir / "jsonrpc2.yml"


# Environment variables honoured by the container entrypoint
ENV_OVERRIDES = {
    "SIGNAL_CLI_CONFIG_DIR": "config_dir",
    "SIGNAL_CLI_UID": "run_as_uid",
    "SIGNAL_CLI_GID": "run_as_gid",
    "DEVICE_NAME": "device_name",
    "GATEWAY_BASE_PORT": "base_port",
    "GATEWAY_LINKS_DB": "links_db",
}


def load_settings(overrides: Optional[dict] = None, environ: Optional[dict] = None) -> Settings:
    """Build Settings from the `gateway:` section, the environment, then explicit overrides."""
    values = dict(get("gateway", {}) or {})
    env = os.environ if environ is None else environ
    for var, field in ENV_OVERRIDES.items():
        if env.get(var):
            values[field] = env[var]
    if overrides:
        values.update(overrides)
    return Settings(**values)

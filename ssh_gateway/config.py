import os
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from ssh_gateway.errors import ConfigurationError
from ssh_gateway.utils import parse_int, to_bool

# ========= Static config =========
SERVER_NAME = "SSH MCP Server"
SERVER_VERSION = "1.1.0"
SUPPORTED_PROTOCOL_VERSION = "2024-11-05"

CONNECT_TIMEOUT = 10
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.02

DEFAULT_COMMAND_TIMEOUT_MS = 60_000
ABORT_TIMEOUT_MS = 5_000
PREFLIGHT_TIMEOUT_MS = 3_000
DEFAULT_MAX_SESSION_AGE_MS = 30 * 60 * 1000
DEFAULT_KEEPALIVE_INTERVAL_MS = 30_000
MAX_REAPER_INTERVAL_MS = 5 * 60 * 1000

DEFAULT_LISTEN_HOST = "127.0.0.1"
DEFAULT_LISTEN_PORT = 3001
DEFAULT_SSH_PORT = 22
TRANSPORTS = ("sse", "stream")

SESSION_HEADER = "Mcp-Session-Id"


# ========= Runtime Configuration =========
@dataclass(frozen=True)
class ServerConfig:
    ssh_host: str
    ssh_user: str
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None
    ssh_key_passphrase: Optional[str] = None
    ssh_port: int = DEFAULT_SSH_PORT
    verify_host_key: bool = True

    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = DEFAULT_LISTEN_PORT
    transport: str = "stream"

    command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    abort_timeout_ms: int = ABORT_TIMEOUT_MS
    preflight_timeout_ms: int = PREFLIGHT_TIMEOUT_MS
    max_session_age_ms: int = DEFAULT_MAX_SESSION_AGE_MS
    keepalive_interval_ms: int = DEFAULT_KEEPALIVE_INTERVAL_MS

    auth_token: str = ""
    allowed_origins: Tuple[str, ...] = ("*",)
    strict_security: bool = False
    local_exec: bool = False
    skip_preflight: bool = False
    allowed_command_regex: Optional[str] = None

    log_timing: bool = False
    log_rpc_bodies: bool = False
    ssh_debug: bool = False

    @property
    def reaper_interval_ms(self) -> int:
        return min(self.max_session_age_ms // 2, MAX_REAPER_INTERVAL_MS)

    @property
    def allowed_hosts(self) -> Tuple[str, ...]:
        hosts = []
        for base in (self.listen_host, "127.0.0.1", "localhost"):
            if not base:
                continue
            for candidate in (base, f"{base}:{self.listen_port}"):
                if candidate not in hosts:
                    hosts.append(candidate)
        return tuple(hosts)


def _pick(args: Any, name: str, environ: Mapping[str, str], env_name: Optional[str] = None) -> Any:
    value = getattr(args, name, None) if args is not None else None
    if value is not None:
        return value
    if env_name:
        return environ.get(env_name)
    return None


def _strict_security(args: Any, environ: Mapping[str, str]) -> bool:
    flag = to_bool(getattr(args, "strict_security", None), False) if args is not None else False
    enabled = flag or environ.get("ENABLE_DNS_REBIND") == "1" or environ.get("ENV") == "production"
    return enabled and environ.get("DISABLE_DNS_REBIND") != "1"


def load_config(args: Any = None, environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build the one immutable config from parsed CLI args laid over the environment.

    Every problem found is collected and reported together in one
    ConfigurationError.
    """
    env = os.environ if environ is None else environ
    errors = []

    def number(name: str, label: str, env_name: Optional[str], default: int, minimum: int = 0) -> int:
        try:
            value = parse_int(_pick(args, name, env, env_name), label, default)
        except ValueError as exc:
            errors.append(str(exc))
            return default
        if value < minimum:
            errors.append(f"Invalid {label}: must be >= {minimum}")
            return default
        return value

    host = _pick(args, "host", env, "SSH_HOST")
    user = _pick(args, "user", env, "SSH_USER")
    password = _pick(args, "password", env, "SSH_PASSWORD")
    key_path = _pick(args, "key", env, "SSH_KEY_PATH")
    local_exec = to_bool(_pick(args, "local_exec", env, "MCP_LOCAL_EXEC"))

    if not host:
        errors.append("Missing required --host (or SSH_HOST)")
    if not user:
        errors.append("Missing required --user (or SSH_USER)")
    if host and user and not password and not key_path and not local_exec:
        errors.append("Either --password or --key must be provided (or SSH_PASSWORD / SSH_KEY_PATH)")

    transport = str(_pick(args, "transport", env, "MCP_TRANSPORT") or "stream").lower()
    if transport not in TRANSPORTS:
        errors.append("Invalid --transport (expected sse|stream)")

    ssh_port = number("ssh_port", "--ssh-port", "SSH_PORT", DEFAULT_SSH_PORT, minimum=1)
    listen_port = number("listen_port", "--listen-port", "MCP_LISTEN_PORT", DEFAULT_LISTEN_PORT, minimum=0)
    timeout_ms = number("timeout", "--timeout", "MCP_COMMAND_TIMEOUT_MS", DEFAULT_COMMAND_TIMEOUT_MS, minimum=1)
    max_age_ms = number(
        "max_session_age_ms", "--max-session-age-ms", "MCP_MAX_SESSION_AGE_MS", DEFAULT_MAX_SESSION_AGE_MS, minimum=1
    )
    keepalive_ms = number(
        "keepalive_interval_ms", "--keepalive-interval-ms", "MCP_KEEPALIVE_INTERVAL_MS",
        DEFAULT_KEEPALIVE_INTERVAL_MS, minimum=1,
    )

    verify_host_key = True
    verify_env = env.get("SSH_VERIFY_HOST_KEY")
    if verify_env is not None:
        verify_host_key = to_bool(verify_env, True)
    if args is not None and getattr(args, "no_verify_host", False):
        verify_host_key = False
    elif args is not None and getattr(args, "verify_host", False):
        verify_host_key = True

    command_regex = _pick(args, "allow_command_regex", env, "MCP_ALLOWED_COMMAND_REGEX") or None
    if command_regex:
        try:
            re.compile(command_regex)
        except re.error as exc:
            errors.append(f"Invalid --allow-command-regex: {exc}")

    origins_raw = _pick(args, "allowed_origins", env, "ALLOWED_ORIGINS") or "*"
    allowed_origins = tuple(o.strip() for o in str(origins_raw).split(",") if o.strip()) or ("*",)

    if errors:
        raise ConfigurationError("Configuration error:\n" + "\n".join(errors))

    return ServerConfig(
        ssh_host=host,
        ssh_user=user,
        ssh_password=password or None,
        ssh_key_path=os.path.expanduser(key_path) if key_path else None,
        ssh_key_passphrase=_pick(args, "passphrase", env, "SSH_KEY_PASSPHRASE") or None,
        ssh_port=ssh_port,
        verify_host_key=verify_host_key,
        listen_host=_pick(args, "listen_host", env, "MCP_LISTEN_HOST") or DEFAULT_LISTEN_HOST,
        listen_port=listen_port,
        transport=transport,
        command_timeout_ms=timeout_ms,
        max_session_age_ms=max_age_ms,
        keepalive_interval_ms=keepalive_ms,
        auth_token=_pick(args, "auth_token", env, "MCP_AUTH_TOKEN") or "",
        allowed_origins=allowed_origins,
        strict_security=_strict_security(args, env),
        local_exec=local_exec,
        skip_preflight=to_bool(_pick(args, "skip_preflight", env, "MCP_SKIP_SSH_PREFLIGHT")),
        allowed_command_regex=command_regex,
        log_timing=env.get("MCP_DEBUG_TIMING") == "1",
        log_rpc_bodies=env.get("MCP_LOG_RPC") == "1",
        ssh_debug=env.get("MCP_SSH_DEBUG") == "1",
    )
